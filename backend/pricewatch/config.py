"""Application configuration via Pydantic Settings."""

import json
from typing import Dict, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Health / metrics server
    HEALTH_HOST: str = "0.0.0.0"
    HEALTH_PORT: int = 3000
    HEALTH_PORT_ATTEMPTS: int = 10

    # Browser pool
    BROWSER_POOL_SIZE: int = 3
    BROWSER_HEADLESS: bool = True
    BROWSER_ACQUIRE_TIMEOUT_SECONDS: float = 60.0

    # Proxy
    # "" disables proxies, "manual" reads PROXY_LIST, an http(s) URL is
    # downloaded as a proxy list, and smartproxy/brightdata/oxylabs build a
    # gateway URL from the credentials below.
    PROXY_SOURCE: str = ""
    PROXY_LIST: str = ""  # Comma-separated list of proxy URLs
    PROXY_USERNAME: str = ""
    PROXY_PASSWORD: str = ""
    PROXY_SERVER: str = ""
    PROXY_CHECK: bool = True
    PROXY_FAILURE_THRESHOLD: int = 1

    # Scraping
    SCRAPE_MAX_ATTEMPTS: int = 2
    SCRAPE_TIMEOUT_SECONDS: float = 120.0
    SCRAPE_USE_PROXY: bool = True
    USER_AGENTS_FILE: str = ""  # One agent per line; built-in list when empty

    # Per-site rate limit overrides, JSON: {"amazon": {"min_delay_ms": 4000}}
    RATE_LIMIT_OVERRIDES: str = ""

    # Database collaborator (health check only)
    DATABASE_URL: str = ""

    # Search backends, consumed by the discovery subsystem
    SEARCH_ENGINES: str = "duckduckgo,bing"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_PRETTY: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("BROWSER_POOL_SIZE", "HEALTH_PORT_ATTEMPTS", "SCRAPE_MAX_ATTEMPTS")
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    def get_proxy_list(self) -> List[str]:
        """Parse PROXY_LIST into a list of proxy URLs.

        Returns:
            List of proxy URL strings, empty if PROXY_LIST is not set
        """
        if not self.PROXY_LIST:
            return []
        return [p.strip() for p in self.PROXY_LIST.split(",") if p.strip()]

    def get_rate_limit_overrides(self) -> Dict[str, dict]:
        """Parse RATE_LIMIT_OVERRIDES into a mapping of site key -> profile fields.

        Raises:
            ValueError: If the value is not a JSON object of objects
        """
        if not self.RATE_LIMIT_OVERRIDES:
            return {}
        data = json.loads(self.RATE_LIMIT_OVERRIDES)
        if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
            raise ValueError("RATE_LIMIT_OVERRIDES must be a JSON object of objects")
        return data


settings = Settings()
