"""Scraper utilities: browser pool, rate limiting, proxy management and data normalization."""

from .browser_pool import BrowserHandle, BrowserPool, HandleState
from .rate_limiter import RateLimiter, SiteState, is_rate_limit_error
from .proxy_manager import (
    ProxyManager,
    ProxyEntry,
    ProxyState,
    NoProxyManager,
    StaticProxySource,
    GatewayProxySource,
    HttpProxySource,
    build_proxy_source,
)
from .user_agents import UserAgentRotator, USER_AGENTS
from .normalizer import PriceNormalizer, clean_text


__all__ = [
    # Browsers
    "BrowserHandle",
    "BrowserPool",
    "HandleState",
    # Rate limiting
    "RateLimiter",
    "SiteState",
    "is_rate_limit_error",
    # Proxy management
    "ProxyManager",
    "ProxyEntry",
    "ProxyState",
    "NoProxyManager",
    "StaticProxySource",
    "GatewayProxySource",
    "HttpProxySource",
    "build_proxy_source",
    # User agents
    "UserAgentRotator",
    "USER_AGENTS",
    # Normalization
    "PriceNormalizer",
    "clean_text",
]
