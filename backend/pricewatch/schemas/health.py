"""Health and metrics response schemas.

Fields are snake_case in Python and serialized in camelCase, matching what
existing dashboards and orchestrator health checks read. Component ``details`` are passed
through as produced by each component's ``get_stats()``.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CheckResult(CamelModel):
    """Status of one component: healthy, degraded, unhealthy or unknown."""

    status: str = "unknown"
    details: Optional[Any] = None


class HealthChecks(CamelModel):
    database: CheckResult = CheckResult()
    browser_pool: CheckResult = CheckResult()
    proxy: CheckResult = CheckResult()
    rate_limiter: CheckResult = CheckResult()


class ScrapeStats(CamelModel):
    attempted: int = 0
    successful: int = 0
    success_rate: int = 0


class ApplicationStatus(CamelModel):
    ready: bool = False
    last_monitor_run: Optional[str] = None
    last_monitor_success: bool = False
    scrape_stats: ScrapeStats = ScrapeStats()
    recent_errors: int = 0


class HealthResponse(CamelModel):
    """Full health report served by /health."""

    status: str
    timestamp: str
    uptime: int
    version: str
    checks: HealthChecks
    application: ApplicationStatus
    sites: Dict[str, Dict[str, Any]] = {}


class ReadinessChecks(CamelModel):
    database: bool
    browser_pool: bool
    app_initialized: bool


class ReadinessResponse(CamelModel):
    ready: bool
    timestamp: str
    checks: ReadinessChecks


class MemoryUsage(CamelModel):
    """Process memory in MB."""

    heap_used: int
    heap_total: int
    rss: int


class LivenessResponse(CamelModel):
    alive: bool = True
    timestamp: str
    uptime: int
    pid: int
    memory: MemoryUsage


class ErrorEntry(CamelModel):
    timestamp: str
    message: str


class MetricsJsonResponse(CamelModel):
    """Legacy JSON metrics served by /metrics/json."""

    timestamp: str
    uptime: int
    scrapes: ScrapeStats
    database: Optional[Any] = None
    browser_pool: Optional[Any] = None
    proxy: Optional[Any] = None
    rate_limiter: Optional[Any] = None
    sites: Dict[str, Dict[str, Any]] = {}
    errors: List[ErrorEntry] = []
    metrics: Dict[str, List[Dict[str, Any]]] = {}


class EndpointInfo(CamelModel):
    path: str
    description: str


class ServiceInfo(CamelModel):
    name: str
    version: str
    endpoints: List[EndpointInfo]
