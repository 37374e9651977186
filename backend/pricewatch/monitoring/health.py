"""Health, readiness and liveness reports built from live component state."""

import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import psutil
import structlog

from pricewatch.schemas.health import (
    ApplicationStatus,
    CheckResult,
    ErrorEntry,
    HealthChecks,
    HealthResponse,
    LivenessResponse,
    MemoryUsage,
    MetricsJsonResponse,
    ReadinessChecks,
    ReadinessResponse,
    ScrapeStats,
)

if TYPE_CHECKING:
    from pricewatch.runtime import Runtime


logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_MB = 1024 * 1024


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def overall_status(checks: HealthChecks) -> str:
    """Unhealthy if a critical check is unhealthy, degraded unless every check is healthy."""
    critical = (checks.database, checks.browser_pool)
    if any(c.status == UNHEALTHY for c in critical):
        return UNHEALTHY
    every = critical + (checks.proxy, checks.rate_limiter)
    if all(c.status == HEALTHY for c in every):
        return HEALTHY
    return DEGRADED


class HealthReporter:
    """Builds the bodies served by the health endpoints."""

    def __init__(self, runtime: "Runtime"):
        self.runtime = runtime

    async def _database_check(self) -> CheckResult:
        monitor = self.runtime.db_monitor
        try:
            result = await monitor.check()
            details = {
                "connected": result["healthy"],
                "timestamp": result["timestamp"],
                "pool": monitor.pool_stats(),
            }
            if "error" in result:
                details["error"] = result["error"]
            return CheckResult(status=HEALTHY if result["healthy"] else UNHEALTHY, details=details)
        except Exception as e:
            logger.warning("database_check_failed", error=str(e))
            return CheckResult(status=UNHEALTHY, details={"error": str(e)})

    def _browser_pool_check(self) -> CheckResult:
        try:
            details = self.runtime.pool.health_check()
            status = HEALTHY if details["total_browsers"] > 0 and not self.runtime.pool.closed else UNHEALTHY
            return CheckResult(status=status, details=details)
        except Exception as e:
            logger.warning("browser_pool_check_failed", error=str(e))
            return CheckResult(status=UNHEALTHY, details={"error": str(e)})

    def _proxy_check(self) -> CheckResult:
        try:
            stats = self.runtime.proxy_manager.get_stats()
            return CheckResult(status=HEALTHY if stats["total"] > 0 else DEGRADED, details=stats)
        except Exception as e:
            logger.warning("proxy_check_failed", error=str(e))
            return CheckResult(status=DEGRADED, details={"error": str(e)})

    def _rate_limiter_check(self) -> CheckResult:
        try:
            return CheckResult(status=HEALTHY, details=self.runtime.rate_limiter.get_stats())
        except Exception as e:
            logger.warning("rate_limiter_check_failed", error=str(e))
            return CheckResult(status=DEGRADED, details={"error": str(e)})

    async def checks(self) -> HealthChecks:
        return HealthChecks(
            database=await self._database_check(),
            browser_pool=self._browser_pool_check(),
            proxy=self._proxy_check(),
            rate_limiter=self._rate_limiter_check(),
        )

    def _scrape_stats(self) -> ScrapeStats:
        state = self.runtime.app_state
        return ScrapeStats(
            attempted=state.scrapes_attempted,
            successful=state.scrapes_successful,
            success_rate=state.success_rate,
        )

    async def health(self) -> HealthResponse:
        checks = await self.checks()
        state = self.runtime.app_state
        return HealthResponse(
            status=overall_status(checks),
            timestamp=_now_iso(),
            uptime=state.uptime,
            version=self.runtime.version,
            checks=checks,
            application=ApplicationStatus(
                ready=state.ready,
                last_monitor_run=state.last_monitor_run,
                last_monitor_success=state.last_monitor_success,
                scrape_stats=self._scrape_stats(),
                recent_errors=len(state.recent_errors),
            ),
            sites=self.runtime.classifier.get_all_site_health(),
        )

    async def readiness(self) -> ReadinessResponse:
        """Ready iff the database answers, the pool holds a browser and startup finished."""
        db = await self.runtime.db_monitor.check()
        has_browsers = self.runtime.pool.get_stats()["total_browsers"] > 0 and not self.runtime.pool.closed
        app_ready = self.runtime.app_state.ready
        return ReadinessResponse(
            ready=bool(db["healthy"] and has_browsers and app_ready),
            timestamp=_now_iso(),
            checks=ReadinessChecks(database=db["healthy"], browser_pool=has_browsers, app_initialized=app_ready),
        )

    def liveness(self) -> LivenessResponse:
        memory = psutil.Process(os.getpid()).memory_info()
        return LivenessResponse(
            alive=True,
            timestamp=_now_iso(),
            uptime=self.runtime.app_state.uptime,
            pid=os.getpid(),
            memory=MemoryUsage(
                heap_used=round(getattr(memory, "data", memory.rss) / _MB),
                heap_total=round(memory.vms / _MB),
                rss=round(memory.rss / _MB),
            ),
        )

    def refresh_gauges(self) -> None:
        """Copy live pool sizes into the Prometheus gauges before rendering."""
        runtime = self.runtime
        pool_stats = runtime.pool.get_stats()
        runtime.metrics.update_browser_pool(pool_stats["total_browsers"], pool_stats["in_use"])
        runtime.metrics.update_db_pool(runtime.db_monitor.pool_stats())
        proxy_stats = runtime.proxy_manager.get_stats()
        runtime.metrics.update_proxy_pool(proxy_stats["working"], proxy_stats["failed"])

    async def metrics_json(self) -> MetricsJsonResponse:
        checks = await self.checks()
        state = self.runtime.app_state
        return MetricsJsonResponse(
            timestamp=_now_iso(),
            uptime=state.uptime,
            scrapes=self._scrape_stats(),
            database=checks.database.details,
            browser_pool=checks.browser_pool.details,
            proxy=checks.proxy.details,
            rate_limiter=checks.rate_limiter.details,
            sites=self.runtime.classifier.get_all_site_health(),
            errors=[ErrorEntry(**e) for e in state.recent_errors],
            metrics=self.runtime.metrics.snapshot(),
        )
