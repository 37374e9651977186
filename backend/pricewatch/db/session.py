"""Async database engine and health monitor."""

import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, TYPE_CHECKING

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

if TYPE_CHECKING:
    from pricewatch.monitoring.metrics import ScraperMetrics


logger = structlog.get_logger(__name__)

NOT_CONFIGURED = "not configured"


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    # SQLite doesn't support pool_size / max_overflow / pool_pre_ping
    engine_kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(database_url, **engine_kwargs)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DatabaseMonitor:
    """Connectivity check for the database collaborator.

    With no URL configured the monitor always reports unhealthy, so the
    readiness endpoint stays 503 until a database is wired up.
    """

    def __init__(
        self,
        database_url: str = "",
        engine: Optional[AsyncEngine] = None,
        metrics: Optional["ScraperMetrics"] = None,
        echo: bool = False,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.database_url = database_url
        self.metrics = metrics
        self._clock = clock
        if engine is not None:
            self.engine: Optional[AsyncEngine] = engine
        elif database_url:
            self.engine = build_engine(database_url, echo=echo)
        else:
            self.engine = None

    @property
    def configured(self) -> bool:
        return self.engine is not None

    async def check(self) -> dict:
        """Run ``SELECT 1``.

        Returns:
            {healthy, timestamp} plus ``error`` when the check failed
        """
        if self.engine is None:
            return {"healthy": False, "timestamp": _now_iso(), "error": NOT_CONFIGURED}

        started = self._clock()
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.warning("database_health_check_failed", error=str(e))
            return {"healthy": False, "timestamp": _now_iso(), "error": str(e)}
        finally:
            if self.metrics is not None:
                self.metrics.observe_db_query("health_check", self._clock() - started)

        return {"healthy": True, "timestamp": _now_iso()}

    def pool_stats(self) -> Dict[str, int]:
        """Connection pool counters; zeros for pools that do not track them."""
        stats = {"total": 0, "idle": 0, "checked_out": 0, "overflow": 0}
        if self.engine is None:
            return stats

        pool = self.engine.pool
        for key, attr in (("idle", "checkedin"), ("checked_out", "checkedout"), ("overflow", "overflow")):
            getter = getattr(pool, attr, None)
            if callable(getter):
                try:
                    stats[key] = max(0, int(getter()))
                except (TypeError, ValueError):
                    pass
        stats["total"] = stats["idle"] + stats["checked_out"]
        return stats

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("database_engine_disposed")
