"""Wiring of the long-lived scraping components.

The Runtime owns one instance of each shared component (browser pool,
proxy manager, rate limiter, error classifier, metrics, database monitor)
and the coordinator built on top of them. It has an explicit
``start``/``close`` lifecycle.
"""

from typing import Optional

import structlog

from pricewatch import __version__
from pricewatch.config import Settings, settings as default_settings
from pricewatch.core.exceptions import ConfigurationError
from pricewatch.db.session import DatabaseMonitor
from pricewatch.monitoring.metrics import ScraperMetrics, get_metrics
from pricewatch.monitoring.state import ApplicationState
from pricewatch.scrapers.coordinator import ScrapeCoordinator
from pricewatch.scrapers.error_classifier import ErrorClassifier
from pricewatch.scrapers.fetcher import Fetcher
from pricewatch.scrapers.site_registry import SiteRegistry
from pricewatch.scrapers.utils.browser_pool import BrowserPool
from pricewatch.scrapers.utils.proxy_manager import NoProxyManager, ProxyManager, build_proxy_source
from pricewatch.scrapers.utils.rate_limiter import RateLimiter
from pricewatch.scrapers.utils.user_agents import UserAgentRotator


logger = structlog.get_logger(__name__)


class Runtime:
    """Container for the process-lifetime scraping components."""

    def __init__(
        self,
        pool: BrowserPool,
        proxy_manager: ProxyManager,
        rate_limiter: RateLimiter,
        classifier: ErrorClassifier,
        registry: SiteRegistry,
        coordinator: ScrapeCoordinator,
        metrics: ScraperMetrics,
        app_state: ApplicationState,
        db_monitor: DatabaseMonitor,
        version: str = __version__,
    ):
        self.pool = pool
        self.proxy_manager = proxy_manager
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.registry = registry
        self.coordinator = coordinator
        self.metrics = metrics
        self.app_state = app_state
        self.db_monitor = db_monitor
        self.version = version
        self._started = False

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, metrics: Optional[ScraperMetrics] = None) -> "Runtime":
        """Build every component from settings.

        Raises:
            ConfigurationError: If proxy or rate limit settings are invalid
        """
        config = config or default_settings
        metrics = metrics or get_metrics()

        try:
            registry = SiteRegistry(rate_overrides=config.get_rate_limit_overrides())
        except ValueError as e:
            raise ConfigurationError(f"Invalid RATE_LIMIT_OVERRIDES: {e}") from e

        source = build_proxy_source(
            config.PROXY_SOURCE,
            proxy_list=config.get_proxy_list(),
            username=config.PROXY_USERNAME,
            password=config.PROXY_PASSWORD,
            server=config.PROXY_SERVER,
            check=config.PROXY_CHECK,
        )
        if source is not None:
            proxy_manager: ProxyManager = ProxyManager(source=source, failure_threshold=config.PROXY_FAILURE_THRESHOLD)
        elif config.get_proxy_list():
            proxy_manager = ProxyManager(config.get_proxy_list(), failure_threshold=config.PROXY_FAILURE_THRESHOLD)
        else:
            proxy_manager = NoProxyManager()

        user_agents = (
            UserAgentRotator.from_file(config.USER_AGENTS_FILE) if config.USER_AGENTS_FILE else UserAgentRotator()
        )

        pool = BrowserPool(size=config.BROWSER_POOL_SIZE, headless=config.BROWSER_HEADLESS, metrics=metrics)
        rate_limiter = RateLimiter(registry, metrics=metrics)
        classifier = ErrorClassifier(registry)
        app_state = ApplicationState()
        fetcher = Fetcher(
            pool,
            proxy_manager=proxy_manager,
            user_agents=user_agents,
            metrics=metrics,
            acquire_timeout=config.BROWSER_ACQUIRE_TIMEOUT_SECONDS,
        )
        coordinator = ScrapeCoordinator(
            pool,
            fetcher=fetcher,
            rate_limiter=rate_limiter,
            classifier=classifier,
            registry=registry,
            metrics=metrics,
            app_state=app_state,
            max_attempts=config.SCRAPE_MAX_ATTEMPTS,
            default_timeout=config.SCRAPE_TIMEOUT_SECONDS,
            use_proxy=config.SCRAPE_USE_PROXY,
        )
        db_monitor = DatabaseMonitor(config.DATABASE_URL, metrics=metrics, echo=config.DEBUG)

        return cls(
            pool=pool,
            proxy_manager=proxy_manager,
            rate_limiter=rate_limiter,
            classifier=classifier,
            registry=registry,
            coordinator=coordinator,
            metrics=metrics,
            app_state=app_state,
            db_monitor=db_monitor,
        )

    async def start(self) -> None:
        """Launch the browser pool, load proxies and mark the app ready.

        Raises:
            BrowserPoolError: If no browser can be launched
        """
        if self._started:
            return
        await self.pool.start()

        if self.proxy_manager.source is not None:
            working = await self.proxy_manager.refresh()
            logger.info("proxy_pool_loaded", working=working)
        stats = self.proxy_manager.get_stats()
        self.metrics.update_proxy_pool(stats["working"], stats["failed"])

        self._started = True
        self.app_state.mark_ready(True)
        logger.info("runtime_started", browsers=self.pool.size, proxies=stats["total"], version=self.version)

    async def close(self, grace: float = 1.0) -> None:
        """Stop accepting work and release every resource. Safe to call twice."""
        self.app_state.mark_ready(False)
        await self.coordinator.shutdown(grace)
        await self.proxy_manager.close()
        await self.db_monitor.close()
        self._started = False
        logger.info("runtime_closed")
