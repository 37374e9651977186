"""Prometheus metrics for scraping, proxies, browsers, database and rate limiting."""

import platform
from typing import Dict, List, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Gauge,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from pricewatch import __version__


METRIC_PREFIX = "price_tracker_"


class ScraperMetrics:
    """All application metrics, bound to one CollectorRegistry.

    Each instance owns its registry, so tests can create a fresh instance
    without tripping over duplicate registrations.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None, default_collectors: bool = True):
        self.registry = registry or CollectorRegistry()
        reg = self.registry

        if default_collectors:
            ProcessCollector(registry=reg)
            PlatformCollector(registry=reg)
            GCCollector(registry=reg)

        # Scraping
        self.scrape_attempts = Counter(
            "price_tracker_scrape_attempts", "Total number of scrape attempts",
            ["site", "status"], registry=reg,
        )
        self.scrape_duration = Histogram(
            "price_tracker_scrape_duration_seconds", "Duration of scrape operations in seconds",
            ["site"], buckets=(0.5, 1, 2, 5, 10, 20, 30, 60), registry=reg,
        )
        self.products_scraped = Counter(
            "price_tracker_products_scraped", "Total number of products successfully scraped",
            ["site"], registry=reg,
        )
        self.price_changes = Counter(
            "price_tracker_price_changes", "Total number of price changes detected",
            ["site", "direction"], registry=reg,
        )

        # Errors
        self.errors = Counter(
            "price_tracker_errors", "Total number of errors",
            ["type", "site"], registry=reg,
        )
        self.retry_attempts = Counter(
            "price_tracker_retry_attempts", "Total number of retry attempts",
            ["operation", "site"], registry=reg,
        )

        # Proxies
        self.proxy_pool_size = Gauge(
            "price_tracker_proxy_pool_size", "Number of proxies in the pool",
            ["status"], registry=reg,
        )
        self.proxy_requests = Counter(
            "price_tracker_proxy_requests", "Total proxy requests",
            ["status"], registry=reg,
        )
        self.proxy_latency = Histogram(
            "price_tracker_proxy_latency_seconds", "Proxy response latency in seconds",
            buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10), registry=reg,
        )

        # Browser pool
        self.browser_pool_size = Gauge(
            "price_tracker_browser_pool_size", "Total browsers in pool", registry=reg,
        )
        self.browser_pool_in_use = Gauge(
            "price_tracker_browser_pool_in_use", "Browsers currently in use", registry=reg,
        )
        self.browser_acquire_wait = Histogram(
            "price_tracker_browser_acquire_wait_seconds", "Time spent waiting to acquire a browser",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5), registry=reg,
        )

        # Database
        self.db_pool_connections = Gauge(
            "price_tracker_db_pool_connections", "Database connection pool stats",
            ["state"], registry=reg,
        )
        self.db_query_duration = Histogram(
            "price_tracker_db_query_duration_seconds", "Database query duration in seconds",
            ["operation"], buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1), registry=reg,
        )

        # Rate limiting
        self.rate_limiter_delay = Histogram(
            "price_tracker_rate_limiter_delay_seconds", "Rate limiter delay applied in seconds",
            ["site"], buckets=(0.5, 1, 2, 3, 5, 10, 15, 30), registry=reg,
        )
        self.rate_limit_hits = Counter(
            "price_tracker_rate_limit_hits", "Number of times rate limit was hit",
            ["site"], registry=reg,
        )
        self.site_backoff_level = Gauge(
            "price_tracker_site_backoff_level", "Current rate limiter backoff level per site",
            ["site"], registry=reg,
        )

        # Application
        self.app_info = Gauge(
            "price_tracker_app_info", "Application information",
            ["version", "python_version"], registry=reg,
        )
        self.app_info.labels(version=__version__, python_version=platform.python_version()).set(1)

    # ---------------------------------------------------------------- helpers

    def record_scrape(self, site: str, success: bool, duration_seconds: float) -> None:
        self.scrape_attempts.labels(site=site, status="success" if success else "failure").inc()
        self.scrape_duration.labels(site=site).observe(duration_seconds)
        if success:
            self.products_scraped.labels(site=site).inc()

    def record_error(self, error_type: str, site: str) -> None:
        self.errors.labels(type=error_type, site=site).inc()

    def record_retry(self, operation: str, site: str) -> None:
        self.retry_attempts.labels(operation=operation, site=site).inc()

    def record_price_change(self, site: str, old_price, new_price) -> None:
        if new_price == old_price:
            return
        direction = "up" if new_price > old_price else "down"
        self.price_changes.labels(site=site, direction=direction).inc()

    def record_proxy_request(self, success: bool, latency_seconds: Optional[float] = None) -> None:
        self.proxy_requests.labels(status="success" if success else "failure").inc()
        if latency_seconds is not None:
            self.proxy_latency.observe(latency_seconds)

    def update_proxy_pool(self, working: int, failed: int) -> None:
        self.proxy_pool_size.labels(status="working").set(working)
        self.proxy_pool_size.labels(status="failed").set(failed)

    def update_browser_pool(self, total: int, in_use: int) -> None:
        self.browser_pool_size.set(total)
        self.browser_pool_in_use.set(in_use)

    def update_db_pool(self, stats: Dict[str, int]) -> None:
        for state, value in stats.items():
            self.db_pool_connections.labels(state=state).set(value)

    def observe_db_query(self, operation: str, duration_seconds: float) -> None:
        self.db_query_duration.labels(operation=operation).observe(duration_seconds)

    # -------------------------------------------------------------- exporting

    def render(self) -> bytes:
        """Prometheus text exposition of every registered collector."""
        return generate_latest(self.registry)

    def sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of one sample, 0.0 when it has not been recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def snapshot(self) -> Dict[str, List[dict]]:
        """Application metric samples as JSON-friendly data."""
        result: Dict[str, List[dict]] = {}
        for metric in self.registry.collect():
            if not metric.name.startswith(METRIC_PREFIX):
                continue
            samples = [
                {"name": s.name, "labels": dict(s.labels), "value": s.value}
                for s in metric.samples
                if not s.name.endswith("_created")
            ]
            if samples:
                result[metric.name] = samples
        return result


_default_metrics: Optional[ScraperMetrics] = None


def get_metrics() -> ScraperMetrics:
    """Get the process-wide metrics instance, creating it on first use."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = ScraperMetrics()
    return _default_metrics
