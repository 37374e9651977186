"""Scrape coordinator: the single entry point for scraping a product URL.

A job goes through the site's cooldown gate, the rate limiter, the fetcher
and the extractor. Every outcome is fed back into the rate limiter, the
error classifier and the metrics before a ScrapeResult is returned.
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union, TYPE_CHECKING

import structlog

from pricewatch.core.exceptions import BrowserPoolClosedError, HttpStatusError
from pricewatch.scrapers.base import ProductRecord, ScrapeJob, ScrapeResult
from pricewatch.scrapers.error_classifier import ErrorCategory, ErrorClassification, ErrorClassifier
from pricewatch.scrapers.extractor import extract, page_text
from pricewatch.scrapers.fetcher import Fetcher, FetchResult
from pricewatch.scrapers.site_registry import SiteEntry, SiteRegistry, get_site_registry
from pricewatch.scrapers.utils.browser_pool import BrowserPool
from pricewatch.scrapers.utils.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from pricewatch.monitoring.metrics import ScraperMetrics
    from pricewatch.monitoring.state import ApplicationState


logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass
class _Run:
    """Progress of one job, readable after a timeout or cancellation."""

    job: ScrapeJob
    site: SiteEntry
    site_key: str
    started: float
    attempts: int = 0


class ScrapeCoordinator:
    """Orchestrates fetch, extract and outcome reporting for scrape jobs."""

    def __init__(
        self,
        pool: BrowserPool,
        fetcher: Optional[Fetcher] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classifier: Optional[ErrorClassifier] = None,
        registry: Optional[SiteRegistry] = None,
        metrics: Optional["ScraperMetrics"] = None,
        app_state: Optional["ApplicationState"] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        default_timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        use_proxy: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.pool = pool
        self.registry = registry or get_site_registry()
        self.fetcher = fetcher or Fetcher(pool, metrics=metrics)
        self.rate_limiter = rate_limiter or RateLimiter(self.registry, metrics=metrics)
        self.classifier = classifier or ErrorClassifier(self.registry)
        self.metrics = metrics
        self.app_state = app_state
        self.max_attempts = max_attempts
        self.default_timeout = default_timeout
        self.use_proxy = use_proxy
        self._sleep = sleep
        self._clock = clock

        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._last_prices: Dict[str, Decimal] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def _make_job(self, target: Union[str, ScrapeJob], options: dict) -> ScrapeJob:
        if isinstance(target, ScrapeJob):
            return target
        options.setdefault("timeout", self.default_timeout)
        options.setdefault("use_proxy", self.use_proxy)
        return ScrapeJob.create(target, **options)

    # ------------------------------------------------------------------ scrape

    async def scrape(self, target: Union[str, ScrapeJob], **options) -> ScrapeResult:
        """Scrape one product page.

        Args:
            target: URL or a prepared ScrapeJob
            **options: ScrapeJob.create options when ``target`` is a URL
                (timeout, use_proxy, allow_direct_fallback, anti_bot_delay)

        Returns:
            ScrapeResult holding either a ProductRecord or an ErrorClassification

        Raises:
            ValueError: If the URL is not an absolute http(s) URL
        """
        job = self._make_job(target, options)
        site = self.registry.detect(job.url)
        site_key = self.registry.site_key(job.url)

        if self._closed:
            return self._rejected(job, site, site_key, ErrorCategory.SHUTDOWN, "Coordinator is shut down")

        cooldown = self.classifier.cooldown_remaining(job.url)
        if cooldown > 0:
            logger.info("scrape_skipped_cooldown", url=job.url, site=site_key, cooldown_remaining=round(cooldown, 1))
            if self.metrics is not None:
                self.metrics.record_error(ErrorCategory.COOLDOWN.value, site_key)
            return self._rejected(
                job, site, site_key, ErrorCategory.COOLDOWN,
                f"Site {site_key} is cooling down for another {cooldown:.0f}s",
            )

        run = _Run(job=job, site=site, site_key=site_key, started=self._clock())
        task = asyncio.ensure_future(self._run(run))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await task

    async def scrape_many(self, targets: Iterable[Union[str, ScrapeJob]], concurrency: Optional[int] = None) -> List[ScrapeResult]:
        """Scrape several URLs concurrently; results keep the input order."""
        semaphore = asyncio.Semaphore(concurrency or self.pool.size)

        async def bounded(target):
            async with semaphore:
                return await self.scrape(target)

        return list(await asyncio.gather(*(bounded(t) for t in targets)))

    def _rejected(self, job: ScrapeJob, site: SiteEntry, site_key: str, category: ErrorCategory, message: str) -> ScrapeResult:
        classification = ErrorClassification.for_category(category, site_key, job.url, message)
        return ScrapeResult(url=job.url, site=site.name, error=classification)

    async def _run(self, run: _Run) -> ScrapeResult:
        result: Optional[ScrapeResult] = None
        try:
            timeout = run.job.remaining()
            if timeout is not None and timeout <= 0:
                raise asyncio.TimeoutError()
            result = await asyncio.wait_for(self._attempt_loop(run), timeout)
        except asyncio.TimeoutError:
            result = self._abort(run, "Scrape deadline exceeded")
        except asyncio.CancelledError:
            if not self._closed:
                raise
            result = self._abort(run, "Scrape cancelled by shutdown")
        finally:
            self._finish(run, result)
        return result

    def _abort(self, run: _Run, message: str) -> ScrapeResult:
        classification = ErrorClassification.for_category(ErrorCategory.TIMEOUT, run.site_key, run.job.url, message)
        self.classifier.record_error(run.job.url, classification)
        self.rate_limiter.report_error(run.job.url, category=classification.category.value)
        if self.metrics is not None:
            self.metrics.record_error(classification.category.value, run.site_key)
        logger.warning("scrape_aborted", url=run.job.url, site=run.site_key, reason=message, attempts=run.attempts)
        return self._result(run, error=classification)

    def _result(self, run: _Run, record: Optional[ProductRecord] = None, error: Optional[ErrorClassification] = None) -> ScrapeResult:
        return ScrapeResult(
            url=run.job.url,
            site=run.site.name,
            record=record,
            error=error,
            attempts=run.attempts,
            duration_seconds=max(0.0, self._clock() - run.started),
        )

    def _finish(self, run: _Run, result: Optional[ScrapeResult]) -> None:
        success = result is not None and result.ok
        duration = max(0.0, self._clock() - run.started)
        if self.metrics is not None:
            self.metrics.record_scrape(run.site_key, success, duration)
        if self.app_state is not None:
            self.app_state.record_scrape_attempt(success)
            if result is not None and result.error is not None:
                self.app_state.record_error(f"{run.job.url}: {result.error.message}")

    async def _attempt_loop(self, run: _Run) -> ScrapeResult:
        job = run.job
        while True:
            run.attempts += 1
            await self.rate_limiter.wait_for_rate_limit(job.url)

            fetched: Optional[FetchResult] = None
            html: Optional[str] = None
            try:
                fetched = await self.fetcher.fetch(job)
                html = await fetched.page.content()
                if fetched.status is not None and fetched.status >= 400:
                    raise HttpStatusError(fetched.status, job.url)
                record = extract(html, job.url, run.site)
            except BrowserPoolClosedError as e:
                classification = ErrorClassification.for_category(ErrorCategory.SHUTDOWN, run.site_key, job.url, str(e))
                return self._result(run, error=classification)
            except Exception as e:
                error = e
            else:
                return self._succeeded(run, record)
            finally:
                if fetched is not None:
                    await self.fetcher.release(fetched)

            classification = self._failed(run, error, html)
            decision = self.classifier.should_retry(classification, job.url, run.attempts, self.max_attempts)
            if not decision.retry:
                logger.warning(
                    "scrape_failed",
                    url=job.url,
                    site=run.site_key,
                    category=classification.category.value,
                    attempts=run.attempts,
                    reason=decision.reason,
                )
                return self._result(run, error=classification)

            remaining = job.remaining()
            if remaining is not None and decision.delay_seconds >= remaining:
                logger.warning(
                    "scrape_retry_exceeds_deadline",
                    url=job.url,
                    delay=decision.delay_seconds,
                    remaining=round(remaining, 1),
                )
                return self._result(run, error=classification)

            if self.metrics is not None:
                self.metrics.record_retry("scrape", run.site_key)
            logger.info(
                "scrape_retrying",
                url=job.url,
                attempt=run.attempts,
                delay=decision.delay_seconds,
                category=classification.category.value,
            )
            await self._sleep(decision.delay_seconds)

    def _failed(self, run: _Run, error: Exception, html: Optional[str]) -> ErrorClassification:
        content = page_text(html) if html else None
        classification = self.classifier.record_error(run.job.url, error, content)
        self.rate_limiter.report_error(
            run.job.url,
            error,
            category=classification.category.value,
            cooldown_seconds=classification.cooldown_seconds,
        )
        if self.metrics is not None:
            self.metrics.record_error(classification.category.value, run.site_key)
        return classification

    def _succeeded(self, run: _Run, record: ProductRecord) -> ScrapeResult:
        url = run.job.url
        self.classifier.record_success(url)
        self.rate_limiter.report_success(url)

        previous = self._last_prices.get(url)
        if previous is not None and self.metrics is not None:
            self.metrics.record_price_change(run.site_key, previous, record.price)
        self._last_prices[url] = record.price

        logger.info(
            "scrape_succeeded",
            url=url,
            site=run.site_key,
            price=str(record.price),
            currency=record.currency,
            attempts=run.attempts,
        )
        return self._result(run, record=record)

    # ---------------------------------------------------------------- shutdown

    async def shutdown(self, grace: float = 1.0) -> None:
        """Refuse new jobs, cancel in-flight ones and close the browser pool."""
        if self._closed:
            await self.pool.close_all(grace)
            return
        self._closed = True

        tasks = [t for t in self._tasks if not t.done()]
        logger.info("coordinator_shutting_down", in_flight=len(tasks))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.pool.close_all(grace)
        logger.info("coordinator_shut_down")
