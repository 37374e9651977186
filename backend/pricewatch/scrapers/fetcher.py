"""Page loading through pooled browsers, with proxy rotation and direct fallback."""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

import structlog

from pricewatch.core.exceptions import FetchError
from pricewatch.scrapers.base import ScrapeJob
from pricewatch.scrapers.utils.browser_pool import BrowserHandle, BrowserPool
from pricewatch.scrapers.utils.proxy_manager import ProxyManager, playwright_proxy
from pricewatch.scrapers.utils.user_agents import UserAgentRotator

if TYPE_CHECKING:
    from pricewatch.monitoring.metrics import ScraperMetrics


logger = structlog.get_logger(__name__)

MAX_PROXY_RETRIES = 3
MAX_BROWSER_FAILURES = 3
PROXY_NAVIGATION_TIMEOUT = 15.0
DIRECT_NAVIGATION_TIMEOUT = 30.0
BODY_WAIT_TIMEOUT = 10.0
ANTI_BOT_DELAY_RANGE = (0.5, 1.0)
DEFAULT_ACQUIRE_TIMEOUT = 60.0

VIEWPORT = {"width": 1920, "height": 1080}
LOCALE = "en-US"
TIMEZONE_ID = "America/New_York"

# Minimal stealth JS to mask automation signals
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) =>
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters);
"""

_BROWSER_GONE_PHRASES = ("browser has been closed", "target closed", "browser closed", "has been disconnected")


class _AttemptFailed(Exception):
    """One navigation attempt failed; ``browser_gone`` tells whether the browser died."""

    def __init__(self, error: Exception, browser_gone: bool):
        self.error = error
        self.browser_gone = browser_gone
        super().__init__(str(error))


@dataclass
class FetchResult:
    """A loaded page still holding its context and pooled browser."""

    page: Any
    context: Any
    handle: BrowserHandle
    proxy_used: Optional[str] = None
    status: Optional[int] = None
    released: bool = False


def _is_browser_failure(error: BaseException, handle: Optional[BrowserHandle]) -> bool:
    if handle is not None and not handle.is_connected():
        return True
    message = str(error).lower()
    return any(phrase in message for phrase in _BROWSER_GONE_PHRASES)


class Fetcher:
    """Loads a job's URL and hands back the live page.

    Proxied attempts rotate through the proxy manager; a proxy that fails a
    navigation is reported and the next one is tried. Failures caused by a
    dead browser are retried without charging the proxy.
    """

    def __init__(
        self,
        pool: BrowserPool,
        proxy_manager: Optional[ProxyManager] = None,
        user_agents: Optional[UserAgentRotator] = None,
        metrics: Optional["ScraperMetrics"] = None,
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.proxy_manager = proxy_manager
        self.user_agents = user_agents or UserAgentRotator()
        self.metrics = metrics
        self.acquire_timeout = acquire_timeout
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

    async def fetch(self, job: ScrapeJob) -> FetchResult:
        """Load ``job.url`` and return the page.

        Args:
            job: Job carrying the URL, proxy options and deadline

        Returns:
            FetchResult; the caller must pass it to ``release``

        Raises:
            FetchError: If every proxied and direct attempt failed
            BrowserPoolError: If the pool is closed or no browser came free in time
        """
        attempts = 0
        last_error: Optional[BaseException] = None
        browser_failures = 0

        if job.options.use_proxy and self.proxy_manager is not None:
            rounds = 0
            refreshed = False
            while rounds < MAX_PROXY_RETRIES:
                proxy = self.proxy_manager.get_proxy()
                if proxy is None and rounds == 0 and not refreshed:
                    refreshed = True
                    logger.info("proxy_pool_empty_refreshing", url=job.url)
                    await self.proxy_manager.refresh()
                    proxy = self.proxy_manager.get_proxy()
                if proxy is None:
                    logger.info("no_proxy_available", url=job.url)
                    break

                attempts += 1
                started = self._clock()
                try:
                    return await self._attempt(job, proxy, PROXY_NAVIGATION_TIMEOUT, started)
                except _AttemptFailed as failure:
                    last_error = failure.error
                    if failure.browser_gone and browser_failures < MAX_BROWSER_FAILURES:
                        browser_failures += 1
                        logger.warning("fetch_browser_failure", url=job.url, error=str(last_error))
                        continue
                    rounds += 1
                    self.proxy_manager.mark_failed(proxy)
                    self._record_proxy(False, started)
                    logger.warning("proxy_fetch_failed", url=job.url, round=rounds, error=str(last_error))

            if not job.options.allow_direct_fallback:
                raise FetchError(job.url, last_error, attempts)
            logger.info("fetch_direct_fallback", url=job.url, proxy_attempts=attempts)

        while True:
            attempts += 1
            try:
                return await self._attempt(job, None, DIRECT_NAVIGATION_TIMEOUT, self._clock())
            except _AttemptFailed as failure:
                last_error = failure.error
                if failure.browser_gone and browser_failures < MAX_BROWSER_FAILURES:
                    browser_failures += 1
                    logger.warning("fetch_browser_failure", url=job.url, error=str(last_error))
                    continue
                logger.warning("direct_fetch_failed", url=job.url, error=str(last_error))
                raise FetchError(job.url, last_error, attempts) from last_error

    def _timeout(self, job: ScrapeJob, limit: float) -> float:
        remaining = job.remaining()
        return limit if remaining is None else max(0.001, min(limit, remaining))

    def _context_options(self, proxy: Optional[str]) -> dict:
        options = {
            "user_agent": self.user_agents.random(),
            "viewport": VIEWPORT,
            "locale": LOCALE,
            "timezone_id": TIMEZONE_ID,
            "java_script_enabled": True,
        }
        if proxy:
            options["proxy"] = playwright_proxy(proxy)
        return options

    async def _attempt(self, job: ScrapeJob, proxy: Optional[str], nav_timeout: float, started: float) -> FetchResult:
        handle = await self.pool.acquire(timeout=self._timeout(job, self.acquire_timeout))
        context = None
        page = None
        try:
            context = await handle.browser.new_context(**self._context_options(proxy))
            await context.add_init_script(STEALTH_JS)
            page = await context.new_page()

            if job.options.anti_bot_delay:
                await self._sleep(self._rng.uniform(*ANTI_BOT_DELAY_RANGE))

            response = await page.goto(
                job.url,
                wait_until="domcontentloaded",
                timeout=self._timeout(job, nav_timeout) * 1000,
            )
            await page.wait_for_selector("body", timeout=self._timeout(job, BODY_WAIT_TIMEOUT) * 1000)
        except Exception as e:
            browser_gone = _is_browser_failure(e, handle)
            await self._discard(page, context, handle)
            raise _AttemptFailed(e, browser_gone) from e
        except BaseException:
            await self._discard(page, context, handle)
            raise

        status = response.status if response is not None else None
        if proxy:
            self.proxy_manager.mark_success(proxy)
            self._record_proxy(True, started)
        logger.info("page_fetched", url=job.url, status=status, proxy=bool(proxy), handle=handle.id)
        return FetchResult(page=page, context=context, handle=handle, proxy_used=proxy, status=status)

    def _record_proxy(self, success: bool, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_proxy_request(success, max(0.0, self._clock() - started))

    async def _discard(self, page, context, handle: BrowserHandle) -> None:
        await _close_quietly(page, "page")
        await _close_quietly(context, "context")
        try:
            await self.pool.release(handle, healthy=handle.is_connected())
        except Exception as e:
            logger.warning("browser_release_failed", handle=handle.id, error=str(e))

    async def release(self, result: FetchResult) -> None:
        """Close the page and context and return the browser. Never raises."""
        if result.released:
            return
        result.released = True
        await self._discard(result.page, result.context, result.handle)


async def _close_quietly(target, kind: str) -> None:
    if target is None:
        return
    try:
        await target.close()
    except Exception as e:
        logger.debug("close_failed", kind=kind, error=str(e))
