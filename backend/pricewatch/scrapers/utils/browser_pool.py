"""Bounded pool of long-lived Playwright browsers.

A browser handle is owned by exactly one caller between ``acquire`` and
``release``. When every slot is taken, callers queue in FIFO order.
Handles whose browser has disconnected are closed on release and their
slot goes to the next waiter, which launches a replacement.
"""

import asyncio
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, TYPE_CHECKING

import structlog
from playwright.async_api import Error as PlaywrightError, Playwright, async_playwright
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pricewatch.core.exceptions import BrowserAcquireTimeout, BrowserPoolClosedError, BrowserPoolError

if TYPE_CHECKING:
    from pricewatch.monitoring.metrics import ScraperMetrics


logger = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]

BROWSER_CLOSE_TIMEOUT = 5.0

BrowserLauncher = Callable[[], Awaitable[Any]]

# Waiter result meaning "a slot is reserved for you, launch a browser"
_CREATE_SLOT = object()


class HandleState(str, Enum):
    IDLE = "idle"
    IN_USE = "in_use"
    CLOSING = "closing"


@dataclass(eq=False)
class BrowserHandle:
    """A pooled browser and its bookkeeping."""

    id: int
    browser: Any
    state: HandleState = HandleState.IDLE
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    pages_served: int = 0

    def is_connected(self) -> bool:
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False


class BrowserPool:
    """Fixed-size pool of headless Chromium browsers.

    Invariant: ``in_use + idle + closing == total_browsers <= size``.
    """

    def __init__(
        self,
        size: int = 3,
        headless: bool = True,
        launcher: Optional[BrowserLauncher] = None,
        metrics: Optional["ScraperMetrics"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if size < 1:
            raise ValueError("Browser pool size must be >= 1")
        self.size = size
        self.headless = headless
        self.metrics = metrics
        self._launcher = launcher
        self._clock = clock

        self._handles: Dict[int, BrowserHandle] = {}
        self._idle: Deque[BrowserHandle] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._pending = 0
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

        self._playwright: Optional[Playwright] = None
        self._playwright_lock = asyncio.Lock()

        self._initialized = False
        self._closed = False
        self._in_use_drained = asyncio.Event()
        self._close_done = asyncio.Event()

        self.created_total = 0
        self.closed_total = 0

    # --------------------------------------------------------------- launching

    async def _ensure_playwright(self) -> Playwright:
        async with self._playwright_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(PlaywrightError),
        reraise=True,
    )
    async def _launch(self) -> Any:
        if self._launcher is not None:
            return await self._launcher()
        playwright = await self._ensure_playwright()
        return await playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    async def start(self) -> None:
        """Launch Playwright and warm one browser.

        Raises:
            BrowserPoolError: If no browser can be created
        """
        if self._initialized:
            return
        try:
            handle = await self.acquire()
        except BrowserPoolError:
            raise
        except Exception as e:
            logger.error("browser_pool_start_failed", error=str(e))
            raise BrowserPoolError(f"Failed to launch browser: {e}") from e
        await self.release(handle)
        self._initialized = True
        logger.info("browser_pool_started", size=self.size, headless=self.headless)

    async def _create_handle(self) -> BrowserHandle:
        """Launch a browser for a reserved slot; the caller holds ``_pending``."""
        try:
            browser = await self._launch()
        except BaseException:
            async with self._lock:
                self._pending -= 1
                self._grant_slot_to_waiter()
            raise

        async with self._lock:
            self._pending -= 1
            if self._closed:
                closed = True
            else:
                closed = False
                now = self._clock()
                handle = BrowserHandle(
                    id=next(self._ids),
                    browser=browser,
                    state=HandleState.IN_USE,
                    created_at=now,
                    last_used_at=now,
                )
                self._handles[handle.id] = handle
                self.created_total += 1

        if closed:
            await self._close_browser(browser)
            raise BrowserPoolClosedError()

        logger.info("browser_created", handle=handle.id, total=len(self._handles))
        self._publish()
        return handle

    # ------------------------------------------------------------ acquisition

    async def acquire(self, timeout: Optional[float] = None) -> BrowserHandle:
        """Take a browser out of the pool.

        Args:
            timeout: Seconds to wait for a free slot; None waits forever

        Returns:
            BrowserHandle owned by the caller until ``release``

        Raises:
            BrowserAcquireTimeout: If no browser became available in time
            BrowserPoolClosedError: If the pool is shut down
        """
        started = self._clock()
        deadline = None if timeout is None else started + timeout

        while True:
            stale: List[BrowserHandle] = []
            waiter: Optional[asyncio.Future] = None
            create = False

            async with self._lock:
                if self._closed:
                    raise BrowserPoolClosedError()

                while self._idle:
                    handle = self._idle.popleft()
                    if handle.is_connected():
                        handle.state = HandleState.IN_USE
                        self._observe_wait(started)
                        logger.debug("browser_acquired", handle=handle.id, waited=round(self._clock() - started, 3))
                        self._publish()
                        return handle
                    handle.state = HandleState.CLOSING
                    stale.append(handle)

                if not stale:
                    if len(self._handles) + self._pending < self.size:
                        self._pending += 1
                        create = True
                    else:
                        waiter = asyncio.get_running_loop().create_future()
                        self._waiters.append(waiter)

            if stale:
                for handle in stale:
                    logger.warning("browser_disconnected_in_pool", handle=handle.id)
                    await self._close_handle(handle)
                continue

            if create:
                handle = await self._create_handle()
                self._observe_wait(started)
                return handle

            result = await self._wait(waiter, deadline, timeout)
            if result is _CREATE_SLOT:
                handle = await self._create_handle()
                self._observe_wait(started)
                return handle
            self._observe_wait(started)
            logger.debug("browser_acquired", handle=result.id, waited=round(self._clock() - started, 3))
            return result

    async def _wait(self, waiter: asyncio.Future, deadline: Optional[float], timeout: Optional[float]):
        remaining = None if deadline is None else max(0.0, deadline - self._clock())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=remaining)
        except asyncio.CancelledError:
            await self._abandon(waiter)
            raise
        if not done:
            await self._abandon(waiter)
            raise BrowserAcquireTimeout(timeout or 0.0)
        return waiter.result()

    async def _abandon(self, waiter: asyncio.Future) -> None:
        """Withdraw a waiter, handing back anything delivered to it meanwhile."""
        to_close = None
        async with self._lock:
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
            if not waiter.done():
                waiter.cancel()
                return
            if waiter.cancelled() or waiter.exception() is not None:
                return
            result = waiter.result()
            if result is _CREATE_SLOT:
                self._pending -= 1
                self._grant_slot_to_waiter()
            elif self._closed:
                result.state = HandleState.CLOSING
                to_close = result
            else:
                self._return_idle(result)
        if to_close is not None:
            await self._close_handle(to_close)

    def _observe_wait(self, started: float) -> None:
        if self.metrics is not None:
            self.metrics.browser_acquire_wait.observe(max(0.0, self._clock() - started))

    # ---------------------------------------------------------------- release

    async def release(self, handle: BrowserHandle, healthy: Optional[bool] = None) -> None:
        """Return a browser to the pool.

        The handle is validated; a disconnected browser (or ``healthy=False``)
        is closed instead of being reused.
        """
        to_close = None
        async with self._lock:
            current = self._handles.get(handle.id)
            if current is not handle or handle.state != HandleState.IN_USE:
                logger.warning("browser_release_ignored", handle=handle.id, state=handle.state.value)
                return

            handle.pages_served += 1
            handle.last_used_at = self._clock()
            usable = healthy is not False and handle.is_connected()

            if self._closed or not usable:
                handle.state = HandleState.CLOSING
                to_close = handle
            else:
                self._return_idle(handle)

            if self._closed and self._in_use_count() == 0:
                self._in_use_drained.set()

        if to_close is not None:
            if not self._closed:
                logger.warning("browser_unhealthy_on_release", handle=handle.id)
            await self._close_handle(to_close)
        else:
            logger.debug("browser_released", handle=handle.id)
        self._publish()

    def _return_idle(self, handle: BrowserHandle) -> None:
        """Give the handle to the first live waiter, or park it idle. Lock held."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            handle.state = HandleState.IN_USE
            waiter.set_result(handle)
            return
        handle.state = HandleState.IDLE
        self._idle.append(handle)

    def _grant_slot_to_waiter(self) -> None:
        """Hand a free slot to the first live waiter so it launches a browser. Lock held."""
        if self._closed:
            return
        while self._waiters and len(self._handles) + self._pending < self.size:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._pending += 1
            waiter.set_result(_CREATE_SLOT)
            return

    async def _close_browser(self, browser: Any) -> None:
        try:
            await asyncio.wait_for(browser.close(), timeout=BROWSER_CLOSE_TIMEOUT)
        except Exception as e:
            logger.warning("browser_close_failed", error=str(e))

    async def _close_handle(self, handle: BrowserHandle) -> None:
        try:
            await self._close_browser(handle.browser)
        finally:
            async with self._lock:
                self._handles.pop(handle.id, None)
                self.closed_total += 1
                self._grant_slot_to_waiter()
            logger.info("browser_closed", handle=handle.id, pages_served=handle.pages_served)
            self._publish()

    @asynccontextmanager
    async def browser(self, timeout: Optional[float] = None) -> AsyncIterator[BrowserHandle]:
        """Scoped acquisition: the handle is released on every exit path."""
        handle = await self.acquire(timeout)
        healthy = True
        try:
            yield handle
        except BaseException:
            healthy = handle.is_connected()
            raise
        finally:
            await self.release(handle, healthy=healthy)

    # --------------------------------------------------------------- shutdown

    async def close_all(self, grace: float = 1.0) -> None:
        """Shut the pool down. Safe to call more than once.

        Waiters fail with BrowserPoolClosedError, idle browsers close at
        once, and in-use browsers get ``grace`` seconds to come back before
        they are closed underneath their holders.
        """
        async with self._lock:
            already_closing = self._closed
            self._closed = True
            if not already_closing:
                while self._waiters:
                    waiter = self._waiters.popleft()
                    if not waiter.done():
                        waiter.set_exception(BrowserPoolClosedError())
                idle = list(self._idle)
                self._idle.clear()
                for handle in idle:
                    handle.state = HandleState.CLOSING
                if self._in_use_count() == 0:
                    self._in_use_drained.set()

        if already_closing:
            await self._close_done.wait()
            return

        logger.info("browser_pool_closing", idle=len(idle), in_use=self._in_use_count())
        await asyncio.gather(*(self._close_handle(h) for h in idle))

        try:
            await asyncio.wait_for(self._in_use_drained.wait(), timeout=grace)
        except asyncio.TimeoutError:
            pass

        async with self._lock:
            stragglers = [h for h in self._handles.values() if h.state == HandleState.IN_USE]
            for handle in stragglers:
                handle.state = HandleState.CLOSING
        if stragglers:
            logger.warning("browser_pool_force_closing", count=len(stragglers))
            await asyncio.gather(*(self._close_handle(h) for h in stragglers))

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning("playwright_stop_failed", error=str(e))
            self._playwright = None

        self._close_done.set()
        logger.info("browser_pool_closed", created=self.created_total, closed=self.closed_total)

    # ------------------------------------------------------------- monitoring

    def _in_use_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.state == HandleState.IN_USE)

    def _publish(self) -> None:
        if self.metrics is not None:
            self.metrics.update_browser_pool(len(self._handles), self._in_use_count())

    @property
    def closed(self) -> bool:
        return self._closed

    def get_stats(self) -> dict:
        handles = list(self._handles.values())
        return {
            "size": self.size,
            "total_browsers": len(handles),
            "available": sum(1 for h in handles if h.state == HandleState.IDLE),
            "in_use": sum(1 for h in handles if h.state == HandleState.IN_USE),
            "closing": sum(1 for h in handles if h.state == HandleState.CLOSING),
            "waiting": sum(1 for w in self._waiters if not w.done()),
            "pending_launches": self._pending,
            "created_total": self.created_total,
            "pages_served": sum(h.pages_served for h in handles),
        }

    def health_check(self) -> dict:
        """Pool status plus a list of human readable issues."""
        stats = self.get_stats()
        issues = []
        if not self._initialized:
            issues.append("Browser pool not initialized")
        if self._closed:
            issues.append("Browser pool is closed")
        if self._initialized and not self._closed and stats["total_browsers"] == 0:
            issues.append("No browsers in pool")
        if stats["waiting"] > 0 and stats["available"] == 0:
            issues.append(f"{stats['waiting']} callers waiting for a browser")
        disconnected = [
            h.id for h in self._handles.values() if h.state != HandleState.CLOSING and not h.is_connected()
        ]
        if disconnected:
            issues.append(f"Disconnected browsers: {disconnected}")

        healthy = self._initialized and not self._closed and not disconnected
        return {
            "initialized": self._initialized,
            "healthy": healthy,
            "total_browsers": stats["total_browsers"],
            "available": stats["available"],
            "in_use": stats["in_use"],
            "closing": stats["closing"],
            "waiting": stats["waiting"],
            "size": self.size,
            "issues": issues,
        }
