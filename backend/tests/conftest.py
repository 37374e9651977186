"""Pytest configuration and shared fixtures.

Playwright is replaced by small in-memory fakes: a FakeWeb maps URLs to
canned responses, and FakeBrowser / FakeContext / FakePage route
navigations through it, failing for proxies marked as dead.
"""

import asyncio
from typing import Dict, List, Optional, Set, Union

import pytest
import pytest_asyncio

from pricewatch.monitoring.metrics import ScraperMetrics
from pricewatch.monitoring.state import ApplicationState
from pricewatch.scrapers.coordinator import ScrapeCoordinator
from pricewatch.scrapers.error_classifier import ErrorClassifier
from pricewatch.scrapers.fetcher import Fetcher
from pricewatch.scrapers.site_registry import SiteRegistry
from pricewatch.scrapers.utils.browser_pool import BrowserPool
from pricewatch.scrapers.utils.proxy_manager import NoProxyManager, ProxyManager
from pricewatch.scrapers.utils.rate_limiter import RateLimiter


# ============================================================================
# PAGES
# ============================================================================

AMAZON_URL = "https://www.amazon.com/dp/XYZ"

AMAZON_HTML = """
<html><body>
  <span id="productTitle"> Example Wireless Headphones </span>
  <a id="bylineInfo">Visit the Acme Store</a>
  <div id="corePrice_feature_div">
    <span class="a-price"><span class="a-offscreen">$1,299.99</span></span>
  </div>
  <div id="availability"><span>In Stock</span></div>
  <input type="submit" id="add-to-cart-button" value="Add to Cart">
  <input type="hidden" id="ASIN" value="XYZ">
  <img id="landingImage" src="https://m.media-amazon.com/images/I/xyz.jpg">
</body></html>
"""

CAPTCHA_HTML = """
<html><body>
  <h4>Enter the characters you see below</h4>
  <p>Sorry, we just need to make sure you're not a robot.</p>
  <form action="/errors/validateCaptcha"><input id="captchacharacters"></form>
</body></html>
"""

JSON_LD_HTML = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "BreadcrumbList", "itemListElement": []},
  {"@type": ["Product", "Thing"], "name": "Novelty Lamp", "sku": "NL-42",
   "brand": {"@type": "Brand", "name": "Lumen"},
   "image": ["/img/lamp.jpg"],
   "offers": {"@type": "Offer", "price": "49.50", "priceCurrency": "eur",
              "availability": "https://schema.org/InStock"}}
]}
</script>
</head><body><h1>Novelty Lamp</h1></body></html>
"""

PLAIN_HTML = """
<html><body>
  <h1>About our shop</h1>
  <p>We sell lamps. Call us for prices.</p>
</body></html>
"""


# ============================================================================
# PLAYWRIGHT FAKES
# ============================================================================

class FakeResponse:
    def __init__(self, status: int):
        self.status = status


class FakeWeb:
    """URL -> (status, html) table shared by every fake browser."""

    def __init__(self):
        self.pages: Dict[str, List[tuple]] = {}
        self.failing_proxies: Set[str] = set()
        self.navigations: List[tuple] = []
        self.goto_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def serve(self, url: str, html: str, status: int = 200) -> None:
        self.pages[url] = [(status, html)]

    def serve_sequence(self, url: str, *responses: tuple) -> None:
        """Successive navigations get successive responses; the last one repeats."""
        self.pages[url] = list(responses)

    def respond(self, url: str) -> tuple:
        responses = self.pages.get(url)
        if not responses:
            return 404, "<html><body><h1>Page not found</h1></body></html>"
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]


class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.web = context.web
        self._html = ""
        self.closed = False

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[float] = None):
        web = self.web
        web.navigations.append((url, self.context.proxy_server))
        if self.context.proxy_server in web.failing_proxies:
            raise Exception(f"net::ERR_PROXY_CONNECTION_FAILED at {url}")
        if not self.context.browser.connected:
            raise Exception("Target page, context or browser has been closed")
        web.in_flight += 1
        web.max_in_flight = max(web.max_in_flight, web.in_flight)
        try:
            if web.goto_delay:
                await asyncio.sleep(web.goto_delay)
        finally:
            web.in_flight -= 1
        status, self._html = web.respond(url)
        return FakeResponse(status)

    async def wait_for_selector(self, selector: str, timeout: Optional[float] = None):
        return object()

    async def content(self) -> str:
        return self._html

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", options: dict):
        self.browser = browser
        self.web = browser.web
        self.options = options
        proxy = options.get("proxy")
        self.proxy_server = proxy["server"] if proxy else None
        self.init_scripts: List[str] = []
        self.pages: List[FakePage] = []
        self.closed = False

    async def add_init_script(self, script: str):
        self.init_scripts.append(script)

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, web: FakeWeb):
        self.web = web
        self.connected = True
        self.close_calls = 0
        self.contexts: List[FakeContext] = []

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options) -> FakeContext:
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.close_calls += 1
        self.connected = False


class FakeLauncher:
    """Async callable handed to BrowserPool in place of Playwright."""

    def __init__(self, web: FakeWeb):
        self.web = web
        self.browsers: List[FakeBrowser] = []
        self.fail_with: Optional[Exception] = None

    async def __call__(self) -> FakeBrowser:
        if self.fail_with is not None:
            raise self.fail_with
        browser = FakeBrowser(self.web)
        self.browsers.append(browser)
        return browser


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and yields once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest.fixture
def metrics() -> ScraperMetrics:
    return ScraperMetrics(default_collectors=False)


@pytest.fixture
def registry() -> SiteRegistry:
    return SiteRegistry()


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture
def launcher(web: FakeWeb) -> FakeLauncher:
    return FakeLauncher(web)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def pool(launcher: FakeLauncher, metrics: ScraperMetrics):
    """A started two-browser pool over fake browsers."""
    browser_pool = BrowserPool(size=2, launcher=launcher, metrics=metrics)
    await browser_pool.start()
    yield browser_pool
    await browser_pool.close_all(grace=0.1)


@pytest_asyncio.fixture
async def make_coordinator(launcher, metrics, registry, recording_sleep):
    """Factory for a coordinator wired to fakes.

    Rate limiter delays and retry delays go through ``recording_sleep`` so
    tests never wait for real.
    """
    created: List[ScrapeCoordinator] = []

    def factory(
        proxies: Union[List[str], None] = None,
        pool_size: int = 2,
        max_attempts: int = 2,
        timeout: Optional[float] = 30.0,
    ) -> ScrapeCoordinator:
        browser_pool = BrowserPool(size=pool_size, launcher=launcher, metrics=metrics)
        proxy_manager = ProxyManager(proxies) if proxies else NoProxyManager()
        rate_limiter = RateLimiter(registry, metrics=metrics, sleep=recording_sleep)
        classifier = ErrorClassifier(registry)
        fetcher = Fetcher(
            browser_pool,
            proxy_manager=proxy_manager,
            metrics=metrics,
            acquire_timeout=5.0,
            sleep=recording_sleep,
        )
        coordinator = ScrapeCoordinator(
            browser_pool,
            fetcher=fetcher,
            rate_limiter=rate_limiter,
            classifier=classifier,
            registry=registry,
            metrics=metrics,
            app_state=ApplicationState(),
            max_attempts=max_attempts,
            default_timeout=timeout,
            sleep=recording_sleep,
        )
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.shutdown(grace=0.1)
