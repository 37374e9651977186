"""Tests for the health, readiness, liveness and metrics endpoints."""

import httpx
import pytest
import pytest_asyncio

from conftest import AMAZON_URL, CAPTCHA_HTML
from pricewatch.api.health import SERVICE_NAME
from pricewatch.core.exceptions import HealthServerError
from pricewatch.db.session import DatabaseMonitor
from pricewatch.monitoring.health import overall_status
from pricewatch.monitoring.server import HealthServer, bind_socket, create_app
from pricewatch.monitoring.state import ApplicationState
from pricewatch.runtime import Runtime
from pricewatch.schemas.health import CheckResult, HealthChecks
from pricewatch.scrapers.coordinator import ScrapeCoordinator
from pricewatch.scrapers.error_classifier import ErrorClassifier
from pricewatch.scrapers.fetcher import Fetcher
from pricewatch.scrapers.utils.proxy_manager import NoProxyManager, ProxyManager
from pricewatch.scrapers.utils.rate_limiter import RateLimiter


def build_runtime(pool, registry, metrics, proxy_manager=None, database_url="sqlite+aiosqlite:///:memory:") -> Runtime:
    proxy_manager = proxy_manager or NoProxyManager()
    rate_limiter = RateLimiter(registry, metrics=metrics)
    classifier = ErrorClassifier(registry)
    app_state = ApplicationState()
    coordinator = ScrapeCoordinator(
        pool,
        fetcher=Fetcher(pool, proxy_manager=proxy_manager, metrics=metrics),
        rate_limiter=rate_limiter,
        classifier=classifier,
        registry=registry,
        metrics=metrics,
        app_state=app_state,
    )
    return Runtime(
        pool=pool,
        proxy_manager=proxy_manager,
        rate_limiter=rate_limiter,
        classifier=classifier,
        registry=registry,
        coordinator=coordinator,
        metrics=metrics,
        app_state=app_state,
        db_monitor=DatabaseMonitor(database_url, metrics=metrics),
        version="9.9.9",
    )


@pytest_asyncio.fixture
async def runtime(pool, registry, metrics):
    runtime = build_runtime(pool, registry, metrics)
    yield runtime
    await runtime.db_monitor.close()


@pytest_asyncio.fixture
async def client(runtime: Runtime):
    transport = httpx.ASGITransport(app=create_app(runtime))
    async with httpx.AsyncClient(transport=transport, base_url="http://health.test") as client:
        yield client


# ============================================================================
# TESTS: HEALTH
# ============================================================================

class TestHealth:
    """Full health report."""

    async def test_healthy(self, pool, registry, metrics):
        runtime = build_runtime(pool, registry, metrics, proxy_manager=ProxyManager(["http://10.0.0.1:8080"]))
        runtime.app_state.mark_ready()
        transport = httpx.ASGITransport(app=create_app(runtime))

        async with httpx.AsyncClient(transport=transport, base_url="http://health.test") as client:
            response = await client.get("/health")
        await runtime.db_monitor.close()

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == "9.9.9"
        assert set(body["checks"]) == {"database", "browserPool", "proxy", "rateLimiter"}
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["database"]["details"]["connected"] is True
        assert body["checks"]["browserPool"]["status"] == "healthy"
        assert body["application"]["ready"] is True
        assert body["application"]["scrapeStats"] == {"attempted": 0, "successful": 0, "successRate": 0}

    async def test_no_proxies_is_degraded_not_unhealthy(self, client: httpx.AsyncClient):
        """Test a failing non-critical check degrades the report but keeps 200."""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["checks"]["proxy"]["status"] == "degraded"

    async def test_proxy_details(self, pool, registry, metrics):
        runtime = build_runtime(pool, registry, metrics, proxy_manager=ProxyManager(["http://10.0.0.1:8080"]))
        transport = httpx.ASGITransport(app=create_app(runtime))

        async with httpx.AsyncClient(transport=transport, base_url="http://health.test") as client:
            body = (await client.get("/health")).json()

        assert body["checks"]["proxy"]["status"] == "healthy"
        assert body["checks"]["proxy"]["details"]["working"] == 1
        await runtime.db_monitor.close()

    async def test_healthz_alias(self, client: httpx.AsyncClient):
        response = await client.get("/healthz")

        assert response.status_code == 200
        assert "checks" in response.json()

    async def test_database_down_is_unhealthy(self, pool, registry, metrics):
        """Test an unconfigured database makes /health answer 503."""
        runtime = build_runtime(pool, registry, metrics, database_url="")
        transport = httpx.ASGITransport(app=create_app(runtime))

        async with httpx.AsyncClient(transport=transport, base_url="http://health.test") as client:
            response = await client.get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["checks"]["database"]["details"]["error"] == "not configured"

    async def test_closed_pool_is_unhealthy(self, client: httpx.AsyncClient, runtime: Runtime):
        await runtime.coordinator.shutdown(grace=0.1)

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["browserPool"]["status"] == "unhealthy"

    async def test_site_health_included(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.classifier.record_error(AMAZON_URL, Exception("blocked"), CAPTCHA_HTML)

        sites = (await client.get("/health")).json()["sites"]

        assert sites["amazon"]["status"] == "critical"
        assert sites["amazon"]["lastError"]["category"] == "captcha"
        assert sites["amazon"]["cooldownUntil"] is not None


class TestOverallStatus:
    """Rolling component checks into one status."""

    @pytest.mark.parametrize(
        "database,browser_pool,proxy,rate_limiter,expected",
        [
            ("healthy", "healthy", "healthy", "healthy", "healthy"),
            ("healthy", "healthy", "degraded", "healthy", "degraded"),
            ("healthy", "healthy", "healthy", "degraded", "degraded"),
            ("unhealthy", "healthy", "healthy", "healthy", "unhealthy"),
            ("healthy", "unhealthy", "degraded", "healthy", "unhealthy"),
        ],
    )
    def test_overall_status(self, database, browser_pool, proxy, rate_limiter, expected):
        checks = HealthChecks(
            database=CheckResult(status=database),
            browser_pool=CheckResult(status=browser_pool),
            proxy=CheckResult(status=proxy),
            rate_limiter=CheckResult(status=rate_limiter),
        )

        assert overall_status(checks) == expected


# ============================================================================
# TESTS: READINESS AND LIVENESS
# ============================================================================

class TestReadinessLiveness:
    """Readiness and liveness."""

    async def test_not_ready_before_startup(self, client: httpx.AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["ready"] is False
        assert body["checks"] == {"database": True, "browserPool": True, "appInitialized": False}

    async def test_ready_after_startup(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.app_state.mark_ready()

        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    async def test_readiness_alias(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.app_state.mark_ready()

        assert (await client.get("/readiness")).status_code == 200

    async def test_not_ready_after_shutdown(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.app_state.mark_ready()
        await runtime.coordinator.shutdown(grace=0.1)

        response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["browserPool"] is False

    async def test_live(self, client: httpx.AsyncClient):
        response = await client.get("/live")

        assert response.status_code == 200
        body = response.json()
        assert body["alive"] is True
        assert body["pid"] > 0
        assert set(body["memory"]) == {"heapUsed", "heapTotal", "rss"}
        assert body["memory"]["rss"] > 0

    async def test_live_during_shutdown(self, client: httpx.AsyncClient, runtime: Runtime):
        """Test liveness keeps answering while the pool is closed."""
        await runtime.coordinator.shutdown(grace=0.1)

        assert (await client.get("/live")).status_code == 200
        assert (await client.get("/liveness")).status_code == 200


# ============================================================================
# TESTS: METRICS
# ============================================================================

class TestMetricsEndpoints:
    """Prometheus and JSON metrics."""

    async def test_prometheus_text(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.metrics.record_scrape("amazon", True, 1.5)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text = response.text
        assert 'price_tracker_scrape_attempts_total{site="amazon",status="success"} 1.0' in text
        assert "price_tracker_browser_pool_size 1.0" in text
        assert 'price_tracker_proxy_pool_size{status="working"} 0.0' in text

    async def test_json_metrics(self, client: httpx.AsyncClient, runtime: Runtime):
        runtime.app_state.record_scrape_attempt(success=True)
        runtime.app_state.record_scrape_attempt(success=False)
        runtime.app_state.record_error(RuntimeError("selector missing"))

        response = await client.get("/metrics/json")

        assert response.status_code == 200
        body = response.json()
        assert body["scrapes"] == {"attempted": 2, "successful": 1, "successRate": 50}
        assert body["errors"][0]["message"] == "selector missing"
        assert body["browserPool"]["total_browsers"] == 1
        assert body["database"]["connected"] is True
        assert "price_tracker_browser_pool_size" in body["metrics"]


# ============================================================================
# TESTS: ROUTING
# ============================================================================

class TestRouting:
    async def test_index(self, client: httpx.AsyncClient):
        body = (await client.get("/")).json()

        assert body["name"] == SERVICE_NAME
        assert body["version"] == "9.9.9"
        assert [e["path"] for e in body["endpoints"]] == ["/health", "/ready", "/live", "/metrics", "/metrics/json"]

    async def test_unknown_path(self, client: httpx.AsyncClient):
        response = await client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "path": "/nope"}

    async def test_cors_header(self, client: httpx.AsyncClient):
        response = await client.get("/live", headers={"Origin": "http://dashboard.example"})

        assert response.headers["access-control-allow-origin"] == "*"


# ============================================================================
# TESTS: EMBEDDED SERVER
# ============================================================================

class TestHealthServer:
    """Port selection for the embedded uvicorn server."""

    async def test_occupied_port_moves_to_next(self, runtime: Runtime):
        """Test the server binds the next port when the configured one is taken."""
        blocker = bind_socket("127.0.0.1", 0)
        taken = blocker.getsockname()[1]
        server = HealthServer(runtime, host="127.0.0.1", port=taken, attempts=5)
        try:
            port = await server.start()

            assert port != taken
            async with httpx.AsyncClient() as client:
                response = await client.get(f"http://127.0.0.1:{port}/live")
            assert response.status_code == 200
        finally:
            await server.stop()
            blocker.close()

    async def test_no_free_port(self, runtime: Runtime):
        blocker = bind_socket("127.0.0.1", 0)
        server = HealthServer(runtime, host="127.0.0.1", port=blocker.getsockname()[1], attempts=1)
        try:
            with pytest.raises(HealthServerError):
                await server.start()
        finally:
            blocker.close()
