"""Health, readiness, liveness and metrics endpoints."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from pricewatch.monitoring.health import UNHEALTHY, HealthReporter
from pricewatch.runtime import Runtime
from pricewatch.schemas.health import EndpointInfo, ServiceInfo

router = APIRouter()

SERVICE_NAME = "E-Commerce Price Tracker"

ENDPOINTS = [
    EndpointInfo(path="/health", description="Full health check"),
    EndpointInfo(path="/ready", description="Readiness check"),
    EndpointInfo(path="/live", description="Liveness check"),
    EndpointInfo(path="/metrics", description="Prometheus metrics"),
    EndpointInfo(path="/metrics/json", description="JSON metrics"),
]


def get_runtime(request: Request) -> Runtime:
    """The Runtime attached to the application at startup."""
    return request.app.state.runtime


def get_reporter(runtime: Runtime = Depends(get_runtime)) -> HealthReporter:
    return HealthReporter(runtime)


@router.get("/")
async def index(runtime: Runtime = Depends(get_runtime)):
    """Service name, version and available endpoints."""
    return ServiceInfo(name=SERVICE_NAME, version=runtime.version, endpoints=ENDPOINTS).dump()


@router.get("/health")
@router.get("/healthz", include_in_schema=False)
async def health(reporter: HealthReporter = Depends(get_reporter)):
    """Full health check with all component status.

    Returns 200 when healthy or degraded, 503 when the database or the
    browser pool is unhealthy.
    """
    report = await reporter.health()
    status_code = 503 if report.status == UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report.dump())


@router.get("/ready")
@router.get("/readiness", include_in_schema=False)
async def ready(reporter: HealthReporter = Depends(get_reporter)):
    """Readiness: is the app ready to accept work?"""
    report = await reporter.readiness()
    return JSONResponse(status_code=200 if report.ready else 503, content=report.dump())


@router.get("/live")
@router.get("/liveness", include_in_schema=False)
async def live(reporter: HealthReporter = Depends(get_reporter)):
    """Liveness: confirms the process is running."""
    return reporter.liveness().dump()


@router.get("/metrics")
async def metrics(reporter: HealthReporter = Depends(get_reporter)):
    """Prometheus text exposition."""
    reporter.refresh_gauges()
    runtime = reporter.runtime
    return Response(content=runtime.metrics.render(), media_type=runtime.metrics.content_type)


@router.get("/metrics/json")
async def metrics_json(reporter: HealthReporter = Depends(get_reporter)):
    """JSON metrics (legacy format)."""
    reporter.refresh_gauges()
    report = await reporter.metrics_json()
    return report.dump()
