"""Pydantic schemas for the health and metrics endpoints."""

from pricewatch.schemas.health import (
    ApplicationStatus,
    CheckResult,
    EndpointInfo,
    ErrorEntry,
    HealthChecks,
    HealthResponse,
    LivenessResponse,
    MemoryUsage,
    MetricsJsonResponse,
    ReadinessChecks,
    ReadinessResponse,
    ScrapeStats,
    ServiceInfo,
)

__all__ = [
    "ApplicationStatus",
    "CheckResult",
    "EndpointInfo",
    "ErrorEntry",
    "HealthChecks",
    "HealthResponse",
    "LivenessResponse",
    "MemoryUsage",
    "MetricsJsonResponse",
    "ReadinessChecks",
    "ReadinessResponse",
    "ScrapeStats",
    "ServiceInfo",
]
