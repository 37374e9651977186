"""Custom exception classes for the application."""

from typing import Optional


class PriceWatchError(Exception):
    """Base exception for all PriceWatch errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(PriceWatchError):
    """Raised when settings cannot be turned into a working runtime."""


class ScraperError(PriceWatchError):
    """Raised when a scrape step fails for a URL."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(message)


class HttpStatusError(ScraperError):
    """Raised when navigation returned a non-success HTTP status."""

    REASONS = {
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        407: "Proxy Authentication Required",
        410: "Gone",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
        504: "Gateway Timeout",
    }

    def __init__(self, status: int, url: str):
        reason = self.REASONS.get(status, "Error")
        super().__init__(f"HTTP {status} {reason}", url=url, status=status)


class FetchError(ScraperError):
    """Raised when every fetch attempt (proxied and direct) failed.

    The last underlying error is kept as ``last_error`` so the caller can
    classify it.
    """

    def __init__(self, url: str, last_error: Optional[BaseException] = None, attempts: int = 0):
        self.last_error = last_error
        self.attempts = attempts
        message = str(last_error) if last_error else "Failed to fetch page"
        status = getattr(last_error, "status", None)
        super().__init__(message or type(last_error).__name__, url=url, status=status)


class ExtractionError(ScraperError):
    """Raised when a loaded page does not yield a valid product record.

    ``category`` is either ``selector_failed`` or ``parse_error``.
    """

    def __init__(self, message: str, category: str, url: Optional[str] = None):
        self.category = category
        super().__init__(message, url=url)


class BrowserPoolError(PriceWatchError):
    """Raised when the browser pool cannot provide a browser."""


class BrowserPoolClosedError(BrowserPoolError):
    """Raised by acquire() once the pool has been shut down."""

    def __init__(self):
        super().__init__("Browser pool is closed")


class BrowserAcquireTimeout(BrowserPoolError):
    """Raised when no browser became available before the deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timeout acquiring browser after {timeout:.1f}s")


class ProxySourceError(PriceWatchError):
    """Raised when the proxy source cannot be read."""


class HealthServerError(PriceWatchError):
    """Raised when the health server cannot bind any offered port."""
