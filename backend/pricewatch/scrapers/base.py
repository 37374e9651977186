"""Core scraping data structures.

Jobs flow into the coordinator as ScrapeJob, successful extractions come
out as ProductRecord, and every coordinator call returns a ScrapeResult
holding either the record or an ErrorClassification.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from pricewatch.scrapers.error_classifier import ErrorClassification


@dataclass(frozen=True)
class ScrapeOptions:
    """Per-job fetch options."""

    use_proxy: bool = True
    allow_direct_fallback: bool = True
    anti_bot_delay: bool = True


@dataclass
class ScrapeJob:
    """A single URL to scrape, with its options and deadline.

    ``deadline`` is an absolute ``time.monotonic()`` instant; ``None`` means
    the job never times out.
    """

    url: str
    options: ScrapeOptions = field(default_factory=ScrapeOptions)
    deadline: Optional[float] = None

    def __post_init__(self):
        """Validate data after initialization."""
        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"URL must be an absolute http(s) URL: {self.url!r}")

    @classmethod
    def create(
        cls,
        url: str,
        timeout: Optional[float] = None,
        use_proxy: bool = True,
        allow_direct_fallback: bool = True,
        anti_bot_delay: bool = True,
    ) -> "ScrapeJob":
        """Build a job whose deadline is ``timeout`` seconds from now."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        return cls(
            url=url,
            options=ScrapeOptions(
                use_proxy=use_proxy,
                allow_direct_fallback=allow_direct_fallback,
                anti_bot_delay=anti_bot_delay,
            ),
            deadline=deadline,
        )

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


@dataclass
class RawProduct:
    """Unvalidated field text pulled from a page before price parsing."""

    title: Optional[str] = None
    price_text: Optional[str] = None
    currency: Optional[str] = None
    availability: Optional[str] = None
    available: Optional[bool] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    image: Optional[str] = None


@dataclass
class ProductRecord:
    """Validated product data extracted from a single page load."""

    site: str
    url: str
    title: str
    price: Decimal
    currency: str = "USD"
    availability: Optional[str] = None
    available: Optional[bool] = None  # None = unknown
    brand: Optional[str] = None
    sku: Optional[str] = None
    image: Optional[str] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "selectors"  # 'structured_data', 'site_extractor' or 'selectors'

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.title or not self.title.strip():
            raise ValueError("title is required")
        if self.price is None or self.price <= 0:
            raise ValueError("price must be a positive Decimal")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError(f"Invalid currency code: {self.currency!r}")

    def to_dict(self) -> dict:
        return {
            "site": self.site,
            "url": self.url,
            "title": self.title,
            "price": str(self.price),
            "currency": self.currency,
            "availability": self.availability,
            "available": self.available,
            "brand": self.brand,
            "sku": self.sku,
            "image": self.image,
            "capturedAt": self.captured_at.isoformat(),
            "source": self.source,
        }


@dataclass
class ScrapeResult:
    """Outcome of one coordinator call: a record or a classification."""

    url: str
    site: str
    record: Optional[ProductRecord] = None
    error: Optional["ErrorClassification"] = None
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "site": self.site,
            "ok": self.ok,
            "attempts": self.attempts,
            "durationSeconds": round(self.duration_seconds, 3),
            "record": self.record.to_dict() if self.record else None,
            "error": self.error.to_dict() if self.error else None,
        }
