"""Error classification and per-site health tracking.

Every scrape failure is labelled with a category, and each category maps to
a fixed severity, retryability and cooldown. Recorded classifications drive
a small per-site status machine (healthy, recovering, degraded, unhealthy,
critical) whose cooldown gates new requests in the coordinator.
"""

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Deque, Dict, FrozenSet, Mapping, Optional, Pattern, Tuple, Union

import structlog

from pricewatch.core.exceptions import ExtractionError
from pricewatch.scrapers.site_registry import SiteRegistry, get_site_registry


logger = structlog.get_logger(__name__)

HISTORY_SIZE = 100
MAX_RETRY_DELAY_SECONDS = 60.0
BASE_RETRY_DELAY_SECONDS = 5.0
RECOVERY_SUCCESSES = 2


class ErrorCategory(str, Enum):
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    SELECTOR_FAILED = "selector_failed"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    AUTH_REQUIRED = "auth_required"
    OUT_OF_STOCK = "out_of_stock"
    GEO_BLOCKED = "geo_blocked"
    UNKNOWN = "unknown"
    # Produced by the coordinator, never by pattern matching
    COOLDOWN = "cooldown"
    SHUTDOWN = "shutdown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SiteStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    RECOVERING = "recovering"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorPolicy:
    severity: ErrorSeverity
    retryable: bool
    cooldown_seconds: float
    recommendation: str


ERROR_POLICIES: Mapping[ErrorCategory, ErrorPolicy] = MappingProxyType({
    ErrorCategory.CAPTCHA: ErrorPolicy(
        ErrorSeverity.CRITICAL, False, 300.0,
        "Stop requests to site, rotate proxy/IP, wait before retrying",
    ),
    ErrorCategory.RATE_LIMIT: ErrorPolicy(
        ErrorSeverity.HIGH, True, 60.0, "Increase delay between requests, use backoff",
    ),
    ErrorCategory.BLOCKED: ErrorPolicy(
        ErrorSeverity.HIGH, True, 120.0, "Rotate proxy, change user agent",
    ),
    ErrorCategory.GEO_BLOCKED: ErrorPolicy(
        ErrorSeverity.HIGH, True, 60.0, "Try proxy in different region",
    ),
    ErrorCategory.AUTH_REQUIRED: ErrorPolicy(
        ErrorSeverity.HIGH, False, 0.0, "Site requires login, cannot scrape this page",
    ),
    ErrorCategory.NETWORK: ErrorPolicy(
        ErrorSeverity.MEDIUM, True, 5.0, "Check network, rotate proxy",
    ),
    ErrorCategory.TIMEOUT: ErrorPolicy(
        ErrorSeverity.MEDIUM, True, 10.0, "Increase timeout, try different proxy",
    ),
    ErrorCategory.SELECTOR_FAILED: ErrorPolicy(
        ErrorSeverity.MEDIUM, True, 0.0, "Try alternative selectors, check if page layout changed",
    ),
    ErrorCategory.UNKNOWN: ErrorPolicy(
        ErrorSeverity.MEDIUM, True, 30.0, "Log for investigation, retry with caution",
    ),
    ErrorCategory.NOT_FOUND: ErrorPolicy(
        ErrorSeverity.LOW, False, 0.0, "Mark product as unavailable, remove from tracking",
    ),
    ErrorCategory.OUT_OF_STOCK: ErrorPolicy(
        ErrorSeverity.LOW, False, 0.0, "Product out of stock, mark status, continue monitoring",
    ),
    ErrorCategory.PARSE_ERROR: ErrorPolicy(
        ErrorSeverity.LOW, True, 0.0, "Check page content format, update parser",
    ),
    ErrorCategory.COOLDOWN: ErrorPolicy(
        ErrorSeverity.MEDIUM, False, 0.0, "Site is cooling down, retry after the cooldown expires",
    ),
    ErrorCategory.SHUTDOWN: ErrorPolicy(
        ErrorSeverity.LOW, False, 0.0, "Coordinator is shutting down",
    ),
})


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


PatternTable = Tuple[Tuple[ErrorCategory, Tuple[Pattern, ...]], ...]

# Ordered per site: the first matching category wins
ERROR_PATTERNS: Mapping[str, PatternTable] = MappingProxyType({
    "amazon": (
        (ErrorCategory.CAPTCHA, _compile(
            r"captcha",
            r"robot check",
            r"automated access",
            r"enter the characters",
            r"sorry, we just need to make sure",
        )),
        (ErrorCategory.RATE_LIMIT, _compile(
            r"too many requests", r"request was throttled", r"slow down", r"rate limit",
        )),
        (ErrorCategory.BLOCKED, _compile(r"access denied", r"page not available")),
        (ErrorCategory.NOT_FOUND, _compile(r"page not found", r"dog.*404", r"no longer available")),
        (ErrorCategory.OUT_OF_STOCK, _compile(r"currently unavailable", r"out of stock")),
    ),
    "burton": (
        (ErrorCategory.CAPTCHA, _compile(r"verify you are human", r"captcha")),
        (ErrorCategory.RATE_LIMIT, _compile(r"too many requests", r"rate limit")),
        (ErrorCategory.BLOCKED, _compile(r"access denied", r"forbidden")),
        (ErrorCategory.NOT_FOUND, _compile(r"page not found", r"product not found")),
        (ErrorCategory.OUT_OF_STOCK, _compile(r"sold out", r"out of stock", r"notify me")),
    ),
    "target": (
        (ErrorCategory.CAPTCHA, _compile(r"prove you're not a robot", r"captcha")),
        (ErrorCategory.RATE_LIMIT, _compile(r"too many requests", r"slow down")),
        (ErrorCategory.BLOCKED, _compile(r"access denied")),
        (ErrorCategory.NOT_FOUND, _compile(r"page not found", r"item not available")),
    ),
    "walmart": (
        (ErrorCategory.CAPTCHA, _compile(
            r"robot or human", r"verify you're a human", r"captcha", r"press and hold",
        )),
        (ErrorCategory.RATE_LIMIT, _compile(r"too many requests", r"rate limit")),
        (ErrorCategory.BLOCKED, _compile(r"access denied")),
        (ErrorCategory.GEO_BLOCKED, _compile(r"not available in your location", r"shipping restrictions")),
    ),
    "bestbuy": (
        (ErrorCategory.CAPTCHA, _compile(r"verify you're human", r"captcha")),
        # Queue pages are treated as rate limiting
        (ErrorCategory.RATE_LIMIT, _compile(r"too many requests", r"you're in line", r"high traffic")),
    ),
    "default": (
        (ErrorCategory.CAPTCHA, _compile(
            r"captcha",
            r"are you a robot",
            r"not a robot",
            r"verify you are (a )?human",
            r"enter the characters you see",
        )),
        (ErrorCategory.RATE_LIMIT, _compile(r"\b429\b", r"too many requests", r"rate limit", r"throttl")),
        (ErrorCategory.BLOCKED, _compile(r"\b403\b", r"forbidden", r"access denied", r"\bblocked\b")),
        (ErrorCategory.NOT_FOUND, _compile(r"\b404\b", r"page not found", r"product not found")),
        (ErrorCategory.TIMEOUT, _compile(r"timeout", r"timed out", r"ETIMEDOUT", r"ECONNRESET")),
        (ErrorCategory.NETWORK, _compile(
            r"ENOTFOUND",
            r"ECONNREFUSED",
            r"net::ERR_",
            r"connection (refused|reset|closed)",
            r"network",
        )),
    ),
})

# Transport-level categories are only read from the error message; product
# pages mention "network" or "timeout" often enough to mislead a page scan.
MESSAGE_ONLY_CATEGORIES = frozenset({ErrorCategory.TIMEOUT, ErrorCategory.NETWORK})

# Challenge pages are often served as 403 or 503; their wording beats the status code
PAGE_OVER_STATUS_CATEGORIES = frozenset({ErrorCategory.CAPTCHA, ErrorCategory.BLOCKED})

STATUS_CATEGORIES: Mapping[int, ErrorCategory] = MappingProxyType({
    429: ErrorCategory.RATE_LIMIT,
    503: ErrorCategory.RATE_LIMIT,
    403: ErrorCategory.BLOCKED,
    404: ErrorCategory.NOT_FOUND,
    410: ErrorCategory.NOT_FOUND,
    401: ErrorCategory.AUTH_REQUIRED,
    407: ErrorCategory.AUTH_REQUIRED,
})


@dataclass
class ErrorClassification:
    """Structured label attached to any scrape outcome other than success."""

    category: ErrorCategory
    site: str
    url: str
    severity: ErrorSeverity
    retryable: bool
    cooldown_seconds: float
    message: str
    recommendation: str = ""
    status: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_category(
        cls,
        category: ErrorCategory,
        site: str,
        url: str,
        message: str,
        status: Optional[int] = None,
    ) -> "ErrorClassification":
        policy = ERROR_POLICIES[category]
        return cls(
            category=category,
            site=site,
            url=url,
            severity=policy.severity,
            retryable=policy.retryable,
            cooldown_seconds=policy.cooldown_seconds,
            message=message,
            recommendation=policy.recommendation,
            status=status,
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "site": self.site,
            "url": self.url,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "cooldownSeconds": self.cooldown_seconds,
            "message": self.message,
            "recommendation": self.recommendation,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""


@dataclass
class SiteHealth:
    """Running error window for one site."""

    site: str
    errors: Deque[ErrorClassification] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))
    total_errors: int = 0
    consecutive_errors: int = 0
    consecutive_successes: int = 0
    last_error: Optional[ErrorClassification] = None
    last_success_at: Optional[float] = None
    status: SiteStatus = SiteStatus.HEALTHY
    cooldown_until: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "site": self.site,
            "status": self.status.value,
            "totalErrors": self.total_errors,
            "consecutiveErrors": self.consecutive_errors,
            "consecutiveSuccesses": self.consecutive_successes,
            "lastError": {
                "category": self.last_error.category.value,
                "timestamp": self.last_error.timestamp.isoformat(),
            } if self.last_error else None,
            "lastSuccess": _iso(self.last_success_at),
            "cooldownUntil": _iso(self.cooldown_until),
        }


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat()


def _error_message(error) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


ErrorLike = Union[BaseException, str, ErrorClassification]


class ErrorClassifier:
    """Classifies scrape failures and tracks per-site health.

    ``classify`` is pure. ``record_error`` / ``record_success`` mutate the
    site's health under that site's lock.
    """

    def __init__(
        self,
        registry: Optional[SiteRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry or get_site_registry()
        self._clock = clock
        self._sites: Dict[str, SiteHealth] = {}
        self._sites_lock = threading.Lock()

    # ---------------------------------------------------------------- classify

    def classify(self, error: ErrorLike, url: str, page_content: Optional[str] = None) -> ErrorClassification:
        """Label an error with a category and its policy.

        Args:
            error: Exception, message string, or an existing classification
            url: URL the error happened on
            page_content: Visible page text, when a page was loaded

        Returns:
            ErrorClassification
        """
        if isinstance(error, ErrorClassification):
            return error

        site = self.registry.site_key(url)
        message = _error_message(error)
        status = getattr(error, "status", None)

        site_key = self.registry.detect(url).key
        category = None
        if page_content:
            category = self._match_patterns(site_key, "", page_content, only=PAGE_OVER_STATUS_CATEGORIES)
        if category is None and isinstance(status, int):
            category = STATUS_CATEGORIES.get(status)
        if category is None:
            category = self._match_patterns(site_key, message, page_content)
        if category is None and isinstance(error, ExtractionError):
            category = ErrorCategory(error.category)
        if category is None:
            lowered = message.lower()
            if "selector" in lowered or "could not find" in lowered:
                category = ErrorCategory.SELECTOR_FAILED
            elif "timeout" in lowered:
                category = ErrorCategory.TIMEOUT
            else:
                category = ErrorCategory.UNKNOWN

        return ErrorClassification.for_category(category, site, url, message, status=status)

    @staticmethod
    def _match_patterns(
        site_key: str,
        message: str,
        page_content: Optional[str],
        only: Optional[FrozenSet[ErrorCategory]] = None,
    ) -> Optional[ErrorCategory]:
        tables = [ERROR_PATTERNS["default"]]
        if site_key in ERROR_PATTERNS and site_key != "default":
            tables.insert(0, ERROR_PATTERNS[site_key])

        for table in tables:
            for category, patterns in table:
                if only is not None and category not in only:
                    continue
                text = message
                if page_content and category not in MESSAGE_ONLY_CATEGORIES:
                    text = f"{message}\n{page_content}"
                if any(p.search(text) for p in patterns):
                    return category
        return None

    # ------------------------------------------------------------ site health

    def _health(self, site: str) -> SiteHealth:
        with self._sites_lock:
            health = self._sites.get(site)
            if health is None:
                health = SiteHealth(site=site)
                self._sites[site] = health
            return health

    def record_error(
        self, url: str, error: ErrorLike, page_content: Optional[str] = None
    ) -> ErrorClassification:
        """Classify an error and fold it into the site's health."""
        classification = self.classify(error, url, page_content)
        health = self._health(classification.site)
        now = self._clock()

        with health.lock:
            health.errors.append(classification)
            health.total_errors += 1
            health.consecutive_errors += 1
            health.consecutive_successes = 0
            health.last_error = classification

            cooldown_until = now + classification.cooldown_seconds
            if classification.severity == ErrorSeverity.CRITICAL:
                health.status = SiteStatus.CRITICAL
                health.cooldown_until = max(health.cooldown_until or 0.0, cooldown_until)
            elif classification.severity == ErrorSeverity.HIGH and health.consecutive_errors >= 3:
                if not self._critical_cooldown_active(health, now):
                    health.status = SiteStatus.DEGRADED
                health.cooldown_until = max(health.cooldown_until or 0.0, cooldown_until)
            elif health.consecutive_errors >= 5 and not self._critical_cooldown_active(health, now):
                health.status = SiteStatus.UNHEALTHY

            status = health.status
            consecutive = health.consecutive_errors

        logger.warning(
            "site_error_classified",
            site=classification.site,
            category=classification.category.value,
            severity=classification.severity.value,
            retryable=classification.retryable,
            recommendation=classification.recommendation,
            consecutive_errors=consecutive,
            site_status=status.value,
        )
        return classification

    def record_success(self, url: str) -> None:
        site = self.registry.site_key(url)
        health = self._health(site)

        with health.lock:
            previous = health.status
            health.consecutive_errors = 0
            health.consecutive_successes += 1
            health.last_success_at = self._clock()

            if health.status == SiteStatus.RECOVERING and health.consecutive_successes >= RECOVERY_SUCCESSES:
                health.status = SiteStatus.HEALTHY
                health.cooldown_until = None
            elif health.status not in (SiteStatus.HEALTHY, SiteStatus.RECOVERING):
                health.status = SiteStatus.RECOVERING
                health.consecutive_successes = 1

            current = health.status

        if current != previous:
            logger.info("site_status_changed", site=site, previous=previous.value, status=current.value)

    @staticmethod
    def _critical_cooldown_active(health: SiteHealth, now: float) -> bool:
        return (
            health.status == SiteStatus.CRITICAL
            and health.cooldown_until is not None
            and now < health.cooldown_until
        )

    def cooldown_remaining(self, url: str) -> float:
        """Seconds until the site's cooldown expires (0 when none is active)."""
        site = self.registry.site_key(url)
        with self._sites_lock:
            health = self._sites.get(site)
        if health is None:
            return 0.0

        now = self._clock()
        with health.lock:
            if health.cooldown_until is None:
                return 0.0
            if now >= health.cooldown_until:
                health.cooldown_until = None
                return 0.0
            return health.cooldown_until - now

    def is_in_cooldown(self, url: str) -> bool:
        return self.cooldown_remaining(url) > 0

    def should_retry(
        self,
        error: ErrorLike,
        url: str,
        attempt: int,
        max_attempts: int,
        page_content: Optional[str] = None,
    ) -> RetryDecision:
        """Decide whether a failed attempt should be retried, and after how long.

        Args:
            error: The failure (or its classification)
            url: Failed URL
            attempt: 1-based number of the attempt that just failed
            max_attempts: Attempt budget for the job
            page_content: Visible page text, when available

        Returns:
            RetryDecision with an exponential delay capped at 60 seconds
        """
        classification = self.classify(error, url, page_content)

        if not classification.retryable:
            return RetryDecision(False, reason=f"{classification.category.value} is not retryable")
        if attempt >= max_attempts:
            return RetryDecision(False, reason=f"max attempts ({max_attempts}) reached")

        health = self._sites.get(classification.site)
        if health is not None:
            with health.lock:
                if self._critical_cooldown_active(health, self._clock()):
                    return RetryDecision(False, reason="site in critical cooldown")

        base = classification.cooldown_seconds or BASE_RETRY_DELAY_SECONDS
        delay = min(base * (2 ** max(attempt - 1, 0)), MAX_RETRY_DELAY_SECONDS)
        return RetryDecision(True, delay_seconds=delay, reason=f"retrying {classification.category.value}")

    def error_summary(self, error: ErrorLike, url: str) -> str:
        """One-line human readable description of an error."""
        c = self.classify(error, url)
        return f"[{c.site}] {c.category.value} ({c.severity.value}): {c.message}. {c.recommendation}"

    # --------------------------------------------------------------- snapshots

    def get_site_health(self, site: str) -> SiteHealth:
        """Health for a site key; unseen sites report status ``unknown``."""
        with self._sites_lock:
            health = self._sites.get(site)
        return health or SiteHealth(site=site, status=SiteStatus.UNKNOWN)

    def get_all_site_health(self) -> Dict[str, dict]:
        with self._sites_lock:
            sites = list(self._sites.values())
        result = {}
        for health in sites:
            with health.lock:
                result[health.site] = health.to_dict()
        return result

    def reset(self, site: Optional[str] = None) -> None:
        with self._sites_lock:
            if site is None:
                self._sites.clear()
            else:
                self._sites.pop(site, None)
        logger.info("site_health_reset", site=site or "all")
