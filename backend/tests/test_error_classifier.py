"""Tests for error classification and per-site health."""

import pytest

from pricewatch.core.exceptions import ExtractionError, FetchError, HttpStatusError
from pricewatch.scrapers.error_classifier import (
    ERROR_POLICIES,
    ErrorCategory,
    ErrorClassifier,
    ErrorSeverity,
    SiteStatus,
)


AMAZON_URL = "https://www.amazon.com/dp/XYZ"
GENERIC_URL = "https://novelty.example/product/42"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def classifier(registry, clock) -> ErrorClassifier:
    return ErrorClassifier(registry, clock=clock)


# ============================================================================
# TESTS: CLASSIFICATION
# ============================================================================

class TestClassify:
    """Category detection."""

    @pytest.mark.parametrize(
        "status,category",
        [
            (429, ErrorCategory.RATE_LIMIT),
            (503, ErrorCategory.RATE_LIMIT),
            (403, ErrorCategory.BLOCKED),
            (404, ErrorCategory.NOT_FOUND),
            (401, ErrorCategory.AUTH_REQUIRED),
        ],
    )
    def test_http_status(self, classifier: ErrorClassifier, status: int, category: ErrorCategory):
        """Test HTTP status codes map straight to categories."""
        result = classifier.classify(HttpStatusError(status, AMAZON_URL), AMAZON_URL)

        assert result.category == category
        assert result.status == status

    def test_captcha_in_page_text(self, classifier: ErrorClassifier):
        """Test CAPTCHA wording in the page beats the extraction error."""
        error = ExtractionError("Could not find product title", "selector_failed")
        result = classifier.classify(error, AMAZON_URL, "Enter the characters you see below")

        assert result.category == ErrorCategory.CAPTCHA
        assert result.severity == ErrorSeverity.CRITICAL
        assert result.retryable is False
        assert result.cooldown_seconds == 300

    @pytest.mark.parametrize(
        "status,page,category",
        [
            (503, "Enter the characters you see below", ErrorCategory.CAPTCHA),
            (403, "Please verify you are a human. captcha", ErrorCategory.CAPTCHA),
            (503, "Access denied", ErrorCategory.BLOCKED),
            (503, "Service temporarily down", ErrorCategory.RATE_LIMIT),
        ],
    )
    def test_page_evidence_beats_status(self, classifier: ErrorClassifier, status, page, category):
        """Test challenge wording in the page wins over the HTTP status."""
        result = classifier.classify(HttpStatusError(status, AMAZON_URL), AMAZON_URL, page)

        assert result.category == category
        assert result.status == status

    def test_captcha_on_generic_site(self, classifier: ErrorClassifier):
        result = classifier.classify("blocked", GENERIC_URL, "Please enter the characters you see")

        assert result.category == ErrorCategory.CAPTCHA
        assert result.site == "novelty.example"

    def test_network_error_from_message(self, classifier: ErrorClassifier):
        error = FetchError(GENERIC_URL, Exception("net::ERR_CONNECTION_REFUSED"), attempts=1)

        assert classifier.classify(error, GENERIC_URL).category == ErrorCategory.NETWORK

    def test_timeout_from_message(self, classifier: ErrorClassifier):
        error = Exception("Timeout 30000ms exceeded.")

        assert classifier.classify(error, GENERIC_URL).category == ErrorCategory.TIMEOUT

    def test_page_text_does_not_make_timeouts(self, classifier: ErrorClassifier):
        """Test transport categories are not read from page text."""
        error = ExtractionError("Could not find product price", "selector_failed")
        page = "Fast network delivery, no timeout on returns"

        assert classifier.classify(error, GENERIC_URL, page).category == ErrorCategory.SELECTOR_FAILED

    def test_extraction_parse_error(self, classifier: ErrorClassifier):
        error = ExtractionError("Unparseable price: 'call us'", "parse_error")

        assert classifier.classify(error, GENERIC_URL).category == ErrorCategory.PARSE_ERROR

    def test_unknown_error(self, classifier: ErrorClassifier):
        result = classifier.classify(RuntimeError("something odd"), GENERIC_URL)

        assert result.category == ErrorCategory.UNKNOWN
        assert result.cooldown_seconds == 30

    def test_classify_is_pure(self, classifier: ErrorClassifier):
        """Test classify does not touch site health."""
        classifier.classify(HttpStatusError(429, AMAZON_URL), AMAZON_URL)

        assert classifier.get_site_health("amazon").status == SiteStatus.UNKNOWN
        assert classifier.get_all_site_health() == {}

    def test_policy_table_complete(self):
        """Test every category has a policy."""
        assert set(ERROR_POLICIES) == set(ErrorCategory)

    def test_error_summary(self, classifier: ErrorClassifier):
        summary = classifier.error_summary(HttpStatusError(404, AMAZON_URL), AMAZON_URL)

        assert summary.startswith("[amazon] not_found (low): HTTP 404 Not Found.")


# ============================================================================
# TESTS: SITE HEALTH
# ============================================================================

class TestSiteHealth:
    """Status transitions and cooldowns."""

    def test_captcha_makes_site_critical(self, classifier: ErrorClassifier, clock: FakeClock):
        """Test a critical error sets a 5 minute cooldown."""
        classifier.record_error(AMAZON_URL, "captcha", "Enter the characters you see below")

        health = classifier.get_site_health("amazon")
        assert health.status == SiteStatus.CRITICAL
        assert health.cooldown_until == clock.now + 300
        assert classifier.cooldown_remaining(AMAZON_URL) == 300
        assert classifier.is_in_cooldown(AMAZON_URL)

    def test_cooldown_expires(self, classifier: ErrorClassifier, clock: FakeClock):
        classifier.record_error(AMAZON_URL, "captcha")
        clock.advance(301)

        assert classifier.cooldown_remaining(AMAZON_URL) == 0
        assert not classifier.is_in_cooldown(AMAZON_URL)

    def test_three_high_errors_degrade(self, classifier: ErrorClassifier, clock: FakeClock):
        """Test three consecutive high-severity errors degrade the site."""
        for _ in range(2):
            classifier.record_error(AMAZON_URL, HttpStatusError(403, AMAZON_URL))
        assert classifier.get_site_health("amazon").status == SiteStatus.HEALTHY

        classifier.record_error(AMAZON_URL, HttpStatusError(403, AMAZON_URL))

        health = classifier.get_site_health("amazon")
        assert health.status == SiteStatus.DEGRADED
        assert health.cooldown_until == clock.now + 120

    def test_five_errors_unhealthy(self, classifier: ErrorClassifier):
        """Test five consecutive medium errors make the site unhealthy."""
        for i in range(5):
            classifier.record_error(GENERIC_URL, RuntimeError(f"odd {i}"))

        health = classifier.get_site_health("novelty.example")
        assert health.status == SiteStatus.UNHEALTHY
        assert health.total_errors == 5
        assert health.consecutive_errors == 5

    def test_recovery_after_two_successes(self, classifier: ErrorClassifier):
        """Test a failing site recovers, then becomes healthy after two successes."""
        classifier.record_error(AMAZON_URL, "captcha")

        classifier.record_success(AMAZON_URL)
        health = classifier.get_site_health("amazon")
        assert health.status == SiteStatus.RECOVERING
        assert health.consecutive_errors == 0

        classifier.record_success(AMAZON_URL)
        assert health.status == SiteStatus.HEALTHY
        assert health.cooldown_until is None

    def test_critical_not_downgraded_during_cooldown(self, classifier: ErrorClassifier):
        """Test later errors do not overwrite a critical status while it cools down."""
        classifier.record_error(AMAZON_URL, "captcha")
        for _ in range(5):
            classifier.record_error(AMAZON_URL, HttpStatusError(403, AMAZON_URL))

        assert classifier.get_site_health("amazon").status == SiteStatus.CRITICAL

    def test_history_is_bounded(self, classifier: ErrorClassifier):
        for i in range(150):
            classifier.record_error(GENERIC_URL, RuntimeError(f"odd {i}"))

        health = classifier.get_site_health("novelty.example")
        assert len(health.errors) == 100
        assert health.total_errors == 150

    def test_site_health_snapshot(self, classifier: ErrorClassifier):
        classifier.record_error(AMAZON_URL, HttpStatusError(429, AMAZON_URL))

        snapshot = classifier.get_all_site_health()["amazon"]
        assert snapshot["status"] == "healthy"
        assert snapshot["totalErrors"] == 1
        assert snapshot["lastError"]["category"] == "rate_limit"
        assert snapshot["lastSuccess"] is None

    def test_reset(self, classifier: ErrorClassifier):
        classifier.record_error(AMAZON_URL, "captcha")
        classifier.reset("amazon")

        assert classifier.cooldown_remaining(AMAZON_URL) == 0
        assert classifier.get_site_health("amazon").status == SiteStatus.UNKNOWN


# ============================================================================
# TESTS: RETRY DECISIONS
# ============================================================================

class TestShouldRetry:
    """Retry policy."""

    def test_rate_limit_retry_delay(self, classifier: ErrorClassifier):
        """Test a rate limit is retried after at least 60 seconds."""
        error = HttpStatusError(429, AMAZON_URL)

        first = classifier.should_retry(error, AMAZON_URL, attempt=1, max_attempts=3)
        second = classifier.should_retry(error, AMAZON_URL, attempt=2, max_attempts=3)

        assert first.retry and first.delay_seconds == 60
        assert second.retry and second.delay_seconds == 60

    def test_delay_grows_exponentially(self, classifier: ErrorClassifier):
        """Test a zero-cooldown category backs off from 5 seconds."""
        error = ExtractionError("Could not find product price", "selector_failed")

        delays = [
            classifier.should_retry(error, GENERIC_URL, attempt=a, max_attempts=10).delay_seconds
            for a in range(1, 6)
        ]

        assert delays == [5, 10, 20, 40, 60]

    def test_not_retryable(self, classifier: ErrorClassifier):
        decision = classifier.should_retry(HttpStatusError(404, AMAZON_URL), AMAZON_URL, attempt=1, max_attempts=3)

        assert decision.retry is False
        assert "not retryable" in decision.reason

    def test_attempt_budget(self, classifier: ErrorClassifier):
        decision = classifier.should_retry(RuntimeError("odd"), GENERIC_URL, attempt=3, max_attempts=3)

        assert decision.retry is False

    def test_no_retry_during_critical_cooldown(self, classifier: ErrorClassifier):
        """Test nothing is retried on a site in critical cooldown."""
        classifier.record_error(AMAZON_URL, "captcha")

        decision = classifier.should_retry(HttpStatusError(429, AMAZON_URL), AMAZON_URL, attempt=1, max_attempts=3)

        assert decision.retry is False
        assert decision.reason == "site in critical cooldown"
