"""Per-site adaptive rate limiter.

Each site gets a randomized delay between requests taken from its rate
profile, scaled by ``backoff_multiplier ** backoff_level``. The level rises
on rate-limit signals, repeated errors and per-minute bursts, and decays by
0.5 on every success.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, TYPE_CHECKING

import structlog

from pricewatch.scrapers.site_registry import RateLimitProfile, SiteRegistry, get_site_registry

if TYPE_CHECKING:
    from pricewatch.monitoring.metrics import ScraperMetrics


logger = structlog.get_logger(__name__)

MAX_BACKOFF_LEVEL = 5.0
RATE_LIMIT_BACKOFF_STEP = 2.0
ERROR_BACKOFF_STEP = 1.0
SUCCESS_BACKOFF_DECAY = 0.5
ERROR_BACKOFF_THRESHOLD = 3

_RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "throttl")


def is_rate_limit_error(error: Optional[BaseException], category: Optional[str] = None) -> bool:
    """True for HTTP 429/503, a ``rate_limit`` classification, or a rate-limit message."""
    if category is not None and str(getattr(category, "value", category)) == "rate_limit":
        return True
    if error is None:
        return False
    if getattr(error, "status", None) in (429, 503):
        return True
    message = str(error).lower()
    return any(phrase in message for phrase in _RATE_LIMIT_PHRASES)


@dataclass
class SiteState:
    """Mutable pacing state for one site."""

    key: str
    last_request_at: Optional[float] = None
    minute_bucket: Optional[int] = None
    requests_in_current_minute: int = 0
    backoff_level: float = 0.0
    consecutive_errors: int = 0
    cooldown_until: Optional[float] = None
    total_requests: int = 0
    rate_limit_hits: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def raise_backoff(self, amount: float) -> float:
        self.backoff_level = min(MAX_BACKOFF_LEVEL, self.backoff_level + amount)
        return self.backoff_level


class RateLimiter:
    """Schedules request start times per site.

    ``wait_for_rate_limit`` reserves the next start slot under the site's
    lock and sleeps outside it, so concurrent callers for the same site are
    spaced out without holding the lock across the sleep.
    """

    def __init__(
        self,
        registry: Optional[SiteRegistry] = None,
        metrics: Optional["ScraperMetrics"] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry or get_site_registry()
        self.metrics = metrics
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._states: Dict[str, SiteState] = {}
        self._overrides: Dict[str, dict] = {}

    def _site_key(self, url: str) -> str:
        return self.registry.site_key(url)

    def _state(self, key: str) -> SiteState:
        state = self._states.get(key)
        if state is None:
            state = SiteState(key=key)
            self._states[key] = state
        return state

    def get_profile(self, url: str) -> RateLimitProfile:
        profile = self.registry.rate_profile_for(url)
        entry_key = self.registry.detect(url).key
        override = self._overrides.get(self._site_key(url)) or self._overrides.get(entry_key)
        return profile.with_overrides(**override) if override else profile

    def update_site_config(self, site_key: str, **overrides) -> RateLimitProfile:
        """Override profile fields for a site key at runtime.

        Raises:
            ValueError: If a field name is unknown or the result is invalid
        """
        base = self.registry.get(site_key)
        profile = base.rate_profile if base else self.registry.get("generic").rate_profile
        merged = {**self._overrides.get(site_key, {}), **overrides}
        updated = profile.with_overrides(**merged)
        self._overrides[site_key] = merged
        logger.info("rate_limit_config_updated", site=site_key, **merged)
        return updated

    def _required_delay(self, profile: RateLimitProfile, backoff_level: float) -> float:
        base_ms = self._rng.uniform(profile.min_delay_ms, profile.max_delay_ms)
        scaled_ms = base_ms * (profile.backoff_multiplier ** backoff_level)
        return min(scaled_ms, profile.max_backoff_ms) / 1000.0

    def calculate_delay(self, url: str) -> float:
        """Required spacing in seconds for the next request to this site."""
        state = self._state(self._site_key(url))
        return self._required_delay(self.get_profile(url), state.backoff_level)

    async def wait_for_rate_limit(self, url: str) -> float:
        """Wait until this site's next request slot.

        Args:
            url: URL about to be requested

        Returns:
            Seconds actually waited
        """
        key = self._site_key(url)
        state = self._state(key)
        profile = self.get_profile(url)

        async with state.lock:
            now = self._clock()
            required = self._required_delay(profile, state.backoff_level)
            slot = now if state.last_request_at is None else max(now, state.last_request_at + required)
            if state.cooldown_until is not None:
                if state.cooldown_until > slot:
                    slot = state.cooldown_until
                elif state.cooldown_until <= now:
                    state.cooldown_until = None
            previous = state.last_request_at
            state.last_request_at = slot
            delay = slot - now

        if delay > 0:
            logger.debug("rate_limit_wait", site=key, delay=round(delay, 3), backoff_level=state.backoff_level)
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                async with state.lock:
                    # Later callers queued behind this slot keep their spacing
                    if state.last_request_at == slot:
                        state.last_request_at = previous
                raise

        if self.metrics is not None:
            self.metrics.rate_limiter_delay.labels(site=key).observe(delay)

        async with state.lock:
            self._count_request(state, profile)

        return delay

    def _count_request(self, state: SiteState, profile: RateLimitProfile) -> None:
        minute = int(self._wall_clock() // 60)
        if state.minute_bucket != minute:
            state.minute_bucket = minute
            state.requests_in_current_minute = 0
        state.requests_in_current_minute += 1
        state.total_requests += 1

        if state.requests_in_current_minute >= profile.max_requests_per_minute:
            level = state.raise_backoff(ERROR_BACKOFF_STEP)
            state.rate_limit_hits += 1
            logger.warning(
                "rate_limit_approaching",
                site=state.key,
                requests_this_minute=state.requests_in_current_minute,
                max_allowed=profile.max_requests_per_minute,
                backoff_level=level,
            )
            if self.metrics is not None:
                self.metrics.rate_limit_hits.labels(site=state.key).inc()
        self._publish_backoff(state)

    def report_success(self, url: str) -> None:
        state = self._state(self._site_key(url))
        state.consecutive_errors = 0
        if state.backoff_level > 0:
            state.backoff_level = max(0.0, state.backoff_level - SUCCESS_BACKOFF_DECAY)
            logger.debug("rate_limit_backoff_reduced", site=state.key, backoff_level=state.backoff_level)
        self._publish_backoff(state)

    def report_error(
        self,
        url: str,
        error: Optional[BaseException] = None,
        category: Optional[str] = None,
        cooldown_seconds: float = 0.0,
    ) -> float:
        """Record a failed request and adapt the site's backoff.

        Args:
            url: Failed URL
            error: The underlying exception, if any
            category: Classifier category, if already classified
            cooldown_seconds: For rate-limit signals, hold the next slot this long

        Returns:
            The site's backoff level after the update
        """
        state = self._state(self._site_key(url))
        state.consecutive_errors += 1

        if is_rate_limit_error(error, category):
            level = state.raise_backoff(RATE_LIMIT_BACKOFF_STEP)
            if cooldown_seconds > 0:
                until = self._clock() + cooldown_seconds
                state.cooldown_until = max(state.cooldown_until or 0.0, until)
            logger.warning("rate_limit_detected", site=state.key, backoff_level=level, error=str(error) if error else None)
        elif state.consecutive_errors >= ERROR_BACKOFF_THRESHOLD:
            level = state.raise_backoff(ERROR_BACKOFF_STEP)
            logger.warning(
                "rate_limit_backoff_increased",
                site=state.key,
                consecutive_errors=state.consecutive_errors,
                backoff_level=level,
            )

        self._publish_backoff(state)
        return state.backoff_level

    def _publish_backoff(self, state: SiteState) -> None:
        if self.metrics is not None:
            self.metrics.site_backoff_level.labels(site=state.key).set(state.backoff_level)

    def get_site_state(self, url: str) -> SiteState:
        return self._state(self._site_key(url))

    def get_stats(self) -> Dict[str, dict]:
        """Per-site pacing state for monitoring."""
        now = self._clock()
        stats = {}
        for key, state in self._states.items():
            cooldown = None
            if state.cooldown_until is not None and state.cooldown_until > now:
                cooldown = round(state.cooldown_until - now, 3)
            stats[key] = {
                "backoff_level": state.backoff_level,
                "consecutive_errors": state.consecutive_errors,
                "requests_this_minute": state.requests_in_current_minute,
                "total_requests": state.total_requests,
                "rate_limit_hits": state.rate_limit_hits,
                "seconds_since_last_request": (
                    round(now - state.last_request_at, 3) if state.last_request_at is not None else None
                ),
                "cooldown_remaining": cooldown,
            }
        return stats

    def reset(self) -> None:
        self._states.clear()
        logger.info("rate_limiter_reset")
