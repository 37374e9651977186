"""Tests for settings, runtime wiring and small shared helpers."""

import random

import pytest
import structlog
from pydantic import ValidationError

from pricewatch.config import Settings
from pricewatch.core.exceptions import ConfigurationError
from pricewatch.core.logging import configure_logging
from pricewatch.main import parse_args
from pricewatch.monitoring.state import MAX_RECENT_ERRORS, ApplicationState
from pricewatch.runtime import Runtime
from pricewatch.scrapers.utils.proxy_manager import HttpProxySource, NoProxyManager
from pricewatch.scrapers.utils.user_agents import USER_AGENTS, UserAgentRotator


# ============================================================================
# TESTS: SETTINGS
# ============================================================================

class TestSettings:
    """Tests for Settings parsing helpers."""

    def test_proxy_list(self):
        config = Settings(PROXY_LIST=" http://10.0.0.1:8080, ,http://10.0.0.2:8080 ")

        assert config.get_proxy_list() == ["http://10.0.0.1:8080", "http://10.0.0.2:8080"]

    def test_empty_proxy_list(self):
        assert Settings(PROXY_LIST="").get_proxy_list() == []

    def test_rate_limit_overrides(self):
        config = Settings(RATE_LIMIT_OVERRIDES='{"amazon": {"min_delay_ms": 4000}}')

        assert config.get_rate_limit_overrides() == {"amazon": {"min_delay_ms": 4000}}

    def test_rate_limit_overrides_must_be_objects(self):
        with pytest.raises(ValueError):
            Settings(RATE_LIMIT_OVERRIDES='{"amazon": 4000}').get_rate_limit_overrides()

    def test_log_level_upper_cased(self):
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_pool_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(BROWSER_POOL_SIZE=0)


# ============================================================================
# TESTS: RUNTIME WIRING
# ============================================================================

class TestRuntimeFromSettings:
    """Tests for Runtime.from_settings."""

    async def test_defaults(self, metrics):
        runtime = Runtime.from_settings(Settings(BROWSER_POOL_SIZE=4), metrics=metrics)

        assert runtime.pool.size == 4
        assert isinstance(runtime.proxy_manager, NoProxyManager)
        assert runtime.db_monitor.configured is False
        assert runtime.coordinator.registry is runtime.registry
        assert runtime.app_state.ready is False

    async def test_manual_proxy_list(self, metrics):
        config = Settings(PROXY_SOURCE="manual", PROXY_LIST="http://10.0.0.1:8080")

        runtime = Runtime.from_settings(config, metrics=metrics)

        assert runtime.proxy_manager.source is not None
        assert runtime.proxy_manager.get_stats()["total"] == 0
        await runtime.proxy_manager.refresh()
        assert runtime.proxy_manager.get_proxy() == "http://10.0.0.1:8080"

    async def test_proxy_list_without_source(self, metrics):
        runtime = Runtime.from_settings(Settings(PROXY_LIST="http://10.0.0.1:8080"), metrics=metrics)

        assert runtime.proxy_manager.source is None
        assert runtime.proxy_manager.get_proxy() == "http://10.0.0.1:8080"

    async def test_url_proxy_source(self, metrics):
        runtime = Runtime.from_settings(Settings(PROXY_SOURCE="https://proxies.example/list"), metrics=metrics)

        assert isinstance(runtime.proxy_manager.source, HttpProxySource)

    async def test_rate_overrides_applied(self, metrics):
        config = Settings(RATE_LIMIT_OVERRIDES='{"amazon": {"min_delay_ms": 4000, "max_delay_ms": 8000}}')

        runtime = Runtime.from_settings(config, metrics=metrics)

        assert runtime.registry.get("amazon").rate_profile.min_delay_ms == 4000

    async def test_invalid_overrides_rejected(self, metrics):
        with pytest.raises(ConfigurationError):
            Runtime.from_settings(Settings(RATE_LIMIT_OVERRIDES="{not json"), metrics=metrics)

    async def test_unknown_proxy_source_rejected(self, metrics):
        with pytest.raises(ConfigurationError):
            Runtime.from_settings(Settings(PROXY_SOURCE="carrier-pigeon"), metrics=metrics)


# ============================================================================
# TESTS: HELPERS
# ============================================================================

class TestApplicationState:
    """Tests for ApplicationState."""

    def test_success_rate(self):
        state = ApplicationState()
        for success in (True, True, False):
            state.record_scrape_attempt(success)

        assert state.success_rate == 67
        assert state.scrape_stats() == {"attempted": 3, "successful": 2, "successRate": 67}
        assert state.last_monitor_success is False
        assert state.last_monitor_run is not None

    def test_recent_errors_bounded(self):
        state = ApplicationState()
        for n in range(MAX_RECENT_ERRORS + 5):
            state.record_error(f"error {n}")

        errors = state.recent_errors
        assert len(errors) == MAX_RECENT_ERRORS
        assert errors[-1]["message"] == f"error {MAX_RECENT_ERRORS + 4}"

    def test_error_without_message_uses_type(self):
        state = ApplicationState()
        state.record_error(TimeoutError())

        assert state.recent_errors[0]["message"] == "TimeoutError"

    def test_uptime(self):
        now = [100.0]
        state = ApplicationState(clock=lambda: now[0])
        now[0] = 142.7

        assert state.uptime == 42


class TestUserAgents:
    """Tests for UserAgentRotator."""

    def test_default_list(self):
        rotator = UserAgentRotator(rng=random.Random(3))

        assert rotator.random() in USER_AGENTS

    def test_from_file(self, tmp_path):
        path = tmp_path / "agents.txt"
        path.write_text("# comment\nAgent/1\n\nAgent/2\n", encoding="utf-8")

        rotator = UserAgentRotator.from_file(path)

        assert rotator.agents == ["Agent/1", "Agent/2"]

    def test_missing_file_falls_back(self, tmp_path):
        rotator = UserAgentRotator.from_file(tmp_path / "missing.txt")

        assert rotator.agents == USER_AGENTS


class TestParseArgs:
    def test_flags(self):
        args = parse_args(["--no-proxy", "--serve", "https://www.amazon.com/dp/XYZ"])

        assert args.no_proxy is True
        assert args.serve is True
        assert args.no_headless is False
        assert args.urls == ["https://www.amazon.com/dp/XYZ"]


class TestLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_logs_go_to_stderr(self, capsys):
        """Test log lines stay out of stdout, which carries scrape results."""
        configure_logging("INFO", pretty=False)

        structlog.get_logger("pricewatch.test").info("scrape_succeeded", site="amazon")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert '"event": "scrape_succeeded"' in captured.err
