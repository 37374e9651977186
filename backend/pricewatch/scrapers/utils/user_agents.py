"""User-Agent rotation for browser contexts."""

import random
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)


# Desktop agents only: every context is opened with a 1920x1080 viewport
USER_AGENTS: List[str] = [
    # Chrome on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    # Chrome on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    # Firefox
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:133.0) Gecko/20100101 Firefox/133.0",
    # Safari on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Safari/605.1.15",
    # Edge on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
    # Chrome on Linux
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
]


class UserAgentRotator:
    """Random user-agent picker over a fixed list.

    The list can be loaded from a text file with one agent per line; an
    unreadable or empty file falls back to USER_AGENTS.
    """

    def __init__(self, agents: Optional[Sequence[str]] = None, rng: Optional[random.Random] = None):
        self.agents: List[str] = list(agents) if agents else list(USER_AGENTS)
        self._rng = rng or random.Random()

    @classmethod
    def from_file(cls, path, rng: Optional[random.Random] = None) -> "UserAgentRotator":
        try:
            lines = Path(path).read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning("user_agents_file_unreadable", path=str(path), error=str(e))
            return cls(rng=rng)

        agents = [line.strip() for line in lines if line.strip() and not line.startswith("#")]
        if not agents:
            logger.warning("user_agents_file_empty", path=str(path))
        return cls(agents, rng=rng)

    def random(self) -> str:
        return self._rng.choice(self.agents)

