"""
Configuration for the tick statistics service.
Reads settings from environment variables and provides defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if present, never overriding variables already set in the environment
ENV_PATH = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

# sliding time interval in milliseconds, fixed
WINDOW_MS = 60_000

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class AppSettings:
    """
    Settings for the statistics service.

    :param rebuild_period_ms (int): how often the background cycle evicts old ticks and
    recomputes the statistics snapshots.
    :param host (str): interface the HTTP server binds to.
    :param port (int): port the HTTP server listens on.
    :param log_level (str): root logging level name.
    """
    rebuild_period_ms: int = field(default_factory=lambda: _env_int("TICKSTATS_REBUILD_PERIOD_MS", 500))
    host: str = field(default_factory=lambda: os.getenv("TICKSTATS_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("TICKSTATS_PORT", 8000))
    log_level: str = field(default_factory=lambda: os.getenv("TICKSTATS_LOG_LEVEL", "INFO").upper())

    def __post_init__(self):
        if self.rebuild_period_ms <= 0:
            raise ValueError(
                f"TICKSTATS_REBUILD_PERIOD_MS must be positive, got {self.rebuild_period_ms}"
            )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


# Create a single config instance for import
settings = AppSettings()
