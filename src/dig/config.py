"""Settings from the environment, optionally seeded by a .env file."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_HOME = ".dig"
DB_NAME = "events.db"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_env(start: Path | None = None) -> Path | None:
    """Load the nearest .env walking up from `start` (default: CWD). Existing vars win."""
    cwd = start or Path.cwd()
    for parent in [cwd, *cwd.parents]:
        env_file = parent / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=False)
            return env_file
    return None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass
class Settings:
    home: Path
    production_environment: str = "production"
    min_sample_size: int = 1
    aggregation_timeout: float | None = None
    log_level: str = "WARNING"

    @property
    def db_path(self) -> Path:
        return self.home / DB_NAME

    @classmethod
    def from_env(cls, home: str | Path | None = None) -> "Settings":
        """Build settings from DIG_* variables. An explicit home overrides DIG_HOME."""
        load_env()
        home_value = home or os.environ.get("DIG_HOME") or DEFAULT_HOME
        return cls(
            home=Path(home_value).expanduser().resolve(),
            production_environment=os.environ.get("DIG_PRODUCTION_ENV") or "production",
            min_sample_size=_env_int("DIG_MIN_SAMPLE", 1),
            aggregation_timeout=_env_float("DIG_AGGREGATION_TIMEOUT"),
            log_level=(os.environ.get("DIG_LOG_LEVEL") or "WARNING").upper(),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format=LOG_FORMAT)
