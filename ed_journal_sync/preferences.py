"""Preference loading for the journal sync service and client mirror."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .logging_utils import get_logger
from .store import MEMORY_PATH


_log = get_logger("preferences")

ENV_PREFIX = "EDJS_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def default_journal_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the platform location the game writes its journals to."""

    env = os.environ if environ is None else environ
    if sys.platform.startswith("win"):
        home = env.get("USERPROFILE") or str(Path.home())
        return Path(home) / "Saved Games" / "Frontier Developments" / "Elite Dangerous"
    home = env.get("HOME") or str(Path.home())
    return Path(home) / "EliteDangerous"


def clamp_positive_int(value: int, default: int, maximum: int = 10_000) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return max(1, min(maximum, result))


def clamp_concurrency(value: int) -> int:
    return clamp_positive_int(value, 5, maximum=64)


def clamp_batch_size(value: int) -> int:
    return clamp_positive_int(value, 500, maximum=50_000)


def clamp_interval(value: float, default: float, minimum: float = 0.05, maximum: float = 3600.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        result = default
    if result != result:  # NaN
        result = default
    return max(minimum, min(maximum, result))


def clamp_retries(value: int) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = 5
    return max(0, min(100, result))


@dataclass
class SyncPreferences:
    """Effective settings for one running service or client."""

    journal_dir: Path = field(default_factory=default_journal_dir)
    database_path: str = MEMORY_PATH
    in_memory: bool = True
    max_concurrent_files: int = 5
    batch_size: int = 500
    max_files: Optional[int] = None
    tail_interval: float = 1.0
    stats_interval: float = 5.0
    subscriber_queue_size: int = 256
    api_base_url: str = "http://127.0.0.1:8000/api/v1"
    request_timeout: float = 15.0
    initial_display_count: int = 50
    load_more_count: int = 50
    poll_interval: float = 5.0
    poll_window: int = 50
    channel_max_retries: int = 5
    channel_backoff: float = 1.0
    channel_backoff_max: float = 30.0
    log_level: Optional[str] = None

    @property
    def store_path(self) -> str:
        return MEMORY_PATH if self.in_memory else self.database_path


class PreferencesManager:
    """Loads preferences from an ``EDJS_*`` key/value source (the environment by default)."""

    def __init__(self, source: Optional[Mapping[str, str]] = None) -> None:
        self._source = os.environ if source is None else source

    def load(self) -> SyncPreferences:
        prefs = SyncPreferences(journal_dir=default_journal_dir(self._source))

        journal_dir = self._get_str("JOURNAL_DIR", "").strip()
        if journal_dir:
            prefs.journal_dir = Path(journal_dir).expanduser()

        database_path = self._get_str("DATABASE_PATH", "").strip()
        if database_path:
            prefs.database_path = database_path
        # A configured database implies persistence unless explicitly overridden.
        prefs.in_memory = self._get_bool("IN_MEMORY", not database_path)
        if not prefs.in_memory and prefs.database_path == MEMORY_PATH:
            _log.warning("EDJS_IN_MEMORY is off but no EDJS_DATABASE_PATH is set; using memory")
            prefs.in_memory = True

        prefs.max_concurrent_files = clamp_concurrency(self._get_int("MAX_CONCURRENT_FILES", 5))
        prefs.batch_size = clamp_batch_size(self._get_int("BATCH_SIZE", 500))
        max_files = self._get_optional_int("MAX_FILES")
        prefs.max_files = max_files if max_files and max_files > 0 else None

        prefs.tail_interval = clamp_interval(self._get_float("TAIL_INTERVAL", 1.0), 1.0)
        prefs.stats_interval = clamp_interval(self._get_float("STATS_INTERVAL", 5.0), 5.0)
        prefs.subscriber_queue_size = clamp_positive_int(
            self._get_int("SUBSCRIBER_QUEUE_SIZE", 256), 256
        )

        base_url = self._get_str("API_BASE_URL", "").strip()
        if base_url:
            prefs.api_base_url = base_url.rstrip("/")
        prefs.request_timeout = clamp_interval(
            self._get_float("REQUEST_TIMEOUT", 15.0), 15.0, minimum=1.0, maximum=600.0
        )
        prefs.initial_display_count = clamp_positive_int(
            self._get_int("INITIAL_DISPLAY_COUNT", 50), 50
        )
        prefs.load_more_count = clamp_positive_int(self._get_int("LOAD_MORE_COUNT", 50), 50)
        prefs.poll_interval = clamp_interval(self._get_float("POLL_INTERVAL", 5.0), 5.0)
        prefs.poll_window = clamp_positive_int(self._get_int("POLL_WINDOW", 50), 50, maximum=5000)

        prefs.channel_max_retries = clamp_retries(self._get_int("CHANNEL_MAX_RETRIES", 5))
        prefs.channel_backoff = clamp_interval(self._get_float("CHANNEL_BACKOFF", 1.0), 1.0, minimum=0.0)
        prefs.channel_backoff_max = clamp_interval(
            self._get_float("CHANNEL_BACKOFF_MAX", 30.0), 30.0, minimum=prefs.channel_backoff
        )

        log_level = self._get_str("LOG_LEVEL", "").strip()
        prefs.log_level = log_level or None
        return prefs

    # ------------------------------------------------------------------
    # Raw accessors
    # ------------------------------------------------------------------
    def _raw(self, key: str) -> Optional[str]:
        value = self._source.get(ENV_PREFIX + key)
        if value is None:
            return None
        return str(value)

    def _get_int(self, key: str, default: int) -> int:
        raw = self._raw(key)
        if raw is None or not raw.strip():
            return default
        try:
            return int(raw.strip())
        except ValueError:
            _log.warning("Ignoring non-integer %s%s=%r", ENV_PREFIX, key, raw)
            return default

    def _get_optional_int(self, key: str) -> Optional[int]:
        raw = self._raw(key)
        if raw is None or not raw.strip():
            return None
        try:
            return int(raw.strip())
        except ValueError:
            _log.warning("Ignoring non-integer %s%s=%r", ENV_PREFIX, key, raw)
            return None

    def _get_str(self, key: str, default: str) -> str:
        raw = self._raw(key)
        if not raw:
            return default
        return raw

    def _get_float(self, key: str, default: float) -> float:
        raw = self._raw(key)
        if raw is None or not raw.strip():
            return default
        try:
            return float(raw.strip())
        except ValueError:
            _log.warning("Ignoring non-numeric %s%s=%r", ENV_PREFIX, key, raw)
            return default

    def _get_bool(self, key: str, default: bool) -> bool:
        raw = self._raw(key)
        if raw is None:
            return default
        candidate = raw.strip().lower()
        if candidate in _TRUE_VALUES:
            return True
        if candidate in _FALSE_VALUES:
            return False
        return default


__all__ = [
    "PreferencesManager",
    "SyncPreferences",
    "clamp_batch_size",
    "clamp_concurrency",
    "clamp_interval",
    "clamp_positive_int",
    "clamp_retries",
    "default_journal_dir",
]
