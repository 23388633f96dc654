"""Journal ingestion, storage and client synchronization for Elite Dangerous telemetry."""

from __future__ import annotations

from .errors import (
    ChannelError,
    FileReadError,
    JournalSyncError,
    ParseError,
    StoreReadError,
    StoreWriteError,
    TransportError,
)
from .journal import Decoded, Event, Malformed, decode_record, parse_line
from .stats import EventStats, compute_stats
from .store import EventStore
from .version import PACKAGE_VERSION

__version__ = PACKAGE_VERSION

__all__ = [
    "ChannelError",
    "Decoded",
    "Event",
    "EventStats",
    "EventStore",
    "FileReadError",
    "JournalSyncError",
    "Malformed",
    "ParseError",
    "StoreReadError",
    "StoreWriteError",
    "TransportError",
    "compute_stats",
    "decode_record",
    "parse_line",
    "__version__",
]
