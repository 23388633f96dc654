"""Dataclasses that hold the client mirror's runtime state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .journal import Event


class LoaderState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    BULK_LOADING = "bulk-loading"
    READY = "ready"
    ERROR = "error"

    @property
    def is_busy(self) -> bool:
        return self in (LoaderState.SCANNING, LoaderState.BULK_LOADING)


@dataclass
class MirrorState:
    """Client-held copy of the event set plus display and sync bookkeeping."""

    loader_state: LoaderState = LoaderState.IDLE
    events: List[Event] = field(default_factory=list)  # newest first
    known_ids: Set[str] = field(default_factory=set)
    displayed_count: int = 0
    expected_count: int = 0
    server_total: Optional[int] = None
    server_stats: Optional[Dict[str, Any]] = None
    server_progress: Optional[Dict[str, Any]] = None
    live: bool = False
    last_error: Optional[str] = None
    last_loaded_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    decode_failures: int = 0
    generation: int = 0


def reset_mirror_state(state: MirrorState) -> None:
    """Discard cached events while keeping the generation counter."""

    state.events = []
    state.known_ids = set()
    state.displayed_count = 0
    state.expected_count = 0
    state.server_total = None
    state.server_stats = None
    state.server_progress = None
    state.live = False
    state.last_error = None
    state.last_loaded_at = None
    state.last_polled_at = None
    state.decode_failures = 0
