"""Client-side mirror of the event store.

The mirror performs one bulk load (count first, then every event) so its
statistics cover the full history, reveals events to the display in fixed
steps from memory, and afterwards merges only new events, either from a
low-frequency poll of the newest window or from live channel messages.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .api_client import EventsApiClient
from .broadcaster import BACKFILL_COMPLETE, JOURNAL_EVENT, JOURNAL_PROGRESS, STATS_UPDATE
from .errors import TransportError
from .journal import Event, Malformed, decode_record
from .logging_utils import get_logger
from .state import LoaderState, MirrorState, reset_mirror_state
from .stats import EventStats, compute_stats


_log = get_logger("mirror")

DEFAULT_INITIAL_DISPLAY_COUNT = 50
DEFAULT_LOAD_MORE_COUNT = 50
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_WINDOW = 50

ChangeCallback = Callable[[LoaderState], None]


class ClientMirror:
    """In-memory cache of the server's events with progressive display."""

    def __init__(
        self,
        client: EventsApiClient,
        *,
        initial_display_count: int = DEFAULT_INITIAL_DISPLAY_COUNT,
        load_more_count: int = DEFAULT_LOAD_MORE_COUNT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_window: int = DEFAULT_POLL_WINDOW,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._client = client
        self._initial_display_count = max(1, int(initial_display_count))
        self._load_more_count = max(1, int(load_more_count))
        self._poll_interval = max(0.05, float(poll_interval))
        self._poll_window = max(1, int(poll_window))
        self._on_change = on_change
        self._lock = threading.RLock()
        self._state = MirrorState()
        self._stats_cache: Optional[EventStats] = None
        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop: Optional[threading.Event] = None
        self._load_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def loader_state(self) -> LoaderState:
        return self._state.loader_state

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._state.events)

    @property
    def total_loaded(self) -> int:
        with self._lock:
            return len(self._state.events)

    @property
    def expected_count(self) -> int:
        return self._state.expected_count

    @property
    def visible_events(self) -> List[Event]:
        with self._lock:
            return self._state.events[: self._state.displayed_count]

    @property
    def visible_count(self) -> int:
        return self._state.displayed_count

    @property
    def has_more(self) -> bool:
        # The fetched in-memory length is authoritative, never the count endpoint.
        with self._lock:
            return self._state.displayed_count < len(self._state.events)

    @property
    def last_error(self) -> Optional[str]:
        return self._state.last_error

    @property
    def server_total(self) -> Optional[int]:
        return self._state.server_total

    @property
    def server_stats(self) -> Optional[Dict[str, Any]]:
        return self._state.server_stats

    @property
    def server_progress(self) -> Optional[Dict[str, Any]]:
        """Latest server backfill progress, or None once the backfill is complete."""

        return self._state.server_progress

    @property
    def is_live(self) -> bool:
        return self._state.live

    @property
    def decode_failures(self) -> int:
        return self._state.decode_failures

    @property
    def calculated_stats(self) -> EventStats:
        with self._lock:
            if self._stats_cache is None:
                self._stats_cache = compute_stats(self._state.events)
            return self._stats_cache

    def progress(self) -> Tuple[int, int]:
        """``(loaded, expected)`` for a progress indicator during bulk load."""

        with self._lock:
            return len(self._state.events), self._state.expected_count

    # ------------------------------------------------------------------
    # Bulk path
    # ------------------------------------------------------------------
    def load(self) -> bool:
        """Run the bulk path; returns False if rejected, cancelled or failed."""

        return self._load(discard=False)

    def refresh(self) -> bool:
        """Discard everything held in memory and repeat the bulk path."""

        return self._load(discard=True)

    def load_in_background(self, *, discard: bool = False) -> threading.Thread:
        thread = threading.Thread(
            target=self._load,
            kwargs={"discard": discard},
            name="mirror-load",
            daemon=True,
        )
        self._load_thread = thread
        thread.start()
        return thread

    def cancel(self) -> None:
        """Abandon an in-flight bulk load; its result is discarded when it returns."""

        with self._lock:
            if not self._state.loader_state.is_busy:
                return
            self._state.generation += 1
            restored = LoaderState.READY if self._state.events else LoaderState.IDLE
            self._state.loader_state = restored
        _log.info("Bulk load cancelled")
        self._notify()

    def _load(self, *, discard: bool) -> bool:
        with self._lock:
            if self._state.loader_state.is_busy:
                _log.debug("Ignoring load request while %s", self._state.loader_state.value)
                return False
            if discard:
                reset_mirror_state(self._state)
                self._stats_cache = None
            self._state.generation += 1
            generation = self._state.generation
            self._state.loader_state = LoaderState.SCANNING
            self._state.last_error = None
        self._notify()

        try:
            count = self._client.fetch_count()
        except TransportError as exc:
            return self._fail(generation, exc)

        with self._lock:
            if generation != self._state.generation:
                return False
            self._state.expected_count = count
            if count == 0:
                self._replace_events(generation, [], 0)
                return True
            self._state.loader_state = LoaderState.BULK_LOADING
        self._notify()
        _log.info("Bulk loading %d events", count)

        try:
            records = self._client.fetch_all()
        except TransportError as exc:
            return self._fail(generation, exc)

        events, failures = _decode_records(records)
        return self._replace_events(generation, events, failures)

    def _replace_events(self, generation: int, events: List[Event], failures: int) -> bool:
        with self._lock:
            if generation != self._state.generation:
                _log.debug("Discarding result of cancelled bulk load")
                return False
            unique: Dict[str, Event] = {}
            for event in events:
                unique.setdefault(event.id, event)
            # Events merged while the fetch was in flight may postdate the snapshot.
            kept = 0
            for event in self._state.events:
                if event.id not in unique:
                    unique[event.id] = event
                    kept += 1
            if kept:
                _log.debug("Kept %d events merged during bulk load", kept)
            events = sorted(unique.values(), key=lambda event: event.sort_key, reverse=True)
            self._state.events = events
            self._state.known_ids = set(unique)
            self._state.displayed_count = min(self._initial_display_count, len(events))
            self._state.decode_failures = failures
            self._state.last_loaded_at = datetime.now(timezone.utc)
            self._state.loader_state = LoaderState.READY
            self._stats_cache = None
        if failures:
            _log.warning("Skipped %d undecodable records during bulk load", failures)
        _log.info("Mirror ready with %d events", len(events))
        self._notify()
        return True

    def _fail(self, generation: int, exc: TransportError) -> bool:
        with self._lock:
            if generation != self._state.generation:
                return False
            self._state.last_error = str(exc)
            self._state.loader_state = LoaderState.ERROR
        _log.warning("Bulk load failed: %s", exc)
        self._notify()
        with self._lock:
            if generation != self._state.generation:
                return False
            # Degraded ready: whatever is already held stays visible.
            self._state.displayed_count = min(
                max(self._state.displayed_count, self._initial_display_count),
                len(self._state.events),
            )
            self._state.loader_state = LoaderState.READY
        self._notify()
        return False

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------
    def reveal_more(self) -> int:
        """Widen the displayed prefix from memory; returns the new visible count."""

        with self._lock:
            total = len(self._state.events)
            if self._state.displayed_count >= total:
                return self._state.displayed_count
            self._state.displayed_count = min(self._state.displayed_count + self._load_more_count, total)
            visible = self._state.displayed_count
        self._notify()
        return visible

    # ------------------------------------------------------------------
    # Incremental path
    # ------------------------------------------------------------------
    def poll_once(self) -> int:
        """Fetch the newest window and merge unseen events; returns how many were added."""

        return self._poll(None)

    def start_polling(self) -> None:
        with self._lock:
            if self._poll_thread and self._poll_thread.is_alive():
                return
            stop_event = threading.Event()
            self._poll_stop = stop_event
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                args=(stop_event,),
                name="mirror-poll",
                daemon=True,
            )
            self._poll_thread.start()
        _log.debug("Polling every %.1fs for the newest %d events", self._poll_interval, self._poll_window)

    def stop_polling(self, timeout: float = 5.0) -> None:
        with self._lock:
            stop_event, self._poll_stop = self._poll_stop, None
            thread, self._poll_thread = self._poll_thread, None
        if stop_event is not None:
            stop_event.set()
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def is_polling(self) -> bool:
        thread = self._poll_thread
        return bool(thread and thread.is_alive())

    def close(self) -> None:
        self.stop_polling()
        self.cancel()

    def handle_channel_message(self, channel: str, payload: Mapping[str, Any]) -> None:
        """Apply one live channel message to the mirror."""

        if channel == JOURNAL_EVENT:
            self.merge_records([payload])
        elif channel == STATS_UPDATE:
            stats = payload.get("stats")
            with self._lock:
                self._state.server_stats = dict(stats) if isinstance(stats, Mapping) else None
            self._notify()
        elif channel == JOURNAL_PROGRESS:
            with self._lock:
                self._state.server_progress = dict(payload)
            self._notify()
        elif channel == BACKFILL_COMPLETE:
            total = payload.get("totalEvents")
            with self._lock:
                self._state.server_total = total if isinstance(total, int) else None
                self._state.server_progress = None
                self._state.live = True
            _log.info("Server backfill complete (%s events); now live", total)
            self._notify()
        else:
            _log.debug("Ignoring message on unknown channel %s", channel)

    def merge_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Prepend records whose ids are not yet known; returns how many were added."""

        events, failures = _decode_records(records)
        with self._lock:
            self._state.decode_failures += failures
            fresh: List[Event] = []
            seen = set(self._state.known_ids)
            for event in events:
                if event.id in seen:
                    continue
                seen.add(event.id)
                fresh.append(event)
            self._state.last_polled_at = datetime.now(timezone.utc)
            if not fresh:
                return 0
            fresh.sort(key=lambda event: event.sort_key, reverse=True)
            self._state.events = fresh + self._state.events
            self._state.known_ids = seen
            self._state.displayed_count = min(
                self._state.displayed_count + len(fresh),
                len(self._state.events),
            )
            self._stats_cache = None
        _log.debug("Merged %d new events", len(fresh))
        self._notify()
        return len(fresh)

    def _poll(self, stop_event: Optional[threading.Event]) -> int:
        if self._state.loader_state.is_busy:
            return 0
        try:
            records = self._client.fetch_page(limit=self._poll_window, offset=0)
        except TransportError as exc:
            with self._lock:
                self._state.last_error = str(exc)
            _log.warning("Poll failed; retrying next cycle: %s", exc)
            return 0
        if stop_event is not None and stop_event.is_set():
            return 0
        return self.merge_records(records)

    def _poll_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._poll_interval):
            try:
                self._poll(stop_event)
            except Exception:
                _log.exception("Mirror poll failed")

    def _notify(self) -> None:
        callback = self._on_change
        if callback is None:
            return
        try:
            callback(self._state.loader_state)
        except Exception:
            _log.exception("Mirror change callback failed")


def _decode_records(records: Iterable[Mapping[str, Any]]) -> Tuple[List[Event], int]:
    events: List[Event] = []
    failures = 0
    for record in records:
        result = decode_record(record)
        if isinstance(result, Malformed):
            failures += 1
            _log.debug("Undecodable record: %s", result.reason)
            continue
        events.append(result.event)
    return events, failures
