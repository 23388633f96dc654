"""Fan-out of store writes and stats to live subscribers."""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .journal import Event, parse_timestamp
from .loader import LoadProgress
from .logging_utils import get_logger
from .stats import EventStats
from .store import EventStore


_log = get_logger("broadcaster")

JOURNAL_EVENT = "journal:event"
STATS_UPDATE = "stats:update"
JOURNAL_PROGRESS = "journal:progress"
BACKFILL_COMPLETE = "backfill:complete"

DEFAULT_QUEUE_SIZE = 256

_subscription_ids = itertools.count(1)


@dataclass(frozen=True)
class ChannelMessage:
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel, "data": self.data}


_CLOSED = ChannelMessage(channel="")


class Subscription:
    """One subscriber's bounded inbox."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = next(_subscription_ids)
        self._queue: "queue.Queue[ChannelMessage]" = queue.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()
        self.dropped = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, message: ChannelMessage) -> bool:
        """Queue a message without blocking; False when the inbox is full or closed."""

        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ChannelMessage]:
        """Next message, or None on timeout or once the subscription is closed."""

        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            message = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if message is _CLOSED:
            return None
        return message

    def drain(self) -> List[ChannelMessage]:
        messages: List[ChannelMessage] = []
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return messages
            if message is not _CLOSED:
                messages.append(message)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # Wake a consumer blocked in get(); the inbox is emptied to make room.
        self.drain()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass


class LiveBroadcaster:
    """Pushes store writes, stats and backfill status to live subscribers.

    Publishing never blocks: a subscriber whose inbox is full is dropped.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._backfill_message: Optional[ChannelMessage] = None
        self._last_event_time: Optional[str] = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    @property
    def backfill_complete(self) -> bool:
        return self._backfill_message is not None

    @property
    def last_event_time(self) -> Optional[str]:
        return self._last_event_time

    def subscribe(self) -> Subscription:
        subscription = Subscription(self._queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
            if self._backfill_message is not None:
                subscription.offer(self._backfill_message)
        _log.debug("Subscriber %d connected", subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.close()
        _log.debug("Subscriber %d disconnected", subscription.id)

    def close(self) -> None:
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish(self, channel: str, data: Dict[str, Any]) -> int:
        """Deliver one message to every subscriber; returns how many accepted it."""

        message = ChannelMessage(channel=channel, data=data)
        with self._lock:
            subscriptions = list(self._subscriptions)
        return self._deliver(message, subscriptions)

    def publish_events(self, events: Iterable[Event]) -> int:
        published = 0
        for event in events:
            self._note_event_time(event.timestamp)
            self.publish(JOURNAL_EVENT, event.to_message())
            published += 1
        return published

    def publish_stats(self, stats: EventStats, last_event_time: Optional[str] = None) -> int:
        return self.publish(
            STATS_UPDATE,
            {
                "stats": stats.to_dict(),
                "lastEventTime": last_event_time or stats.last_event or self._last_event_time,
                "timestamp": _utc_now(),
            },
        )

    def publish_progress(self, progress: LoadProgress) -> int:
        return self.publish(
            JOURNAL_PROGRESS,
            {
                "loaded": progress.loaded,
                "currentFile": progress.current_file,
                "filesDone": progress.files_done,
                "filesTotal": progress.files_total,
                "timestamp": _utc_now(),
            },
        )

    def begin_backfill(self) -> None:
        """Forget the previous completion so late subscribers wait for the next one."""

        with self._lock:
            self._backfill_message = None

    def publish_backfill_complete(self, total_events: int) -> int:
        message = ChannelMessage(channel=BACKFILL_COMPLETE, data={"totalEvents": int(total_events)})
        with self._lock:
            self._backfill_message = message
            subscriptions = list(self._subscriptions)
        _log.info("Backfill complete with %d events; notifying %d subscribers", total_events, len(subscriptions))
        return self._deliver(message, subscriptions)

    def attach(self, store: EventStore) -> None:
        store.add_listener(self.publish_events)

    def detach(self, store: EventStore) -> None:
        store.remove_listener(self.publish_events)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _deliver(self, message: ChannelMessage, subscriptions: List[Subscription]) -> int:
        delivered = 0
        for subscription in subscriptions:
            if subscription.offer(message):
                delivered += 1
                continue
            if subscription.closed:
                self._forget(subscription)
                continue
            _log.warning(
                "Dropping subscriber %d: inbox full (%d pending)",
                subscription.id,
                subscription.pending,
            )
            subscription.dropped = True
            self._forget(subscription)
            subscription.close()
        return delivered

    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _note_event_time(self, timestamp: str) -> None:
        current = self._last_event_time
        if current is None:
            self._last_event_time = timestamp
            return
        new_value = parse_timestamp(timestamp)
        old_value = parse_timestamp(current)
        if new_value is not None and (old_value is None or new_value > old_value):
            self._last_event_time = timestamp


class PeriodicStatsPublisher:
    """Background thread that publishes ``stats:update`` on a fixed interval."""

    def __init__(
        self,
        broadcaster: LiveBroadcaster,
        stats_source: Callable[[], EventStats],
        interval: float = 5.0,
    ) -> None:
        self._broadcaster = broadcaster
        self._stats_source = stats_source
        self._interval = max(0.05, float(interval))
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stats-publisher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout)
        self._thread = None

    def publish_once(self) -> int:
        stats = self._stats_source()
        return self._broadcaster.publish_stats(stats)

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.publish_once()
            except Exception:
                _log.exception("Failed to publish stats update")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
