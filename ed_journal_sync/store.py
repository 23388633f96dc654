"""SQLite-backed store of deduplicated journal events."""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import StoreReadError, StoreWriteError
from .journal import Event
from .logging_utils import get_logger


_log = get_logger("store")

MEMORY_PATH = ":memory:"
WRITE_ATTEMPTS = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    timestamp TEXT NOT NULL,
    sort_key TEXT NOT NULL,
    event_type TEXT NOT NULL,
    system_name TEXT,
    source_file TEXT,
    payload TEXT NOT NULL,
    raw_text TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_events_sort ON events(sort_key DESC, seq DESC);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

CREATE TABLE IF NOT EXISTS processed_files (
    filename TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    mtime REAL NOT NULL,
    read_offset INTEGER NOT NULL,
    events_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

_INSERT_SQL = """
INSERT OR IGNORE INTO events
    (event_id, timestamp, sort_key, event_type, system_name, source_file, payload, raw_text)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_COLUMNS = "event_id, timestamp, event_type, source_file, payload, raw_text"
_ORDER_BY = "ORDER BY sort_key DESC, seq DESC"
_SEARCH_WHERE = (
    "WHERE event_type LIKE ? ESCAPE '\\'"
    " OR system_name LIKE ? ESCAPE '\\'"
    " OR payload LIKE ? ESCAPE '\\'"
    " OR raw_text LIKE ? ESCAPE '\\'"
)

SaveListener = Callable[[List[Event]], None]


@dataclass
class SaveResult:
    inserted: List[Event] = field(default_factory=list)
    duplicates: int = 0
    failed: int = 0

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


@dataclass(frozen=True)
class SearchPage:
    events: List[Event]
    total: int


@dataclass(frozen=True)
class ProcessedFile:
    filename: str
    size: int
    mtime: float
    read_offset: int
    events_count: int = 0


class EventStore:
    """Owns the canonical event set; the only writer of events.

    Writes are serialized under a single lock and committed one transaction per
    ``save`` call, so readers see either the state before or after a batch.
    """

    def __init__(self, path: Union[str, Path] = MEMORY_PATH) -> None:
        self._path = str(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        # Held from commit through notification so listeners see commit order.
        self._order_lock = threading.RLock()
        self._count = 0
        self._listeners: List[SaveListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def path(self) -> str:
        return self._path

    @property
    def in_memory(self) -> bool:
        return self._path == MEMORY_PATH

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "EventStore":
        with self._lock:
            if self._conn is not None:
                return self
            try:
                if not self.in_memory:
                    Path(self._path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
                if not self.in_memory:
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(_SCHEMA)
                (count,) = conn.execute("SELECT COUNT(*) FROM events").fetchone()
            except (sqlite3.Error, OSError) as exc:
                raise StoreWriteError(f"Unable to open event store at {self._path}: {exc}") from exc
            self._conn = conn
            self._count = int(count)
        _log.info("Event store opened at %s (%d events)", self._path, self._count)
        return self

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
            if conn is None:
                return
            try:
                conn.close()
            except sqlite3.Error:
                _log.exception("Failed to close event store cleanly")
        _log.info("Event store closed")

    def __enter__(self) -> "EventStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: SaveListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: SaveListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def save(self, events: Iterable[Event]) -> SaveResult:
        """Insert events idempotently; known ids are ignored.

        A failed commit is retried once. A second failure is reported through
        ``SaveResult.failed`` rather than raised.
        """

        batch = list(events)
        if not batch:
            return SaveResult()

        with self._order_lock:
            inserted: List[Event] = []
            duplicates = 0
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                try:
                    inserted, duplicates = self._write_batch(batch)
                except StoreWriteError as exc:
                    if attempt < WRITE_ATTEMPTS:
                        _log.warning("Batch commit failed (%s); retrying", exc)
                        continue
                    _log.error("Batch of %d events dropped after %d attempts: %s", len(batch), attempt, exc)
                    return SaveResult(failed=len(batch))
                break

            if inserted:
                self._notify(inserted)
        return SaveResult(inserted=inserted, duplicates=duplicates)

    def _write_batch(self, batch: Sequence[Event]) -> Tuple[List[Event], int]:
        with self._lock:
            conn = self._require_connection()
            inserted: List[Event] = []
            duplicates = 0
            try:
                conn.execute("BEGIN IMMEDIATE")
                for event in batch:
                    cursor = conn.execute(_INSERT_SQL, self._to_row(event))
                    if cursor.rowcount == 1:
                        inserted.append(event)
                    else:
                        duplicates += 1
                conn.execute("COMMIT")
            except (sqlite3.Error, TypeError, ValueError) as exc:
                self._rollback(conn)
                raise StoreWriteError(f"commit of {len(batch)} events failed: {exc}") from exc
            self._count += len(inserted)
            return inserted, duplicates

    def _notify(self, inserted: List[Event]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(list(inserted))
            except Exception:
                _log.exception("Event store listener failed")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def count(self) -> int:
        return self._count

    def get_recent(self, limit: int = 50, offset: int = 0) -> List[Event]:
        limit = max(0, int(limit))
        offset = max(0, int(offset))
        sql = f"SELECT {_SELECT_COLUMNS} FROM events {_ORDER_BY} LIMIT ? OFFSET ?"
        return self._query(sql, (limit, offset))

    def get_all(self) -> List[Event]:
        """Return every stored event, newest first. Unbounded."""

        return self._query(f"SELECT {_SELECT_COLUMNS} FROM events {_ORDER_BY}", ())

    def search(self, query: str, limit: int = 50, offset: int = 0) -> SearchPage:
        text = (query or "").strip()
        if not text:
            return SearchPage(events=[], total=0)
        pattern = f"%{_escape_like(text)}%"
        params = (pattern, pattern, pattern, pattern)
        limit = max(0, int(limit))
        offset = max(0, int(offset))
        with self._lock:
            conn = self._require_connection()
            try:
                (total,) = conn.execute(f"SELECT COUNT(*) FROM events {_SEARCH_WHERE}", params).fetchone()
                rows = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM events {_SEARCH_WHERE} {_ORDER_BY} LIMIT ? OFFSET ?",
                    params + (limit, offset),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreReadError(f"search for {text!r} failed: {exc}") from exc
        return SearchPage(events=[self._from_row(row) for row in rows], total=int(total))

    # ------------------------------------------------------------------
    # Processed file bookkeeping
    # ------------------------------------------------------------------
    def get_processed_file(self, filename: str) -> Optional[ProcessedFile]:
        with self._lock:
            conn = self._require_connection()
            try:
                row = conn.execute(
                    "SELECT filename, size, mtime, read_offset, events_count FROM processed_files WHERE filename = ?",
                    (filename,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreReadError(f"lookup of processed file {filename} failed: {exc}") from exc
        if row is None:
            return None
        return ProcessedFile(
            filename=row[0],
            size=int(row[1]),
            mtime=float(row[2]),
            read_offset=int(row[3]),
            events_count=int(row[4]),
        )

    def mark_processed_file(self, record: ProcessedFile) -> None:
        with self._lock:
            conn = self._require_connection()
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO processed_files
                        (filename, size, mtime, read_offset, events_count)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (record.filename, record.size, record.mtime, record.read_offset, record.events_count),
                )
            except sqlite3.Error:
                _log.exception("Failed to record processed file %s", record.filename)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreWriteError("event store is not open")
        return self._conn

    def _query(self, sql: str, params: tuple) -> List[Event]:
        with self._lock:
            conn = self._require_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreReadError(f"query failed: {exc}") from exc
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            _log.debug("Rollback skipped; no transaction active")

    @staticmethod
    def _to_row(event: Event) -> tuple:
        return (
            event.id,
            event.timestamp,
            event.sort_key,
            event.type,
            event.system_name,
            event.source_file,
            json.dumps(event.payload, sort_keys=True, default=str),
            event.raw_text,
        )

    @staticmethod
    def _from_row(row: Sequence[object]) -> Event:
        event_id, timestamp, event_type, source_file, payload_text, raw_text = row
        try:
            payload = json.loads(str(payload_text))
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return Event(
            id=str(event_id),
            timestamp=str(timestamp),
            type=str(event_type),
            payload=payload,
            raw_text=str(raw_text or ""),
            source_file=str(source_file) if source_file is not None else None,
        )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
