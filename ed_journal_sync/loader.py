"""Journal directory ingestion: bounded-concurrency bulk loader and live tailer."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .errors import FileReadError
from .journal import Event, Malformed, parse_line
from .logging_utils import get_logger
from .store import EventStore, ProcessedFile


_log = get_logger("loader")

JOURNAL_PREFIX = "Journal."
JOURNAL_SUFFIX = ".log"
DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_CONCURRENT_FILES = 5


@dataclass(frozen=True)
class LoadProgress:
    loaded: int
    current_file: str
    files_done: int
    files_total: int

    @property
    def percent(self) -> float:
        if self.files_total <= 0:
            return 100.0
        return round(100.0 * self.files_done / self.files_total, 1)


ProgressCallback = Callable[[LoadProgress], None]


@dataclass
class FileResult:
    filename: str
    parsed: int = 0
    inserted: int = 0
    parse_errors: int = 0
    failed_writes: int = 0
    read_offset: int = 0
    skipped: bool = False
    error: Optional[FileReadError] = None


@dataclass
class LoadReport:
    files_attempted: int = 0
    files_succeeded: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    events_parsed: int = 0
    events_loaded: int = 0
    parse_errors: int = 0
    failed_writes: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return self.files_failed > 0 or self.failed_writes > 0

    def add(self, result: FileResult) -> None:
        self.files_attempted += 1
        if result.skipped:
            self.files_skipped += 1
            return
        self.events_parsed += result.parsed
        self.events_loaded += result.inserted
        self.parse_errors += result.parse_errors
        self.failed_writes += result.failed_writes
        if result.error is not None:
            self.files_failed += 1
            self.errors[result.filename] = str(result.error)
        else:
            self.files_succeeded += 1


def list_journal_files(directory: Union[str, Path], max_files: Optional[int] = None) -> List[Path]:
    """Return journal files newest first (journal names sort chronologically)."""

    root = Path(directory)
    if not root.is_dir():
        return []
    try:
        candidates = [
            path
            for path in root.iterdir()
            if path.is_file() and path.name.startswith(JOURNAL_PREFIX) and path.name.endswith(JOURNAL_SUFFIX)
        ]
    except OSError as exc:
        _log.warning("Unable to list journal directory %s: %s", root, exc)
        return []
    candidates.sort(key=lambda path: path.name, reverse=True)
    if max_files is not None and max_files > 0:
        return candidates[:max_files]
    return candidates


def iter_complete_lines(handle: BinaryIO, start: int = 0) -> Iterator[Tuple[str, int]]:
    """Yield ``(line, end_offset)`` for newline-terminated lines from ``start``.

    A trailing line without a newline is still being written and is left for
    the next read.
    """

    handle.seek(start)
    offset = start
    for raw in handle:
        if not raw.endswith(b"\n"):
            break
        offset += len(raw)
        yield raw.decode("utf-8", errors="replace"), offset


def parse_lines(lines: Iterator[Tuple[str, int]], source_file: str) -> Tuple[List[Event], int, int]:
    """Parse lines into events; returns ``(events, parse_errors, end_offset)``."""

    events: List[Event] = []
    parse_errors = 0
    end_offset = -1
    for text, offset in lines:
        end_offset = offset
        if not text.strip():
            continue
        parsed = parse_line(text, source_file)
        if isinstance(parsed, Malformed):
            parse_errors += 1
            _log.debug("Skipping malformed line in %s: %s", source_file, parsed.reason)
            continue
        events.append(parsed.event)
    return events, parse_errors, end_offset


class JournalLoader:
    """Loads a journal directory into the store with at most K files open."""

    def __init__(
        self,
        store: EventStore,
        *,
        max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_files: Optional[int] = None,
    ) -> None:
        self._store = store
        self._max_concurrent_files = max(1, int(max_concurrent_files))
        self._batch_size = max(1, int(batch_size))
        self._max_files = max_files
        self._open_lock = threading.Lock()
        self._open_files = 0
        self._peak_open_files = 0
        self._progress_lock = threading.Lock()
        self._events_loaded = 0
        self._files_done = 0

    @property
    def max_concurrent_files(self) -> int:
        return self._max_concurrent_files

    @property
    def peak_open_files(self) -> int:
        return self._peak_open_files

    def load(
        self,
        directory: Union[str, Path],
        progress: Optional[ProgressCallback] = None,
        *,
        force: bool = False,
    ) -> LoadReport:
        root = Path(directory)
        report = LoadReport()
        if not root.is_dir():
            _log.warning("Journal path does not exist: %s", root)
            return report

        files = list_journal_files(root, self._max_files)
        if not files:
            _log.info("No journal files found in %s", root)
            return report

        _log.info(
            "Found %d journal files in %s; loading with %d workers",
            len(files),
            root,
            self._max_concurrent_files,
        )
        with self._progress_lock:
            self._events_loaded = 0
            self._files_done = 0

        with ThreadPoolExecutor(
            max_workers=self._max_concurrent_files,
            thread_name_prefix="journal-loader",
        ) as pool:
            futures = {
                pool.submit(self._load_file, path, progress, len(files), force): path
                for path in files
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    _log.exception("Unexpected failure while loading %s", path.name)
                    result = FileResult(filename=path.name, error=FileReadError(str(path), str(exc)))
                report.add(result)

        _log.info(
            "Loaded %d new events from %d/%d files (%d skipped, %d failed, %d bad lines)",
            report.events_loaded,
            report.files_succeeded,
            report.files_attempted,
            report.files_skipped,
            report.files_failed,
            report.parse_errors,
        )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_file(
        self,
        path: Path,
        progress: Optional[ProgressCallback],
        files_total: int,
        force: bool,
    ) -> FileResult:
        filename = path.name
        result = FileResult(filename=filename)
        try:
            stat = path.stat()
        except OSError as exc:
            result.error = FileReadError(str(path), str(exc))
            _log.warning("Unable to stat %s: %s", filename, exc)
            return result

        previous = self._store.get_processed_file(filename)
        if (
            not force
            and previous is not None
            and previous.size == stat.st_size
            and previous.mtime == stat.st_mtime
        ):
            _log.debug("Skipping already processed %s", filename)
            result.skipped = True
            self._report_progress(progress, filename, files_total, file_finished=True)
            return result

        start = 0
        if not force and previous is not None and previous.read_offset <= stat.st_size:
            start = previous.read_offset
        result.read_offset = start

        _log.debug("Loading %s from offset %d", filename, start)
        batch: List[Event] = []
        try:
            with self._track_open_file():
                with path.open("rb") as handle:
                    for text, offset in iter_complete_lines(handle, start):
                        result.read_offset = offset
                        if not text.strip():
                            continue
                        parsed = parse_line(text, filename)
                        if isinstance(parsed, Malformed):
                            result.parse_errors += 1
                            _log.debug("Skipping malformed line in %s: %s", filename, parsed.reason)
                            continue
                        result.parsed += 1
                        batch.append(parsed.event)
                        if len(batch) >= self._batch_size:
                            self._commit(batch, result, progress, files_total)
                            batch = []
                    if batch:
                        self._commit(batch, result, progress, files_total)
        except OSError as exc:
            result.error = FileReadError(str(path), str(exc))
            _log.warning("Failed to read %s: %s", filename, exc)
            return result

        if result.failed_writes:
            # Leave the previous marker so the next load reads these lines again.
            _log.warning(
                "%s: %d events failed to commit; file will be re-read on the next load",
                filename,
                result.failed_writes,
            )
            self._report_progress(progress, filename, files_total, file_finished=True)
            return result

        previous_count = previous.events_count if previous is not None and not force else 0
        self._store.mark_processed_file(
            ProcessedFile(
                filename=filename,
                size=stat.st_size,
                mtime=stat.st_mtime,
                read_offset=result.read_offset,
                events_count=previous_count + result.inserted,
            )
        )
        self._report_progress(progress, filename, files_total, file_finished=True)
        _log.debug(
            "Loaded %s: %d parsed, %d new, %d malformed",
            filename,
            result.parsed,
            result.inserted,
            result.parse_errors,
        )
        return result

    def _commit(
        self,
        batch: List[Event],
        result: FileResult,
        progress: Optional[ProgressCallback],
        files_total: int,
    ) -> None:
        saved = self._store.save(batch)
        result.inserted += saved.inserted_count
        result.failed_writes += saved.failed
        with self._progress_lock:
            self._events_loaded += saved.inserted_count
        self._report_progress(progress, result.filename, files_total, file_finished=False)

    def _report_progress(
        self,
        progress: Optional[ProgressCallback],
        filename: str,
        files_total: int,
        *,
        file_finished: bool,
    ) -> None:
        with self._progress_lock:
            if file_finished:
                self._files_done += 1
            snapshot = LoadProgress(
                loaded=self._events_loaded,
                current_file=filename,
                files_done=self._files_done,
                files_total=files_total,
            )
        if progress is None:
            return
        try:
            progress(snapshot)
        except Exception:
            _log.exception("Progress callback failed")

    @contextmanager
    def _track_open_file(self) -> Iterator[None]:
        with self._open_lock:
            self._open_files += 1
            if self._open_files > self._peak_open_files:
                self._peak_open_files = self._open_files
        try:
            yield
        finally:
            with self._open_lock:
                self._open_files -= 1


class JournalTailer:
    """Follows the newest journal file and stores lines as they are appended."""

    def __init__(
        self,
        store: EventStore,
        directory: Union[str, Path],
        *,
        interval: float = 1.0,
    ) -> None:
        self._store = store
        self._directory = Path(directory)
        self._interval = max(0.05, float(interval))
        self._current: Optional[Path] = None
        self._position = 0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def current_file(self) -> Optional[Path]:
        return self._current

    @property
    def position(self) -> int:
        return self._position

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="journal-tail", daemon=True)
        self._thread.start()
        _log.info("Watching %s for new journal lines", self._directory)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout)
            if thread.is_alive():
                _log.debug("Tailer thread still running after stop timeout")
                return
        self._thread = None

    def poll(self) -> int:
        """Read whatever was appended since the last poll; returns new events stored."""

        with self._lock:
            files = list_journal_files(self._directory, max_files=1)
            if not files:
                return 0
            newest = files[0]
            inserted = 0
            if self._current is None:
                self._switch_to(newest)
            elif newest != self._current:
                inserted += self._drain(self._current)
                _log.info("Journal rotated: %s -> %s", self._current.name, newest.name)
                self._switch_to(newest)
            inserted += self._drain(newest)
            return inserted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll()
            except Exception:
                _log.exception("Journal tail poll failed")
            if self._stop_event.wait(self._interval):
                break

    def _switch_to(self, path: Path) -> None:
        self._current = path
        record = self._store.get_processed_file(path.name)
        self._position = record.read_offset if record is not None else 0

    def _drain(self, path: Path) -> int:
        try:
            stat = path.stat()
        except OSError as exc:
            _log.warning("Unable to stat %s: %s", path.name, exc)
            return 0
        if stat.st_size < self._position:
            _log.info("%s shrank (%d < %d); reading from the start", path.name, stat.st_size, self._position)
            self._position = 0
        if stat.st_size == self._position:
            return 0

        try:
            with path.open("rb") as handle:
                events, parse_errors, end_offset = parse_lines(
                    iter_complete_lines(handle, self._position),
                    path.name,
                )
        except OSError as exc:
            _log.warning("Failed to read %s: %s", path.name, exc)
            return 0

        if end_offset < 0:
            return 0
        saved = self._store.save(events) if events else None
        if saved is not None and saved.failed:
            # Keep the position so the lines are read again next poll.
            return 0
        self._position = end_offset
        previous = self._store.get_processed_file(path.name)
        inserted = saved.inserted_count if saved is not None else 0
        self._store.mark_processed_file(
            ProcessedFile(
                filename=path.name,
                size=stat.st_size,
                mtime=stat.st_mtime,
                read_offset=end_offset,
                events_count=(previous.events_count if previous else 0) + inserted,
            )
        )
        if parse_errors:
            _log.debug("Skipped %d malformed lines in %s", parse_errors, path.name)
        return inserted
