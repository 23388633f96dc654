import json
import shutil
import threading
import time
from pathlib import Path

import pytest

from ed_journal_sync.errors import StoreWriteError
from ed_journal_sync.loader import JournalLoader, JournalTailer, list_journal_files
from ed_journal_sync.stats import compute_stats
from ed_journal_sync.store import EventStore


DATA_DIR = Path(__file__).parent / "data"
SAMPLE = "Journal.2024-03-01T120000.01.log"


def _line(timestamp: str, event: str, **payload) -> str:
    return json.dumps({"timestamp": timestamp, "event": event, **payload}) + "\n"


def _write_journal(directory: Path, name: str, count: int, start_minute: int = 0) -> Path:
    path = directory / name
    with path.open("w", encoding="utf-8") as handle:
        for index in range(count):
            minute = start_minute + index
            handle.write(_line(f"3310-05-01T{minute // 60:02d}:{minute % 60:02d}:00Z", "Music", Index=index))
    return path


@pytest.fixture
def store():
    with EventStore() as opened:
        yield opened


def test_list_journal_files_newest_first(tmp_path: Path) -> None:
    for name in ("Journal.2024-01-01T100000.01.log", "Journal.2024-02-01T100000.01.log", "Status.json", "notes.log"):
        (tmp_path / name).write_text("")

    names = [path.name for path in list_journal_files(tmp_path)]
    assert names == ["Journal.2024-02-01T100000.01.log", "Journal.2024-01-01T100000.01.log"]
    assert [path.name for path in list_journal_files(tmp_path, max_files=1)] == names[:1]


def test_load_sample_journal(tmp_path: Path, store: EventStore) -> None:
    shutil.copy(DATA_DIR / SAMPLE, tmp_path / SAMPLE)
    report = JournalLoader(store).load(tmp_path)

    assert report.files_attempted == 1
    assert report.files_succeeded == 1
    assert report.events_loaded == 10
    assert report.parse_errors == 1
    assert not report.is_partial

    stats = compute_stats(store.get_all())
    assert stats.jumps == 2
    assert stats.exploration == 2
    assert stats.trading == 1
    assert stats.combat == 1
    assert stats.unique_systems == 2
    assert stats.first_event == "2024-03-01T12:00:00Z"
    assert stats.last_event == "2024-03-01T12:06:00Z"


def test_loading_twice_is_idempotent(tmp_path: Path, store: EventStore) -> None:
    _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 30)
    _write_journal(tmp_path, "Journal.2024-01-02T100000.01.log", 20, start_minute=100)
    loader = JournalLoader(store, batch_size=7)

    loader.load(tmp_path)
    count = store.count()
    stats = compute_stats(store.get_all())

    forced = loader.load(tmp_path, force=True)
    assert forced.events_parsed == 50
    assert forced.events_loaded == 0
    assert store.count() == count == 50
    assert compute_stats(store.get_all()) == stats


def test_unchanged_files_are_skipped(tmp_path: Path, store: EventStore) -> None:
    path = _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 5)
    loader = JournalLoader(store)
    loader.load(tmp_path)

    second = loader.load(tmp_path)
    assert second.files_skipped == 1
    assert second.events_parsed == 0

    with path.open("a", encoding="utf-8") as handle:
        handle.write(_line("3310-05-01T05:00:00Z", "Scan", BodyName="New"))
    third = loader.load(tmp_path)
    assert third.files_skipped == 0
    assert third.events_parsed == 1
    assert third.events_loaded == 1
    assert store.count() == 6



def test_failed_commits_leave_the_file_for_the_next_load(tmp_path: Path, store: EventStore, monkeypatch) -> None:
    _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 3)

    def failing_write(batch):
        raise StoreWriteError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(store, "_write_batch", failing_write)
        first = JournalLoader(store).load(tmp_path)

    assert first.failed_writes == 3
    assert first.is_partial
    assert store.get_processed_file("Journal.2024-01-01T100000.01.log") is None

    second = JournalLoader(store).load(tmp_path)
    assert second.files_skipped == 0
    assert second.events_loaded == 3
    assert store.count() == 3
    assert store.get_processed_file("Journal.2024-01-01T100000.01.log").events_count == 3

class _SlowStore:
    """Wraps a store and holds every save long enough for workers to overlap."""

    def __init__(self, inner: EventStore) -> None:
        self._inner = inner

    def save(self, events):
        time.sleep(0.02)
        return self._inner.save(events)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_never_more_than_k_files_open(tmp_path: Path, store: EventStore, monkeypatch) -> None:
    for day in range(1, 13):
        _write_journal(tmp_path, f"Journal.2024-01-{day:02d}T100000.01.log", 6, start_minute=day * 10)

    open_now = 0
    peak = 0
    lock = threading.Lock()
    real_open = Path.open

    class _CountingHandle:
        def __init__(self, handle) -> None:
            self._handle = handle

        def __enter__(self):
            return self._handle.__enter__()

        def __exit__(self, *exc_info):
            nonlocal open_now
            with lock:
                open_now -= 1
            return self._handle.__exit__(*exc_info)

    def counting_open(self, *args, **kwargs):
        nonlocal open_now, peak
        handle = real_open(self, *args, **kwargs)
        if self.name.startswith("Journal."):
            with lock:
                open_now += 1
                peak = max(peak, open_now)
            return _CountingHandle(handle)
        return handle

    monkeypatch.setattr(Path, "open", counting_open)
    loader = JournalLoader(_SlowStore(store), max_concurrent_files=3, batch_size=2)
    report = loader.load(tmp_path)

    assert report.files_succeeded == 12
    assert store.count() == 72
    assert 1 <= peak <= 3
    assert 1 <= loader.peak_open_files <= 3


def test_one_unreadable_file_does_not_abort_the_run(tmp_path: Path, store: EventStore, monkeypatch) -> None:
    _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 4)
    bad = _write_journal(tmp_path, "Journal.2024-01-02T100000.01.log", 4, start_minute=50)
    _write_journal(tmp_path, "Journal.2024-01-03T100000.01.log", 4, start_minute=100)
    real_open = Path.open

    def failing_open(self, *args, **kwargs):
        if self == bad:
            raise PermissionError("locked by the game")
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", failing_open)
    report = JournalLoader(store).load(tmp_path)

    assert report.files_attempted == 3
    assert report.files_succeeded == 2
    assert report.files_failed == 1
    assert bad.name in report.errors
    assert report.events_loaded == 8
    assert report.is_partial


def test_partial_trailing_line_is_left_for_later(tmp_path: Path, store: EventStore) -> None:
    path = tmp_path / "Journal.2024-01-01T100000.01.log"
    complete = _line("3310-05-01T10:00:00Z", "Music")
    path.write_text(complete + '{"timestamp":"3310-05-01T10:01:00Z","ev', encoding="utf-8")

    report = JournalLoader(store).load(tmp_path)
    assert report.events_loaded == 1
    record = store.get_processed_file(path.name)
    assert record is not None
    assert record.read_offset == len(complete.encode("utf-8"))


def test_progress_is_reported(tmp_path: Path, store: EventStore) -> None:
    _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 10)
    _write_journal(tmp_path, "Journal.2024-01-02T100000.01.log", 10, start_minute=30)
    updates = []

    JournalLoader(store, batch_size=4).load(tmp_path, progress=updates.append)

    assert updates
    final = max(updates, key=lambda update: (update.files_done, update.loaded))
    assert final.files_done == 2
    assert final.files_total == 2
    assert final.loaded == 20
    assert final.percent == 100.0


def test_missing_directory_reports_nothing(tmp_path: Path, store: EventStore) -> None:
    report = JournalLoader(store).load(tmp_path / "missing")
    assert report.files_attempted == 0


def test_tailer_follows_appends_and_rotation(tmp_path: Path, store: EventStore) -> None:
    first = _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 3)
    JournalLoader(store).load(tmp_path)
    tailer = JournalTailer(store, tmp_path, interval=0.1)

    assert tailer.poll() == 0

    with first.open("a", encoding="utf-8") as handle:
        handle.write(_line("3310-05-01T01:00:00Z", "Scan", BodyName="A"))
        handle.write('{"timestamp":"3310-05-01T01:01:00Z","event":"Sc')
    assert tailer.poll() == 1

    with first.open("a", encoding="utf-8") as handle:
        handle.write('an","BodyName":"B"}\n')
    second = _write_journal(tmp_path, "Journal.2024-01-02T100000.01.log", 2, start_minute=200)
    assert tailer.poll() == 3
    assert tailer.current_file == second
    assert store.count() == 3 + 1 + 1 + 2


def test_tailer_restarts_after_truncation(tmp_path: Path, store: EventStore) -> None:
    path = _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 4)
    tailer = JournalTailer(store, tmp_path)
    assert tailer.poll() == 4

    path.write_text(_line("3310-05-01T09:00:00Z", "Shutdown"), encoding="utf-8")
    assert tailer.poll() == 1
    assert tailer.position == path.stat().st_size


def test_tailer_thread_stops(tmp_path: Path, store: EventStore) -> None:
    _write_journal(tmp_path, "Journal.2024-01-01T100000.01.log", 2)
    tailer = JournalTailer(store, tmp_path, interval=0.05)
    tailer.start()
    deadline = time.monotonic() + 2.0
    while store.count() < 2 and time.monotonic() < deadline:
        time.sleep(0.02)
    tailer.stop()

    assert store.count() == 2
