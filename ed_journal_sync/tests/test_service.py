import shutil
import time
from pathlib import Path

from fastapi.testclient import TestClient

from ed_journal_sync.api import API_PREFIX
from ed_journal_sync.broadcaster import BACKFILL_COMPLETE, JOURNAL_EVENT, JOURNAL_PROGRESS
from ed_journal_sync.preferences import SyncPreferences
from ed_journal_sync.service import JournalSyncService


DATA_DIR = Path(__file__).parent / "data"
SAMPLE = "Journal.2024-03-01T120000.01.log"


def _service(journal_dir: Path) -> JournalSyncService:
    return JournalSyncService(
        SyncPreferences(journal_dir=journal_dir, tail_interval=0.05, stats_interval=0.05)
    )


def test_backfill_then_live_tail(tmp_path: Path) -> None:
    shutil.copy(DATA_DIR / SAMPLE, tmp_path / SAMPLE)
    service = _service(tmp_path)
    service.start(background=False)
    try:
        assert service.store.count() == 10
        assert service.last_report is not None
        assert service.last_report.events_loaded == 10
        assert service.last_progress is not None

        subscription = service.broadcaster.subscribe()
        replay = subscription.get(timeout=1.0)
        assert replay.channel == BACKFILL_COMPLETE
        assert replay.data == {"totalEvents": 10}

        with (tmp_path / SAMPLE).open("a", encoding="utf-8") as handle:
            handle.write('{"timestamp":"2024-03-01T12:10:00Z","event":"FSDJump","StarSystem":"Lave"}\n')

        deadline = time.monotonic() + 3.0
        live = None
        while time.monotonic() < deadline:
            message = subscription.get(timeout=0.1)
            if message is not None and message.channel == JOURNAL_EVENT:
                live = message
                break
        assert live is not None
        assert live.data["event"] == "FSDJump"
        assert service.current_stats().jumps == 3
    finally:
        service.stop()

    assert not service.store.is_open


def test_service_app_serves_the_store(tmp_path: Path) -> None:
    shutil.copy(DATA_DIR / SAMPLE, tmp_path / SAMPLE)
    service = _service(tmp_path)
    service.start(background=False)
    try:
        client = TestClient(service.create_app())
        assert client.get(f"{API_PREFIX}/events/count").json() == {"count": 10}
        assert client.get(f"{API_PREFIX}/events/stats").json()["stats"]["uniqueSystems"] == 2
    finally:
        service.stop()


def test_missing_journal_directory_still_completes_backfill(tmp_path: Path) -> None:
    service = _service(tmp_path / "absent")
    service.start(background=False)
    try:
        assert service.broadcaster.backfill_complete
        assert service.store.count() == 0
    finally:
        service.stop()


def test_backfill_progress_is_broadcast_before_completion(tmp_path: Path) -> None:
    shutil.copy(DATA_DIR / SAMPLE, tmp_path / SAMPLE)
    service = _service(tmp_path)
    subscription = service.broadcaster.subscribe()
    service.start(background=False)
    try:
        messages = subscription.drain()
    finally:
        service.stop()

    channels = [message.channel for message in messages]
    assert JOURNAL_PROGRESS in channels
    assert channels.index(JOURNAL_PROGRESS) < channels.index(BACKFILL_COMPLETE)
    final = [message for message in messages if message.channel == JOURNAL_PROGRESS][-1]
    assert final.data["currentFile"] == SAMPLE
    assert final.data["loaded"] == 10
    assert final.data["filesDone"] == final.data["filesTotal"] == 1
