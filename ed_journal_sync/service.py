"""Server-side wiring: store, backfill, tailer, broadcaster and stats publisher."""

from __future__ import annotations

import threading
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .broadcaster import LiveBroadcaster, PeriodicStatsPublisher
from .loader import JournalLoader, JournalTailer, LoadProgress, LoadReport
from .logging_utils import get_logger, install_exception_logging, set_log_level
from .preferences import PreferencesManager, SyncPreferences
from .stats import EventStats, compute_stats
from .store import EventStore


_log = get_logger("service")


class JournalSyncService:
    """Owns one store and everything that reads from or writes to it."""

    def __init__(self, preferences: Optional[SyncPreferences] = None) -> None:
        self.preferences = preferences or PreferencesManager().load()
        if self.preferences.log_level:
            set_log_level(self.preferences.log_level)
        self.store = EventStore(self.preferences.store_path)
        self.broadcaster = LiveBroadcaster(self.preferences.subscriber_queue_size)
        self.loader = JournalLoader(
            self.store,
            max_concurrent_files=self.preferences.max_concurrent_files,
            batch_size=self.preferences.batch_size,
            max_files=self.preferences.max_files,
        )
        self.tailer = JournalTailer(
            self.store,
            self.preferences.journal_dir,
            interval=self.preferences.tail_interval,
        )
        self.stats_publisher = PeriodicStatsPublisher(
            self.broadcaster,
            self.current_stats,
            interval=self.preferences.stats_interval,
        )
        self.last_report: Optional[LoadReport] = None
        self.last_progress: Optional[LoadProgress] = None
        self._backfill_thread: Optional[threading.Thread] = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def create_app(self) -> FastAPI:
        return create_app(self.store, self.broadcaster, self.current_stats)

    def start(self, *, background: bool = True) -> None:
        """Open the store, run the backfill, then follow the newest journal."""

        if self._started:
            return
        install_exception_logging()
        self.store.open()
        self.broadcaster.attach(self.store)
        self._started = True
        _log.info("Journal sync starting for %s", self.preferences.journal_dir)
        if background:
            self._backfill_thread = threading.Thread(
                target=self._backfill_then_follow,
                name="journal-backfill",
                daemon=True,
            )
            self._backfill_thread.start()
        else:
            self._backfill_then_follow()

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.stats_publisher.stop()
        self.tailer.stop()
        thread = self._backfill_thread
        if thread and thread.is_alive():
            thread.join(10.0)
        self._backfill_thread = None
        self.broadcaster.detach(self.store)
        self.broadcaster.close()
        self.store.close()
        _log.info("Journal sync stopped")

    def run_backfill(self, *, force: bool = False) -> LoadReport:
        """Load the journal directory and announce completion to subscribers."""

        self.broadcaster.begin_backfill()
        report = self.loader.load(self.preferences.journal_dir, self._record_progress, force=force)
        self.last_report = report
        if report.is_partial:
            _log.warning(
                "Backfill finished with %d failed files and %d failed writes",
                report.files_failed,
                report.failed_writes,
            )
        self.broadcaster.publish_backfill_complete(self.store.count())
        return report

    def current_stats(self) -> EventStats:
        return compute_stats(self.store.get_all())

    def _record_progress(self, progress: LoadProgress) -> None:
        self.last_progress = progress
        self.broadcaster.publish_progress(progress)
        _log.debug(
            "Backfill progress: %d events, %d/%d files (%s)",
            progress.loaded,
            progress.files_done,
            progress.files_total,
            progress.current_file,
        )

    def _backfill_then_follow(self) -> None:
        try:
            self.run_backfill()
        except Exception:
            _log.exception("Backfill failed")
        if not self._started:
            return
        self.tailer.start()
        self.stats_publisher.start()
