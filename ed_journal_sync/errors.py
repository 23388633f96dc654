"""Exception taxonomy for journal ingestion and client synchronization."""

from __future__ import annotations

from typing import Optional


class JournalSyncError(Exception):
    """Base class for every error raised by this package."""


class ParseError(JournalSyncError):
    """A single journal line or wire record could not be decoded."""

    def __init__(self, reason: str, raw_text: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw_text = raw_text


class FileReadError(JournalSyncError):
    """A journal file could not be opened or read."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class StoreWriteError(JournalSyncError):
    """The event store failed to open or to commit a batch."""


class StoreReadError(JournalSyncError):
    """A query against the event store failed."""


class TransportError(JournalSyncError):
    """An HTTP request issued by the client side failed."""

    def __init__(self, message: str, *, url: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class ChannelError(JournalSyncError):
    """The live channel connection failed."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
