"""Helper utilities for the package's logging hierarchy."""

from __future__ import annotations

import logging
from pathlib import Path
import sys
import threading
from types import TracebackType
from typing import Optional, Union

PACKAGE_FOLDER_NAME = Path(__file__).resolve().parent.name

BASE_LOGGER = logging.getLogger(PACKAGE_FOLDER_NAME)
BASE_LOGGER.propagate = True

_EXCEPTION_HOOKS_INSTALLED = False
_DEFAULT_THREAD_PREFIXES = (
    "journal-",
    "mirror-",
    "channel-",
    "stats-",
)


def get_logger(suffix: str | None = None) -> logging.Logger:
    """Return the shared package logger or one of its children."""

    if suffix is None:
        return BASE_LOGGER
    logger = BASE_LOGGER.getChild(suffix)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    return logger


def coerce_log_level(value: object) -> Optional[int]:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        if candidate.isdigit():
            try:
                return int(candidate)
            except ValueError:
                return None
        level = logging.getLevelName(candidate.upper())
        return level if isinstance(level, int) else None
    return None


def set_log_level(level: Union[int, str]) -> None:
    """Update the base logger level (and implicitly its children)."""

    resolved = coerce_log_level(level)
    if resolved is None:
        BASE_LOGGER.warning("Ignoring unknown log level %r", level)
        return
    BASE_LOGGER.setLevel(resolved)


def install_exception_logging(logger: logging.Logger | None = None) -> None:
    """Route unhandled exceptions from package threads to the package log."""

    global _EXCEPTION_HOOKS_INSTALLED
    if _EXCEPTION_HOOKS_INSTALLED:
        return

    target_logger = logger or BASE_LOGGER

    def _traceback_mentions_package(tb: TracebackType | None) -> bool:
        while tb is not None:
            try:
                filename = tb.tb_frame.f_code.co_filename
            except Exception:
                filename = ""
            if PACKAGE_FOLDER_NAME in filename:
                return True
            tb = tb.tb_next
        return False

    thread_prefixes = _DEFAULT_THREAD_PREFIXES
    prior_thread_hook = getattr(threading, "excepthook", None)

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        thread_name = args.thread.name if args.thread is not None else ""
        normalized = (thread_name or "").lower()
        should_log = any(normalized.startswith(prefix) for prefix in thread_prefixes)
        if not should_log:
            should_log = _traceback_mentions_package(args.exc_traceback)
        if should_log:
            target_logger.error(
                "Unhandled exception in thread %s",
                thread_name or "<unnamed>",
                exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            )
        if callable(prior_thread_hook) and prior_thread_hook is not _thread_excepthook:
            prior_thread_hook(args)

    if callable(prior_thread_hook):
        threading.excepthook = _thread_excepthook

    prior_sys_hook = sys.excepthook

    def _sys_excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> None:
        if _traceback_mentions_package(exc_traceback):
            target_logger.error(
                "Unhandled exception",
                exc_info=(exc_type, exc_value, exc_traceback),
            )
        if callable(prior_sys_hook) and prior_sys_hook is not _sys_excepthook:
            prior_sys_hook(exc_type, exc_value, exc_traceback)

    sys.excepthook = _sys_excepthook
    _EXCEPTION_HOOKS_INSTALLED = True
