"""Shared HTTP session for the client-side components."""

from __future__ import annotations

from typing import Optional

import requests

from .version import PACKAGE_NAME, PACKAGE_VERSION

_SESSION: Optional[requests.Session] = None
_PACKAGE_AGENT = f"{PACKAGE_NAME}/{PACKAGE_VERSION}"


def _build_user_agent(existing: Optional[str]) -> str:
    candidate = (existing or "").strip()
    if candidate and _PACKAGE_AGENT in candidate:
        return candidate
    if candidate:
        return f"{candidate} {_PACKAGE_AGENT}"
    return _PACKAGE_AGENT


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = _build_user_agent(session.headers.get("User-Agent"))
    session.headers.setdefault("Accept", "application/json")
    return session


def get_shared_session() -> requests.Session:
    """Return the process-wide requests session carrying the package User-Agent."""

    global _SESSION
    if _SESSION is None:
        _SESSION = new_session()
    return _SESSION


__all__ = ["get_shared_session", "new_session"]
