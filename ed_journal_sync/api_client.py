"""Client for the journal events HTTP API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

from .errors import TransportError
from .http_client import get_shared_session
from .logging_utils import get_logger


_log = get_logger("api_client")

DEFAULT_TIMEOUT = 15
DEFAULT_BASE_URL = "http://127.0.0.1:8000/api/v1"


@dataclass
class SearchResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50
    has_more: bool = False


class EventsApiClient:
    """Fetches events, counts, searches and stats from the events API.

    Every failure surfaces as ``TransportError``; callers decide whether to
    retry.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._session = session or get_shared_session()
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def session(self) -> requests.Session:
        return self._session

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def fetch_count(self) -> int:
        data = self._get_json("events/count")
        count = data.get("count") if isinstance(data, Mapping) else data
        try:
            return max(0, int(count))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise TransportError(f"unexpected count payload: {data!r}", url=self.url("events/count")) from exc

    def fetch_all(self) -> List[Dict[str, Any]]:
        """Fetch the full event set with no limit."""

        return _extract_records(self._get_json("events"), self.url("events"))

    def fetch_page(self, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        params = {"limit": max(1, int(limit)), "offset": max(0, int(offset))}
        return _extract_records(self._get_json("events", params=params), self.url("events"))

    def search(self, query: str, page: int = 1, limit: int = 50) -> SearchResult:
        params = {"q": query, "page": max(1, int(page)), "limit": max(1, int(limit))}
        data = self._get_json("events/search", params=params)
        records = _extract_records(data, self.url("events/search"))
        if not isinstance(data, Mapping):
            return SearchResult(records=records, total=len(records), page=params["page"], limit=params["limit"])
        return SearchResult(
            records=records,
            total=_safe_int(data.get("total"), len(records)),
            page=_safe_int(data.get("page"), params["page"]),
            limit=_safe_int(data.get("limit"), params["limit"]),
            has_more=bool(data.get("hasMore", False)),
        )

    def fetch_stats(self) -> Dict[str, Any]:
        data = self._get_json("events/stats")
        if not isinstance(data, Mapping):
            raise TransportError("unexpected stats payload", url=self.url("events/stats"))
        return dict(data)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = self.url(path)
        _log.debug("GET %s params=%s", url, params)
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransportError(f"request failed: {exc}", url=url) from exc

        if response.status_code != 200:
            raise TransportError(
                f"unexpected status {response.status_code}",
                url=url,
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError("response was not valid JSON", url=url, status=response.status_code) from exc


def _extract_records(data: Any, url: str) -> List[Dict[str, Any]]:
    """Accept either ``{"data": [...]}`` or a bare JSON array."""

    if isinstance(data, Mapping):
        data = data.get("data")
    if not isinstance(data, list):
        raise TransportError("response did not contain an event list", url=url)
    return [entry for entry in data if isinstance(entry, dict)]


def _safe_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


__all__ = ["EventsApiClient", "SearchResult", "DEFAULT_TIMEOUT"]
