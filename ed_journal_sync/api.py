"""HTTP surface over the event store and the live broadcaster."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .broadcaster import LiveBroadcaster, Subscription
from .channel import KEEPALIVE_COMMENT, format_sse
from .errors import JournalSyncError
from .journal import Event
from .logging_utils import get_logger
from .stats import EventStats, compute_stats
from .store import EventStore
from .version import PACKAGE_VERSION


_log = get_logger("api")

API_PREFIX = "/api/v1"
MAX_PAGE_SIZE = 5000
DEFAULT_KEEPALIVE_INTERVAL = 15.0

StatsSource = Callable[[], EventStats]


# ---------- models ----------
class EventOut(BaseModel):
    id: str
    timestamp: str
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    raw_json: str = ""
    source_file: Optional[str] = None


class CountResponse(BaseModel):
    count: int


class EventListResponse(BaseModel):
    success: bool = True
    data: List[EventOut]
    total: int
    hasMore: bool = False


class SearchResponse(EventListResponse):
    page: int
    limit: int


class StatsResponse(BaseModel):
    success: bool = True
    stats: Dict[str, Any]
    lastEventTime: Optional[str] = None
    timestamp: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = PACKAGE_VERSION
    events: int
    subscribers: int
    backfillComplete: bool


# ---------- helpers ----------
def _event_out(event: Event) -> EventOut:
    return EventOut(**event.to_record())


def _clamp_limit(limit: int) -> int:
    return max(1, min(MAX_PAGE_SIZE, int(limit)))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def sse_stream(
    broadcaster: LiveBroadcaster,
    subscription: Subscription,
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
) -> Iterator[str]:
    """Render a subscription as SSE text; unsubscribes when the consumer goes away."""

    try:
        yield ": connected\n\n"
        while not subscription.closed:
            message = subscription.get(timeout=keepalive_interval)
            if message is None:
                if subscription.closed:
                    break
                yield KEEPALIVE_COMMENT
                continue
            yield format_sse(message)
    finally:
        broadcaster.unsubscribe(subscription)


# ---------- app ----------
def create_app(
    store: EventStore,
    broadcaster: LiveBroadcaster,
    stats_source: Optional[StatsSource] = None,
    *,
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
) -> FastAPI:
    app = FastAPI(title="ED Journal Sync API", version=PACKAGE_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def current_stats() -> EventStats:
        if stats_source is not None:
            return stats_source()
        return compute_stats(store.get_all())

    router = APIRouter(prefix=API_PREFIX)

    @router.get("/events/count", response_model=CountResponse)
    def events_count() -> CountResponse:
        return CountResponse(count=store.count())

    @router.get("/events", response_model=EventListResponse)
    def list_events(limit: Optional[int] = None, offset: int = 0) -> EventListResponse:
        total = store.count()
        if limit is None:
            events = store.get_all()
            return EventListResponse(data=[_event_out(e) for e in events], total=len(events), hasMore=False)
        page_size = _clamp_limit(limit)
        start = max(0, offset)
        events = store.get_recent(page_size, start)
        return EventListResponse(
            data=[_event_out(e) for e in events],
            total=total,
            hasMore=start + len(events) < total,
        )

    @router.get("/events/search", response_model=SearchResponse)
    def search_events(q: str = "", page: int = 1, limit: int = 50) -> SearchResponse:
        query = q.strip()
        if not query:
            raise HTTPException(status_code=400, detail="Search query is required")
        page = max(1, page)
        page_size = _clamp_limit(limit)
        offset = (page - 1) * page_size
        result = store.search(query, page_size, offset)
        return SearchResponse(
            data=[_event_out(e) for e in result.events],
            total=result.total,
            page=page,
            limit=page_size,
            hasMore=offset + len(result.events) < result.total,
        )

    @router.get("/events/stats", response_model=StatsResponse)
    def events_stats() -> StatsResponse:
        stats = current_stats()
        return StatsResponse(
            stats=stats.to_dict(),
            lastEventTime=stats.last_event,
            timestamp=_utc_now(),
        )

    @router.get("/events/stream")
    def events_stream() -> StreamingResponse:
        subscription = broadcaster.subscribe()
        return StreamingResponse(
            sse_stream(broadcaster, subscription, keepalive_interval),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @router.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            events=store.count(),
            subscribers=broadcaster.subscriber_count,
            backfillComplete=broadcaster.backfill_complete,
        )

    app.include_router(router)

    @app.exception_handler(JournalSyncError)
    async def _journal_sync_error(request: Request, exc: JournalSyncError) -> JSONResponse:
        _log.error("Request %s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    return app


__all__ = ["API_PREFIX", "MAX_PAGE_SIZE", "create_app", "sse_stream"]
