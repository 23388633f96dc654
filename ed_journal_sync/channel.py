"""Server-sent events framing and the reconnecting live channel client."""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import requests

from .broadcaster import ChannelMessage
from .errors import ChannelError
from .http_client import get_shared_session
from .logging_utils import get_logger


_log = get_logger("channel")

KEEPALIVE_COMMENT = ": keepalive\n\n"
STREAM_PATH = "events/stream"

MessageHandler = Callable[[str, Dict[str, Any]], None]
TerminalHandler = Callable[[ChannelError], None]


def format_sse(message: ChannelMessage) -> str:
    payload = json.dumps(message.data, separators=(",", ":"), default=str)
    lines = [f"event: {message.channel}"]
    lines.extend(f"data: {chunk}" for chunk in payload.split("\n"))
    return "\n".join(lines) + "\n\n"


def iter_sse_messages(lines: Iterable[str]) -> Iterator[ChannelMessage]:
    """Assemble SSE lines into messages; comments and undecodable data are skipped."""

    channel = "message"
    data_lines: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n") if isinstance(raw, str) else raw.decode("utf-8", "replace").rstrip("\r\n")
        if not line:
            if data_lines:
                message = _build_message(channel, data_lines)
                if message is not None:
                    yield message
            channel = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            channel = value or "message"
        elif name == "data":
            data_lines.append(value)
    if data_lines:
        message = _build_message(channel, data_lines)
        if message is not None:
            yield message


def _build_message(channel: str, data_lines: List[str]) -> Optional[ChannelMessage]:
    text = "\n".join(data_lines)
    try:
        data = json.loads(text)
    except ValueError:
        _log.debug("Ignoring undecodable %s message: %.100s", channel, text)
        return None
    if not isinstance(data, dict):
        data = {"value": data}
    return ChannelMessage(channel=channel, data=data)


class LiveChannelClient:
    """Consumes the server's event stream, reconnecting with exponential backoff.

    After ``max_retries`` consecutive failed attempts the client stops and
    reports a terminal ``ChannelError``. A successful connection resets the
    failure count.
    """

    def __init__(
        self,
        base_url: str,
        on_message: MessageHandler,
        on_terminal_error: Optional[TerminalHandler] = None,
        *,
        session: Optional[requests.Session] = None,
        max_retries: int = 5,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        timeout: float = 15.0,
        read_timeout: float = 60.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/{STREAM_PATH}"
        self._on_message = on_message
        self._on_terminal_error = on_terminal_error
        self._session = session or get_shared_session()
        self._max_retries = max(0, int(max_retries))
        self._backoff_initial = max(0.0, float(backoff_initial))
        self._backoff_max = max(self._backoff_initial, float(backoff_max))
        self._timeout = timeout
        self._read_timeout = read_timeout
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._response_lock = threading.Lock()
        self._response: Optional[Any] = None
        self._failures = 0
        self._connected = False
        self.terminal_error: Optional[ChannelError] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self._backoff_max, self._backoff_initial * (2 ** (failures - 1)))

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="channel-client", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._response_lock:
            response = self._response
        if response is not None:
            try:
                response.close()
            except Exception:
                _log.debug("Closing the event stream raised", exc_info=True)
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def run_forever(self) -> None:
        self._failures = 0
        self.terminal_error = None
        while not self._stop_event.is_set():
            try:
                self._consume_once()
            except ChannelError as exc:
                error = exc
            else:
                error = ChannelError("stream closed by server")
            self._connected = False
            if self._stop_event.is_set():
                break

            self._failures += 1
            if self._failures > self._max_retries:
                terminal = ChannelError(
                    f"giving up on {self._url} after {self._failures} failed attempts: {error}",
                    attempts=self._failures,
                )
                self.terminal_error = terminal
                _log.error("%s", terminal)
                if self._on_terminal_error is not None:
                    try:
                        self._on_terminal_error(terminal)
                    except Exception:
                        _log.exception("Terminal error handler failed")
                return

            delay = self.backoff_delay(self._failures)
            _log.warning("Event stream failed (%s); reconnecting in %.1fs", error, delay)
            if self._stop_event.wait(delay):
                break
        _log.debug("Channel client stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _consume_once(self) -> None:
        try:
            response = self._session.get(
                self._url,
                stream=True,
                timeout=(self._timeout, self._read_timeout),
                headers={"Accept": "text/event-stream"},
            )
        except requests.RequestException as exc:
            raise ChannelError(f"connect failed: {exc}") from exc

        with self._response_lock:
            self._response = response
        try:
            if response.status_code != 200:
                raise ChannelError(f"unexpected status {response.status_code}")
            self._failures = 0
            self._connected = True
            _log.info("Connected to event stream %s", self._url)
            try:
                for message in iter_sse_messages(response.iter_lines(decode_unicode=True)):
                    if self._stop_event.is_set():
                        return
                    self._dispatch(message)
            except Exception as exc:
                if self._stop_event.is_set():
                    return
                raise ChannelError(f"stream interrupted: {exc}") from exc
        finally:
            with self._response_lock:
                self._response = None
            try:
                response.close()
            except Exception:
                _log.debug("Closing the event stream raised", exc_info=True)

    def _dispatch(self, message: ChannelMessage) -> None:
        try:
            self._on_message(message.channel, message.data)
        except Exception:
            _log.exception("Handler for %s message failed", message.channel)


__all__ = [
    "KEEPALIVE_COMMENT",
    "LiveChannelClient",
    "format_sse",
    "iter_sse_messages",
]
