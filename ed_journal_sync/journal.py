"""Journal line parsing: raw text in, canonical events out."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from .errors import ParseError
from .logging_utils import get_logger


_log = get_logger("journal")

# Keys that describe the record itself rather than its body.
ENVELOPE_KEYS = frozenset(
    {"timestamp", "timestamp_local", "event", "event_type", "event_id", "id"}
)
SYSTEM_KEYS = ("StarSystem", "System")

# fromisoformat before 3.11 only accepts 3 or 6 fractional digits.
_FRACTION = re.compile(r"\.(\d+)(?=[+-]\d{2}:\d{2}$|$)")


@dataclass
class Event:
    """A single journal event in canonical shape."""

    id: str
    timestamp: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    raw_text: str = ""
    source_file: Optional[str] = None

    @property
    def system_name(self) -> Optional[str]:
        return detect_system_name(self.payload)

    @property
    def sort_key(self) -> str:
        return timestamp_sort_key(self.timestamp)

    def to_record(self) -> Dict[str, Any]:
        """Return the wire shape used by the HTTP API."""

        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "event": self.type,
            "data": dict(self.payload),
            "raw_json": self.raw_text,
            "source_file": self.source_file,
        }

    def to_message(self) -> Dict[str, Any]:
        """Return the ``journal:event`` message body."""

        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "event": self.type,
            "data": dict(self.payload),
        }


@dataclass(frozen=True)
class Decoded:
    event: Event


@dataclass(frozen=True)
class Malformed:
    raw_text: str
    reason: str


ParseResult = Union[Decoded, Malformed]


def parse_timestamp(value: object) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    candidate = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), candidate)
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_sort_key(value: str) -> str:
    """Chronological sort key; unparseable timestamps sort by their raw text."""

    parsed = parse_timestamp(value)
    if parsed is None:
        return value or ""
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def detect_system_name(payload: Mapping[str, Any]) -> Optional[str]:
    for key in SYSTEM_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def derive_event_id(
    source_file: Optional[str],
    timestamp: str,
    event_type: str,
    payload: Mapping[str, Any],
) -> str:
    """Build a deterministic id so re-reading a file never creates duplicates."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{source_file or ''}:{timestamp}:{event_type}:{digest}"


def parse_line(line: str, source_file: Optional[str] = None) -> ParseResult:
    """Turn one raw journal line into ``Decoded`` or ``Malformed``."""

    raw_text = line.rstrip("\r\n")
    try:
        return Decoded(_decode_line(raw_text, source_file))
    except ParseError as exc:
        return Malformed(raw_text=raw_text, reason=exc.reason)


def decode_record(record: object) -> ParseResult:
    """Decode a stored or wire record (API row, ``journal:event`` message).

    Accepts ``event_id``/``id``, ``event_type``/``event`` and either a ``data``
    mapping or a ``raw_json`` string. A body that fails to decode becomes an
    empty payload; the event itself is kept.
    """

    raw_text = ""
    if isinstance(record, Mapping):
        raw_json = record.get("raw_json")
        if isinstance(raw_json, str):
            raw_text = raw_json
    try:
        return Decoded(_decode_record(record, raw_text))
    except ParseError as exc:
        return Malformed(raw_text=raw_text or repr(record)[:200], reason=exc.reason)


def _decode_line(raw_text: str, source_file: Optional[str]) -> Event:
    if not raw_text.strip():
        raise ParseError("empty line", raw_text)
    try:
        entry = json.loads(raw_text)
    except ValueError as exc:
        raise ParseError(f"invalid JSON: {exc}", raw_text) from exc
    if not isinstance(entry, dict):
        raise ParseError("record is not a JSON object", raw_text)

    event_type = _first_text(entry, "event", "event_type")
    if event_type is None:
        raise ParseError("missing event type", raw_text)
    timestamp = _first_text(entry, "timestamp", "timestamp_local")
    if timestamp is None:
        raise ParseError("missing timestamp", raw_text)

    payload = {key: value for key, value in entry.items() if key not in ENVELOPE_KEYS}
    event_id = _first_text(entry, "event_id", "id")
    if event_id is None:
        event_id = derive_event_id(source_file, timestamp, event_type, payload)
    return Event(
        id=event_id,
        timestamp=timestamp,
        type=event_type,
        payload=payload,
        raw_text=raw_text,
        source_file=source_file,
    )


def _decode_record(record: object, raw_text: str) -> Event:
    if not isinstance(record, Mapping):
        raise ParseError("record is not a mapping")

    event_type = _first_text(record, "event_type", "event")
    if event_type is None:
        raise ParseError("missing event type")
    timestamp = _first_text(record, "timestamp")
    if timestamp is None:
        raise ParseError("missing timestamp")

    payload = _decode_payload(record, raw_text)
    source_file = _first_text(record, "source_file", "filename")
    event_id = _first_text(record, "event_id", "id")
    if event_id is None:
        event_id = derive_event_id(source_file, timestamp, event_type, payload)
    return Event(
        id=event_id,
        timestamp=timestamp,
        type=event_type,
        payload=payload,
        raw_text=raw_text,
        source_file=source_file,
    )


def _decode_payload(record: Mapping[str, Any], raw_text: str) -> Dict[str, Any]:
    data = record.get("data")
    if isinstance(data, Mapping):
        return dict(data)
    if raw_text:
        try:
            decoded = json.loads(raw_text)
        except ValueError:
            _log.debug("Falling back to empty payload for undecodable body: %.100s", raw_text)
            return {}
        if isinstance(decoded, dict):
            return {key: value for key, value in decoded.items() if key not in ENVELOPE_KEYS}
    return {}


def _first_text(source: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = source.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None
