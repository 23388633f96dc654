"""Category statistics derived from a set of journal events."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Tuple

from .journal import Event, SYSTEM_KEYS, parse_timestamp


JUMP_EVENTS: tuple[str, ...] = (
    "SupercruiseEntry",
    "SupercruiseExit",
    "FSDJump",
    "StartJump",
)
COMBAT_EVENTS: tuple[str, ...] = (
    "Bounty",
    "CapShipBond",
    "FactionKillBond",
    "Died",
    "Interdicted",
)
TRADING_EVENTS: tuple[str, ...] = ("MarketBuy", "MarketSell", "Trade")
EXPLORATION_EVENTS: tuple[str, ...] = (
    "Scan",
    "FSSDiscoveryScan",
    "SellExplorationData",
)

# Walked in order; the first list containing a type wins.
CATEGORY_PRECEDENCE: tuple[Tuple[str, tuple[str, ...]], ...] = (
    ("jumps", JUMP_EVENTS),
    ("combat", COMBAT_EVENTS),
    ("trading", TRADING_EVENTS),
    ("exploration", EXPLORATION_EVENTS),
)


@dataclass(frozen=True)
class EventStats:
    total_events: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    jumps: int = 0
    combat: int = 0
    trading: int = 0
    exploration: int = 0
    unique_systems: int = 0
    first_event: Optional[str] = None
    last_event: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "eventsByType": {key: self.events_by_type[key] for key in sorted(self.events_by_type)},
            "jumps": self.jumps,
            "combat": self.combat,
            "trading": self.trading,
            "exploration": self.exploration,
            "uniqueSystems": self.unique_systems,
            "firstEvent": self.first_event,
            "lastEvent": self.last_event,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventStats":
        by_type = data.get("eventsByType") or {}
        return cls(
            total_events=_coerce_int(data.get("totalEvents")),
            events_by_type={str(key): _coerce_int(value) for key, value in by_type.items()},
            jumps=_coerce_int(data.get("jumps")),
            combat=_coerce_int(data.get("combat")),
            trading=_coerce_int(data.get("trading")),
            exploration=_coerce_int(data.get("exploration")),
            unique_systems=_coerce_int(data.get("uniqueSystems")),
            first_event=data.get("firstEvent") or None,
            last_event=data.get("lastEvent") or None,
        )


def classify_event_type(event_type: str) -> Optional[str]:
    """Return the category name for an event type, or None if uncategorised."""

    for category, members in CATEGORY_PRECEDENCE:
        if event_type in members:
            return category
    return None


def compute_stats(events: Iterable[Event]) -> EventStats:
    """Compute stats from events; the result does not depend on input order."""

    by_type: Counter[str] = Counter()
    systems: Set[str] = set()
    earliest: Optional[Tuple[datetime, str]] = None
    latest: Optional[Tuple[datetime, str]] = None
    total = 0

    for event in events:
        total += 1
        by_type[event.type] += 1
        for key in SYSTEM_KEYS:
            value = event.payload.get(key)
            if isinstance(value, str) and value:
                systems.add(value)
        parsed = parse_timestamp(event.timestamp)
        if parsed is None:
            continue
        candidate = (parsed, event.timestamp)
        if earliest is None or candidate < earliest:
            earliest = candidate
        if latest is None or candidate > latest:
            latest = candidate

    categories = {name: 0 for name, _members in CATEGORY_PRECEDENCE}
    for event_type, count in by_type.items():
        category = classify_event_type(event_type)
        if category is not None:
            categories[category] += count

    return EventStats(
        total_events=total,
        events_by_type=dict(by_type),
        jumps=categories["jumps"],
        combat=categories["combat"],
        trading=categories["trading"],
        exploration=categories["exploration"],
        unique_systems=len(systems),
        first_event=earliest[1] if earliest else None,
        last_event=latest[1] if latest else None,
    )


def _coerce_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
