import itertools
import random

from ed_journal_sync.journal import Event
from ed_journal_sync.stats import (
    CATEGORY_PRECEDENCE,
    COMBAT_EVENTS,
    EXPLORATION_EVENTS,
    JUMP_EVENTS,
    TRADING_EVENTS,
    EventStats,
    classify_event_type,
    compute_stats,
)


def _events():
    return [
        Event("a", "3310-05-01T10:00:00Z", "FSDJump", {"StarSystem": "Sol"}),
        Event("b", "3310-05-01T09:00:00Z", "Location", {"StarSystem": "Sol"}),
        Event("c", "3310-05-01T11:00:00Z", "Bounty", {"Reward": 5}),
        Event("d", "3310-05-01T12:00:00Z", "MarketBuy", {"Type": "tea"}),
        Event("e", "3310-05-01T10:30:00Z", "Scan", {"System": "Achenar"}),
        Event("f", "3310-05-01T08:59:00+00:00", "Music", {}),
        Event("g", "not-a-time", "Scan", {"StarSystem": "Lave"}),
    ]


def test_category_lists_are_disjoint() -> None:
    lists = [JUMP_EVENTS, COMBAT_EVENTS, TRADING_EVENTS, EXPLORATION_EVENTS]
    for left, right in itertools.combinations(lists, 2):
        assert not set(left) & set(right)
    assert [name for name, _members in CATEGORY_PRECEDENCE] == ["jumps", "combat", "trading", "exploration"]


def test_classify_event_type() -> None:
    assert classify_event_type("SupercruiseEntry") == "jumps"
    assert classify_event_type("Interdicted") == "combat"
    assert classify_event_type("Trade") == "trading"
    assert classify_event_type("SellExplorationData") == "exploration"
    assert classify_event_type("Music") is None


def test_compute_stats_counts_categories_and_systems() -> None:
    stats = compute_stats(_events())

    assert stats.total_events == 7
    assert stats.events_by_type["Scan"] == 2
    assert stats.jumps == 1
    assert stats.combat == 1
    assert stats.trading == 1
    assert stats.exploration == 2
    assert stats.unique_systems == 3
    assert stats.first_event == "3310-05-01T08:59:00+00:00"
    assert stats.last_event == "3310-05-01T12:00:00Z"


def test_compute_stats_is_permutation_invariant() -> None:
    events = _events()
    expected = compute_stats(events)
    rng = random.Random(1234)
    for _ in range(20):
        shuffled = list(events)
        rng.shuffle(shuffled)
        assert compute_stats(shuffled) == expected


def test_empty_stats() -> None:
    stats = compute_stats([])
    assert stats == EventStats()
    assert stats.first_event is None


def test_stats_dict_round_trip_uses_wire_names() -> None:
    stats = compute_stats(_events())
    payload = stats.to_dict()

    assert payload["totalEvents"] == 7
    assert payload["uniqueSystems"] == 3
    assert list(payload["eventsByType"]) == sorted(payload["eventsByType"])
    assert EventStats.from_dict(payload) == stats
