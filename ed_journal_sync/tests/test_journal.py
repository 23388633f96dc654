import json

from ed_journal_sync.journal import (
    Decoded,
    Malformed,
    decode_record,
    derive_event_id,
    parse_line,
    parse_timestamp,
    timestamp_sort_key,
)


def test_parse_line_builds_canonical_event() -> None:
    line = '{"timestamp":"3310-05-01T10:00:00Z","event":"FSDJump","StarSystem":"Sol","JumpDist":8.5}\n'
    result = parse_line(line, "Journal.3310-05-01T100000.01.log")

    assert isinstance(result, Decoded)
    event = result.event
    assert event.type == "FSDJump"
    assert event.timestamp == "3310-05-01T10:00:00Z"
    assert event.payload == {"StarSystem": "Sol", "JumpDist": 8.5}
    assert event.raw_text == line.rstrip("\n")
    assert event.source_file == "Journal.3310-05-01T100000.01.log"
    assert event.system_name == "Sol"


def test_parse_line_normalizes_alternate_field_names() -> None:
    line = json.dumps({"timestamp": "3310-05-01T10:00:00Z", "event_type": "Scan", "event_id": "abc", "BodyName": "Earth"})
    result = parse_line(line)

    assert isinstance(result, Decoded)
    assert result.event.id == "abc"
    assert result.event.type == "Scan"
    assert "event_id" not in result.event.payload


def test_derived_ids_are_stable_across_reads() -> None:
    line = '{"timestamp":"3310-05-01T10:00:00Z","event":"Music","MusicTrack":"Combat"}'
    first = parse_line(line, "Journal.a.log")
    second = parse_line(line + "\r\n", "Journal.a.log")
    other_file = parse_line(line, "Journal.b.log")

    assert isinstance(first, Decoded) and isinstance(second, Decoded) and isinstance(other_file, Decoded)
    assert first.event.id == second.event.id
    assert first.event.id != other_file.event.id


def test_derived_id_distinguishes_same_second_events() -> None:
    base = derive_event_id("Journal.a.log", "3310-05-01T10:00:00Z", "Bounty", {"Reward": 100})
    other = derive_event_id("Journal.a.log", "3310-05-01T10:00:00Z", "Bounty", {"Reward": 200})
    assert base != other


def test_parse_line_reports_malformed_input() -> None:
    cases = {
        "": "empty line",
        "   ": "empty line",
        "not json": "invalid JSON",
        "[1, 2, 3]": "not a JSON object",
        '{"timestamp":"3310-05-01T10:00:00Z"}': "missing event type",
        '{"event":"Scan"}': "missing timestamp",
    }
    for line, reason in cases.items():
        result = parse_line(line)
        assert isinstance(result, Malformed), line
        assert reason in result.reason
        assert result.raw_text == line


def test_decode_record_prefers_data_mapping() -> None:
    record = {
        "event_id": "e1",
        "event_type": "FSDJump",
        "timestamp": "3310-05-01T10:00:00Z",
        "data": {"StarSystem": "Achenar"},
        "raw_json": "{broken",
    }
    result = decode_record(record)

    assert isinstance(result, Decoded)
    assert result.event.id == "e1"
    assert result.event.payload == {"StarSystem": "Achenar"}


def test_decode_record_falls_back_to_empty_payload() -> None:
    record = {"id": "e2", "event": "Scan", "timestamp": "3310-05-01T10:00:00Z", "raw_json": "{broken"}
    result = decode_record(record)

    assert isinstance(result, Decoded)
    assert result.event.payload == {}
    assert result.event.raw_text == "{broken"


def test_decode_record_reads_raw_json_body() -> None:
    raw = json.dumps({"timestamp": "3310-05-01T10:00:00Z", "event": "Scan", "BodyName": "Mars"})
    result = decode_record({"id": "e3", "event_type": "Scan", "timestamp": "3310-05-01T10:00:00Z", "raw_json": raw})

    assert isinstance(result, Decoded)
    assert result.event.payload == {"BodyName": "Mars"}


def test_decode_record_rejects_records_without_type() -> None:
    assert isinstance(decode_record({"id": "x", "timestamp": "3310-05-01T10:00:00Z"}), Malformed)
    assert isinstance(decode_record("nope"), Malformed)


def test_timestamp_helpers() -> None:
    parsed = parse_timestamp("3310-05-01T10:00:00Z")
    assert parsed is not None and parsed.tzinfo is not None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
    assert timestamp_sort_key("3310-05-01T12:00:00+02:00") == timestamp_sort_key("3310-05-01T10:00:00Z")
    assert timestamp_sort_key("garbage") == "garbage"


def test_parse_timestamp_accepts_any_fraction_length() -> None:
    short = parse_timestamp("3310-05-01T10:00:00.1Z")
    long = parse_timestamp("3310-05-01T10:00:00.123456789+00:00")

    assert short is not None and short.microsecond == 100000
    assert long is not None and long.microsecond == 123456
    assert timestamp_sort_key("3310-05-01T10:00:00.1Z") < timestamp_sort_key("3310-05-01T10:00:00.25Z")
