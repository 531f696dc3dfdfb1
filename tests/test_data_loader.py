from datetime import datetime, timezone

import pytest

from conftest import write_region
from hazard_engine.data_loader import (
    cell_for,
    fetch_region_payload,
    normalize_record,
    parse_region_payload,
    region_payload,
)


def test_missing_fields_get_defaults():
    rec = normalize_record({"class": "debris", "lat": "12.97", "lng": 77.59})
    assert rec is not None
    assert rec.severity == 0.5
    assert rec.weather == ()
    assert rec.last_seen is None


def test_record_normalization():
    rec = normalize_record(
        {
            "class": "Speed-Breaker",
            "latitude": 12.97,
            "lon": 77.59,
            "severity": "1.7",
            "last_seen": "2024-06-01T10:00:00Z",
            "weather": ["Rain", 3, "fog"],
        }
    )
    assert rec.hazard_class == "speed_breaker_unmarked"
    assert rec.severity == 1.0
    assert rec.weather == ("rain", "fog")
    assert rec.last_seen == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)


def test_garbage_severity_and_date_fall_back():
    rec = normalize_record({"class": "pothole", "lat": 1, "lng": 2, "severity": "high", "last_seen": "yesterday"})
    assert rec.severity == 0.5
    assert rec.last_seen is None


@pytest.mark.parametrize("row", [
    "not a dict",
    {"class": "pothole", "lat": 12.9},
    {"class": "pothole", "lat": "north", "lng": 77.5},
    {"class": "pothole", "lat": 120.0, "lng": 77.5},
    {"class": "unicorn", "lat": 12.9, "lng": 77.5},
    {"lat": 12.9, "lng": 77.5},
])
def test_malformed_records_are_rejected(row):
    assert normalize_record(row) is None


def test_bad_entries_are_dropped_individually():
    payload = {
        "a": [
            {"class": "pothole", "lat": 12.97, "lng": 77.59},
            {"class": "unicorn", "lat": 12.97, "lng": 77.59},
        ],
        "b": "not a list",
        "c": [{"class": "flooded", "lat": 12.98, "lng": 77.60, "weather": ["rain"]}],
    }
    memory = parse_region_payload(payload, region="x", source="mem", resolution=9)
    assert memory.record_count == 2
    assert memory.rejected == 2


def test_records_are_rebucketed_under_their_own_cell():
    payload = {"8a2a1072b597fff": [{"class": "pothole", "lat": 12.9719, "lng": 77.5946}]}
    memory = parse_region_payload(payload, region="x", source="mem", resolution=9)
    assert list(memory.cells) == [cell_for(12.9719, 77.5946, 9)]


def test_non_mapping_payload_is_an_error():
    with pytest.raises(ValueError):
        parse_region_payload([1, 2, 3], region="x", source="mem", resolution=9)


def test_payload_rendering_is_readable_by_the_parser():
    payload = {"k": [{"class": "pothole", "lat": 12.97, "lng": 77.59, "severity": 0.4, "weather": ["rain"]}]}
    memory = parse_region_payload(payload, region="x", source="mem", resolution=9)
    rendered = region_payload(memory.cells)

    (rows,) = rendered.values()
    assert rows[0]["class"] == "pothole"
    assert rows[0]["weather"] == ["rain"]
    again = parse_region_payload(rendered, region="x", source="mem", resolution=9)
    assert again.cells == memory.cells


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        fetch_region_payload(str(tmp_path / "nowhere.json"))


def test_reads_json_file(tmp_path):
    path = write_region(tmp_path, "city", {"k": []})
    assert fetch_region_payload(str(path)) == {"k": []}
