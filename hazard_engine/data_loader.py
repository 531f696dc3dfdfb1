from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator

import h3
import requests
from pydantic import ValidationError

from hazard_engine.models import HazardRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionMemory:
    """Hazard records of one region, bucketed by hexagonal cell key."""

    region: str
    cells: dict[str, tuple[HazardRecord, ...]]
    source: str
    degraded: bool = False
    rejected: int = 0

    @property
    def record_count(self) -> int:
        return sum(len(v) for v in self.cells.values())

    def iter_records(self) -> Iterator[HazardRecord]:
        for key in sorted(self.cells):
            yield from self.cells[key]


def is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def fetch_region_payload(source: str, timeout_s: float = 10.0) -> Any:
    """Read one region source (local JSON file or http(s) URL)."""
    if is_url(source):
        r = requests.get(source, timeout=timeout_s)
        r.raise_for_status()
        return r.json()

    if not os.path.exists(source):
        raise FileNotFoundError(f"Region memory file not found: {source}")
    with open(source, "r", encoding="utf-8") as f:
        return json.load(f)


def _try_parse_float(v: object) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = str(v).strip()
    if s == "":
        return None
    try:
        return float(s)
    except ValueError:
        return None


def _row_get(row: dict, keys: Iterable[str]) -> object | None:
    for k in keys:
        if k in row and row[k] not in (None, ""):
            return row[k]
    return None


def _parse_last_seen(v: object) -> datetime | None:
    if isinstance(v, datetime):
        return v
    if not isinstance(v, str) or not v.strip():
        return None
    try:
        return datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_weather(v: object) -> list[str]:
    if isinstance(v, str):
        return [v]
    if isinstance(v, (list, tuple)):
        return [w for w in v if isinstance(w, str)]
    return []


def normalize_record(row: object, default_severity: float = 0.5) -> HazardRecord | None:
    """Turn one raw record into a HazardRecord, or None if it is unusable.

    Missing or unparseable severity, weather and last_seen fall back to
    defaults; location and class are required.
    """
    if not isinstance(row, dict):
        return None

    lat = _try_parse_float(_row_get(row, ["lat", "latitude"]))
    lng = _try_parse_float(_row_get(row, ["lng", "lon", "longitude"]))
    hazard_class = _row_get(row, ["class", "hazard_class", "type"])
    if lat is None or lng is None or hazard_class is None:
        return None

    severity = _try_parse_float(row.get("severity"))
    if severity is None or severity != severity:
        severity = default_severity
    severity = max(0.0, min(1.0, severity))

    try:
        return HazardRecord.model_validate(
            {
                "class": hazard_class,
                "lat": lat,
                "lng": lng,
                "severity": severity,
                "last_seen": _parse_last_seen(row.get("last_seen")),
                "weather": _parse_weather(row.get("weather")),
            }
        )
    except ValidationError:
        return None


def cell_for(lat: float, lng: float, resolution: int) -> str:
    return h3.latlng_to_cell(lat, lng, resolution)


def build_region_memory(records: Iterable[HazardRecord], resolution: int) -> dict[str, tuple[HazardRecord, ...]]:
    cells: dict[str, list[HazardRecord]] = {}
    for rec in records:
        cells.setdefault(cell_for(rec.lat, rec.lng, resolution), []).append(rec)
    return {k: tuple(v) for k, v in cells.items()}


def region_payload(cells: dict[str, tuple[HazardRecord, ...]]) -> dict[str, list[dict]]:
    """Render a cell mapping in the on-disk schema (cell key -> record list)."""
    return {
        key: [rec.model_dump(mode="json", by_alias=True) for rec in recs]
        for key, recs in sorted(cells.items())
    }


def parse_region_payload(
    payload: Any,
    region: str,
    source: str,
    resolution: int,
    default_severity: float = 0.5,
) -> RegionMemory:
    """Validate a cell-key -> records mapping and re-bucket it at `resolution`.

    Stored keys are not trusted; each record is filed under the cell of its
    own location. Bad records are dropped one at a time.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Unsupported region memory structure in {source}: expected an object")

    records: list[HazardRecord] = []
    rejected = 0
    for rows in payload.values():
        if not isinstance(rows, list):
            rejected += 1
            continue
        for row in rows:
            rec = normalize_record(row, default_severity=default_severity)
            if rec is None:
                rejected += 1
                continue
            records.append(rec)

    if rejected:
        logger.warning("Rejected %d malformed hazard entries from %s", rejected, source)

    return RegionMemory(
        region=region,
        cells=build_region_memory(records, resolution),
        source=source,
        rejected=rejected,
    )
