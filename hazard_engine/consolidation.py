"""Deduplicate raw hazard reports into one record per physical hazard.

Reports of the same class are projected to local metres and clustered with
DBSCAN; each cluster becomes a single consolidated record and noise is
dropped.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from hazard_engine.clustering import dbscan_labels, validate_params
from hazard_engine.geo import EARTH_RADIUS_M
from hazard_engine.models import NOISE, HazardRecord

logger = logging.getLogger(__name__)


def project_local_m(reports: Sequence[HazardRecord]) -> list[tuple[float, float]]:
    """Equirectangular projection around the mean latitude of the batch."""
    if not reports:
        return []
    lat0 = sum(r.lat for r in reports) / len(reports)
    k = math.radians(1.0) * EARTH_RADIUS_M
    cos0 = math.cos(math.radians(lat0))
    return [(r.lng * k * cos0, r.lat * k) for r in reports]


def _merge(members: Sequence[HazardRecord]) -> HazardRecord:
    seen = [r.last_seen for r in members if r.last_seen is not None]
    weather: list[str] = []
    for r in members:
        for w in r.weather:
            if w not in weather:
                weather.append(w)
    return HazardRecord(
        hazard_class=members[0].hazard_class,
        lat=sum(r.lat for r in members) / len(members),
        lng=sum(r.lng for r in members) / len(members),
        severity=max(r.severity for r in members),
        last_seen=max(seen) if seen else None,
        weather=tuple(weather),
    )


def consolidate_reports(reports: Sequence[HazardRecord], eps_m: float, min_pts: int) -> list[HazardRecord]:
    validate_params(eps_m, min_pts)
    by_class: dict[str, list[HazardRecord]] = {}
    for r in reports:
        by_class.setdefault(r.hazard_class, []).append(r)

    out: list[HazardRecord] = []
    dropped = 0
    for hazard_class in sorted(by_class):
        group = by_class[hazard_class]
        labels = dbscan_labels(project_local_m(group), eps_m, min_pts)
        members: dict[int, list[HazardRecord]] = {}
        for rec, label in zip(group, labels):
            if label == NOISE:
                dropped += 1
                continue
            members.setdefault(label, []).append(rec)
        out.extend(_merge(members[cid]) for cid in sorted(members))

    logger.info(
        "Consolidated %d reports into %d hazards (%d dropped as noise)",
        len(reports),
        len(out),
        dropped,
    )
    return out
