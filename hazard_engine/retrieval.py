from __future__ import annotations

import logging
import time
from typing import Any, Iterable

import h3

from hazard_engine.config import RetrievalConfig, Settings, settings as default_settings
from hazard_engine.data_loader import RegionMemory, cell_for
from hazard_engine.geo import angle_diff_deg, clamp, clamp01, destination, haversine_m, initial_bearing_deg
from hazard_engine.memory_cache import MemoryCache
from hazard_engine.models import HazardRecord, ObserverState, QueryDiagnostics, QueryResult, ScoredCandidate

logger = logging.getLogger(__name__)


def lookahead_m(speed_kmh: float, cfg: RetrievalConfig) -> float:
    speed_ms = speed_kmh * 1000.0 / 3600.0
    return clamp(cfg.lookahead_factor_s * speed_ms, cfg.lookahead_min_m, cfg.lookahead_max_m)


def weather_term(hazard: HazardRecord, is_rain: bool, cfg: RetrievalConfig) -> float:
    if not is_rain:
        return cfg.weather_neutral
    return 1.0 if cfg.rain_tag in hazard.weather else 0.0


def score_hazard(
    hazard: HazardRecord,
    observer: ObserverState,
    cfg: RetrievalConfig,
) -> ScoredCandidate | None:
    """Score one hazard for the observer, or None if it is outside the forward cone or range."""
    dist = haversine_m(observer.lat, observer.lng, hazard.lat, hazard.lng)
    bearing = initial_bearing_deg(observer.lat, observer.lng, hazard.lat, hazard.lng)

    if abs(angle_diff_deg(bearing, observer.heading_deg)) > cfg.cone_deg:
        return None
    if dist > cfg.max_distance_m:
        return None

    s_dist = clamp01(1 - dist / cfg.distance_norm_m)
    s_sev = clamp01(hazard.severity)
    s_weather = weather_term(hazard, observer.is_rain, cfg)
    score = (
        cfg.weight_distance * s_dist
        + cfg.weight_severity * s_sev
        + cfg.weight_weather * s_weather
    )
    return ScoredCandidate(hazard=hazard, dist_m=dist, bearing_deg=bearing, score=score)


def _feature(c: ScoredCandidate) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [c.hazard.lng, c.hazard.lat]},
        "properties": {
            "class": c.hazard.hazard_class,
            "severity": clamp01(c.hazard.severity),
            "dist_m": c.dist_m,
            "score": c.score,
        },
    }


def _collect(memory: RegionMemory, cells: Iterable[str]) -> list[HazardRecord]:
    out: list[HazardRecord] = []
    for key in cells:
        out.extend(memory.cells.get(key, ()))
    return out


def _score_all(
    hazards: Iterable[HazardRecord], observer: ObserverState, cfg: RetrievalConfig
) -> list[ScoredCandidate]:
    return [c for c in (score_hazard(h, observer, cfg) for h in hazards) if c is not None]


def rank_hazards(memory: RegionMemory, observer: ObserverState, cfg: RetrievalConfig) -> QueryResult:
    """Rank the hazards of `memory` for one observer tick.

    Candidates come from two grid disks (around the observer and around the
    look-ahead point). If none of them survives the cone and distance
    filter, the rest of the region is scanned. Cells are visited in key
    order and sorting is stable, so equal scores keep that order.
    """
    started = time.perf_counter()

    cell_now = cell_for(observer.lat, observer.lng, cfg.h3_resolution)
    ring_now = set(h3.grid_disk(cell_now, cfg.ring_k))

    ahead_m = lookahead_m(observer.speed_kmh, cfg)
    plat, plng = destination(observer.lat, observer.lng, ahead_m, observer.heading_deg)
    cell_ahead = cell_for(plat, plng, cfg.h3_resolution)
    ring_ahead = set(h3.grid_disk(cell_ahead, cfg.ring_k))

    cell_set = sorted(ring_now | ring_ahead)
    hazards = _collect(memory, cell_set)
    candidates = _score_all(hazards, observer, cfg)

    used_fallback = False
    if not candidates:
        # nothing usable in the rings: scan the rest of the region
        seen = {id(h) for h in hazards}
        rest = [h for h in memory.iter_records() if id(h) not in seen]
        hazards.extend(rest)
        candidates = _score_all(rest, observer, cfg)
        used_fallback = True

    features = [_feature(c) for c in candidates]

    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    topk = ranked[: observer.k]

    diagnostics = QueryDiagnostics(
        region=memory.region,
        memory_source=memory.source,
        degraded=memory.degraded,
        ring_now=len(ring_now),
        ring_ahead=len(ring_ahead),
        ring_union=len(cell_set),
        cells_hit_now=sum(1 for key in ring_now if key in memory.cells),
        cells_hit_ahead=sum(1 for key in ring_ahead if key in memory.cells),
        lookahead_m=ahead_m,
        used_fallback_scan=used_fallback,
        candidates_before_filter=len(hazards),
        candidates_after_filter=len(candidates),
        elapsed_ms=(time.perf_counter() - started) * 1000.0,
    )
    logger.debug("Hazard query %s", diagnostics.model_dump())

    return QueryResult(
        topk=topk,
        features={"type": "FeatureCollection", "features": features},
        diagnostics=diagnostics,
    )


class RetrievalEngine:
    """Loads region memory through its own cache and ranks hazards per observer tick."""

    def __init__(self, cache: MemoryCache | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or (cache.settings if cache is not None else default_settings)
        self.cache = cache or MemoryCache(self.settings)

    async def query(self, observer: ObserverState | dict) -> QueryResult:
        if not isinstance(observer, ObserverState):
            observer = ObserverState.model_validate(observer)
        memory = await self.cache.load(observer.region)
        return rank_hazards(memory, observer, self.settings.retrieval)
