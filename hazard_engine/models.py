from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

HazardClass = Literal[
    "pothole",
    "speed_breaker_unmarked",
    "debris",
    "stalled_vehicle",
    "flooded",
]

_CLASS_ALIASES = {
    "speed_breaker": "speed_breaker_unmarked",
    "speedbreaker": "speed_breaker_unmarked",
    "stalled": "stalled_vehicle",
    "flood": "flooded",
}

NOISE = -1

K_MIN = 1
K_MAX = 5
K_DEFAULT = 3


def normalize_hazard_class(v: object) -> object:
    if not isinstance(v, str):
        return v
    s = "_".join(v.strip().lower().replace("-", " ").split())
    return _CLASS_ALIASES.get(s, s)


class Point(BaseModel):
    """A planar observation with an opaque identifier."""

    model_config = ConfigDict(frozen=True)

    id: str
    x: float = Field(allow_inf_nan=False)
    y: float = Field(allow_inf_nan=False)


class Cluster(BaseModel):
    id: int
    centroid: tuple[float, float]
    size: int


class ClusterResult(BaseModel):
    # One entry per input point, in input order; NOISE (-1) or a cluster id.
    labels: list[int]
    clusters: list[Cluster]


class ClusterRequest(BaseModel):
    points: list[Point]
    eps: float
    min_pts: int = Field(validation_alias=AliasChoices("min_pts", "minPts"))


class HazardRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hazard_class: HazardClass = Field(alias="class")
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    severity: float = Field(default=0.5, ge=0, le=1)
    last_seen: datetime | None = None
    weather: tuple[str, ...] = ()

    @field_validator("hazard_class", mode="before")
    @classmethod
    def _normalize_class(cls, v: object) -> object:
        return normalize_hazard_class(v)

    @field_validator("weather", mode="before")
    @classmethod
    def _normalize_weather(cls, v: object) -> object:
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple)):
            return tuple(str(w).strip().lower() for w in v if str(w).strip())
        return v


class ConsolidateRequest(BaseModel):
    reports: list[HazardRecord]
    eps_m: float = 15.0
    min_pts: int = 2


class ObserverState(BaseModel):
    """Position and motion of the observer for one update tick."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    heading_deg: float = Field(
        ge=0,
        lt=360,
        allow_inf_nan=False,
        validation_alias=AliasChoices("heading_deg", "headingDeg", "heading"),
    )
    speed_kmh: float = Field(
        default=0.0,
        ge=0,
        allow_inf_nan=False,
        validation_alias=AliasChoices("speed_kmh", "speedKmh"),
    )
    is_rain: bool = Field(default=False, validation_alias=AliasChoices("is_rain", "isRain"))
    region: str = Field(validation_alias=AliasChoices("region", "city"))
    k: int = K_DEFAULT

    @field_validator("region")
    @classmethod
    def _region_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("region must not be blank")
        return v

    @field_validator("k", mode="before")
    @classmethod
    def _default_k(cls, v: object) -> object:
        return K_DEFAULT if v is None else v

    @field_validator("k")
    @classmethod
    def _clamp_k(cls, v: int) -> int:
        return max(K_MIN, min(K_MAX, v))


class ScoredCandidate(BaseModel):
    hazard: HazardRecord
    dist_m: float
    bearing_deg: float
    score: float


class QueryDiagnostics(BaseModel):
    region: str
    memory_source: str
    degraded: bool = False
    ring_now: int = 0
    ring_ahead: int = 0
    ring_union: int = 0
    cells_hit_now: int = 0
    cells_hit_ahead: int = 0
    lookahead_m: float = 0.0
    used_fallback_scan: bool = False
    candidates_before_filter: int = 0
    candidates_after_filter: int = 0
    generation: int | None = None
    elapsed_ms: float = 0.0


class QueryResult(BaseModel):
    topk: list[ScoredCandidate]
    features: dict[str, Any]
    diagnostics: QueryDiagnostics | None = None
    error: str | None = None
