from __future__ import annotations

import os

from pydantic import BaseModel, Field


class RetrievalConfig(BaseModel):
    # Hexagonal index used for the two-ring candidate query.
    h3_resolution: int = 9
    ring_k: int = 2

    # Look-ahead point: factor x speed (m/s), clamped to [min, max] metres.
    lookahead_factor_s: float = 2.5
    lookahead_min_m: float = 180.0
    lookahead_max_m: float = 500.0

    cone_deg: float = 120.0
    max_distance_m: float = 800.0
    distance_norm_m: float = 400.0

    weight_distance: float = 0.45
    weight_severity: float = 0.25
    weight_weather: float = 0.10

    default_severity: float = 0.5
    weather_neutral: float = 0.5
    rain_tag: str = "rain"


def _default_placeholder() -> list[dict]:
    return [
        {
            "class": "pothole",
            "lat": 12.9719,
            "lng": 77.5946,
            "severity": 0.7,
            "weather": ["rain"],
        }
    ]


class Settings(BaseModel):
    # Directory or http(s) base URL; region "x" resolves to {memory_base}/x.json
    memory_base: str = "data"

    region_aliases: dict[str, list[str]] = Field(
        default_factory=lambda: {"bangalore": ["bengaluru", "banglore"]}
    )

    fetch_timeout_s: float = 10.0

    # A degraded (placeholder) entry is served this long before sources are retried.
    fallback_retry_s: float = 30.0

    placeholder_records: list[dict] = Field(default_factory=_default_placeholder)

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)


def load_settings() -> Settings:
    s = Settings()
    base = os.getenv("HAZARD_MEMORY_BASE", "").strip()
    if base:
        s.memory_base = base
    timeout = os.getenv("HAZARD_FETCH_TIMEOUT_S", "").strip()
    if timeout:
        s.fetch_timeout_s = float(timeout)
    retry = os.getenv("HAZARD_FALLBACK_RETRY_S", "").strip()
    if retry:
        s.fallback_retry_s = float(retry)
    return s


settings = load_settings()
