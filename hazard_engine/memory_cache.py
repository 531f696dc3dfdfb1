from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import requests

from hazard_engine.config import Settings, settings as default_settings
from hazard_engine.data_loader import (
    RegionMemory,
    build_region_memory,
    fetch_region_payload,
    normalize_record,
    parse_region_payload,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_SOURCE = "placeholder"

FetchFn = Callable[[str, float], Any]


class MemoryCache:
    """Per-region hazard memory, loaded on first use and then kept.

    Concurrent loads of the same uncached region share one in-flight task.
    When every source fails a placeholder memory is served and retried after
    ``settings.fallback_retry_s``.
    """

    def __init__(self, settings: Settings | None = None, fetch: FetchFn | None = None) -> None:
        self.settings = settings or default_settings
        self._fetch = fetch or fetch_region_payload
        self._entries: dict[str, tuple[RegionMemory, float]] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def normalize_region(self, region: str) -> str:
        name = region.strip().lower()
        for canonical, aliases in self.settings.region_aliases.items():
            if name == canonical or name in aliases:
                return canonical
        return name

    def candidate_sources(self, region: str) -> list[str]:
        canonical = self.normalize_region(region)
        base = self.settings.memory_base.rstrip("/")
        names = [canonical] + list(self.settings.region_aliases.get(canonical, []))
        return [f"{base}/{name}.json" for name in names]

    @property
    def regions(self) -> list[str]:
        return sorted(self._entries)

    def get_cached(self, region: str) -> RegionMemory | None:
        entry = self._entries.get(self.normalize_region(region))
        return entry[0] if entry else None

    def _fresh(self, key: str) -> RegionMemory | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        memory, stored_at = entry
        if memory.degraded and time.monotonic() - stored_at >= self.settings.fallback_retry_s:
            return None
        return memory

    async def load(self, region: str) -> RegionMemory:
        key = self.normalize_region(region)
        memory = self._fresh(key)
        if memory is not None:
            return memory

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._load_uncached(key))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))

        # a cancelled waiter leaves the shared load running for the next caller;
        # only aclose() abandons it
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _load_uncached(self, key: str) -> RegionMemory:
        cfg = self.settings.retrieval
        for source in self.candidate_sources(key):
            try:
                payload = await asyncio.to_thread(self._fetch, source, self.settings.fetch_timeout_s)
                memory = parse_region_payload(
                    payload,
                    region=key,
                    source=source,
                    resolution=cfg.h3_resolution,
                    default_severity=cfg.default_severity,
                )
            except (OSError, ValueError, requests.RequestException) as e:
                logger.warning("Region memory source failed for %s: %s (%s)", key, source, e)
                continue
            except Exception:
                logger.exception("Region memory source failed unexpectedly for %s: %s", key, source)
                continue

            logger.info(
                "Region memory loaded: %s from %s (%d cells, %d records)",
                key,
                source,
                len(memory.cells),
                memory.record_count,
            )
            self._entries[key] = (memory, time.monotonic())
            return memory

        memory = self.placeholder(key)
        logger.warning(
            "All region memory sources failed for %s; serving placeholder (%d records)",
            key,
            memory.record_count,
        )
        self._entries[key] = (memory, time.monotonic())
        return memory

    def placeholder(self, region: str) -> RegionMemory:
        cfg = self.settings.retrieval
        records = [
            rec
            for rec in (
                normalize_record(row, default_severity=cfg.default_severity)
                for row in self.settings.placeholder_records
            )
            if rec is not None
        ]
        return RegionMemory(
            region=region,
            cells=build_region_memory(records, cfg.h3_resolution),
            source=PLACEHOLDER_SOURCE,
            degraded=True,
        )

    async def aclose(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
