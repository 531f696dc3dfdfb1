"""Density-based clustering (DBSCAN) over planar points.

Points are bucketed into square cells of side ``eps`` so a neighbourhood
query only has to look at the 3x3 block of cells around a point.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Sequence

from hazard_engine.models import NOISE, Cluster, ClusterResult, Point

logger = logging.getLogger(__name__)

_UNVISITED = -2


class ClusteringConfigError(ValueError):
    pass


def validate_params(eps: float, min_pts: int) -> None:
    if isinstance(eps, bool) or not isinstance(eps, (int, float)):
        raise ClusteringConfigError(f"eps must be a number, got {eps!r}")
    if not math.isfinite(eps) or eps <= 0:
        raise ClusteringConfigError(f"eps must be a positive finite distance, got {eps!r}")
    if isinstance(min_pts, bool) or not isinstance(min_pts, int):
        raise ClusteringConfigError(f"min_pts must be an integer, got {min_pts!r}")
    if min_pts < 1:
        raise ClusteringConfigError(f"min_pts must be >= 1, got {min_pts!r}")


def _cell_of(x: float, y: float, eps: float) -> tuple[int, int]:
    return (math.floor(x / eps), math.floor(y / eps))


class _Grid:
    def __init__(self, coords: Sequence[tuple[float, float]], eps: float) -> None:
        self.coords = coords
        self.eps = eps
        self.eps2 = eps * eps
        self.cells: dict[tuple[int, int], list[int]] = {}
        for idx, (x, y) in enumerate(coords):
            self.cells.setdefault(_cell_of(x, y, eps), []).append(idx)

    def neighbors(self, idx: int) -> list[int]:
        x, y = self.coords[idx]
        cx, cy = _cell_of(x, y, self.eps)
        out: list[int] = []
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                bucket = self.cells.get((cx + dx, cy + dy))
                if not bucket:
                    continue
                for j in bucket:
                    ox, oy = self.coords[j]
                    if (ox - x) ** 2 + (oy - y) ** 2 <= self.eps2:
                        out.append(j)
        return out


def dbscan_labels(coords: Sequence[tuple[float, float]], eps: float, min_pts: int) -> list[int]:
    """Label every coordinate with NOISE or a cluster id (0, 1, ...).

    The neighbourhood of a point includes the point itself. Labels are
    deterministic for a fixed input order.
    """
    validate_params(eps, min_pts)
    n = len(coords)
    if n == 0:
        return []

    try:
        grid = _Grid(coords, float(eps))
    except OverflowError:
        raise ClusteringConfigError(f"eps {eps!r} is too small for the coordinate range") from None
    labels = [_UNVISITED] * n
    cluster_id = 0

    for i in range(n):
        if labels[i] != _UNVISITED:
            continue
        seeds = grid.neighbors(i)
        if len(seeds) < min_pts:
            # may still become a border point of a later cluster
            labels[i] = NOISE
            continue

        labels[i] = cluster_id
        queue = deque(j for j in seeds if j != i)
        while queue:
            j = queue.popleft()
            if labels[j] == NOISE:
                labels[j] = cluster_id
                continue
            if labels[j] != _UNVISITED:
                continue
            labels[j] = cluster_id
            neighborhood = grid.neighbors(j)
            if len(neighborhood) >= min_pts:
                queue.extend(neighborhood)
        cluster_id += 1

    return labels


def summarize_clusters(coords: Sequence[tuple[float, float]], labels: Sequence[int]) -> list[Cluster]:
    sums: dict[int, list[float]] = {}
    for (x, y), label in zip(coords, labels):
        if label == NOISE:
            continue
        acc = sums.setdefault(label, [0.0, 0.0, 0])
        acc[0] += x
        acc[1] += y
        acc[2] += 1

    return [
        Cluster(id=cid, centroid=(sx / cnt, sy / cnt), size=int(cnt))
        for cid, (sx, sy, cnt) in sorted(sums.items())
    ]


def cluster_points(points: Sequence[Point], eps: float, min_pts: int) -> ClusterResult:
    coords = [(p.x, p.y) for p in points]
    labels = dbscan_labels(coords, eps, min_pts)
    clusters = summarize_clusters(coords, labels)
    logger.debug(
        "Clustered %d points into %d clusters (eps=%s, min_pts=%s, noise=%d)",
        len(coords),
        len(clusters),
        eps,
        min_pts,
        sum(1 for lb in labels if lb == NOISE),
    )
    return ClusterResult(labels=labels, clusters=clusters)
