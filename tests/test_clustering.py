import math
import random

import pytest

from hazard_engine.clustering import ClusteringConfigError, cluster_points, dbscan_labels
from hazard_engine.models import NOISE, Point


def _blob(cx, cy, n, prefix):
    # deterministic disk of radius <= 5: radii 1..5, golden-angle spacing
    pts = []
    for i in range(n):
        r = 1 + (i % 5)
        a = math.radians(i * 137.5)
        pts.append(Point(id=f"{prefix}{i}", x=cx + r * math.cos(a), y=cy + r * math.sin(a)))
    return pts


def _scenario_points():
    pts = _blob(0, 0, 20, "a") + _blob(100, 0, 20, "b") + _blob(0, 100, 20, "c")
    pts += [Point(id=f"n{i}", x=300 + 40 * i, y=300 - 25 * i) for i in range(10)]
    return pts


def test_three_blobs_and_scattered_noise():
    result = cluster_points(_scenario_points(), eps=8, min_pts=4)

    assert len(result.clusters) == 3
    assert sorted(c.size for c in result.clusters) == [20, 20, 20]
    assert result.labels.count(NOISE) == 10

    centroids = sorted((round(c.centroid[0]), round(c.centroid[1])) for c in result.clusters)
    for (x, y), (ex, ey) in zip(centroids, [(0, 0), (0, 100), (100, 0)]):
        assert abs(x - ex) <= 3 and abs(y - ey) <= 3


def test_empty_input_gives_empty_output():
    result = cluster_points([], eps=5, min_pts=3)
    assert result.labels == []
    assert result.clusters == []


@pytest.mark.parametrize("eps,min_pts", [(0, 3), (-1.5, 3), (float("nan"), 3), (5, 0), (5, -2)])
def test_invalid_configuration_is_rejected(eps, min_pts):
    with pytest.raises(ClusteringConfigError):
        cluster_points([Point(id="p", x=0, y=0)], eps=eps, min_pts=min_pts)


def test_eps_too_small_for_coordinates_is_a_configuration_error():
    points = [Point(id="a", x=1e308, y=0.0), Point(id="b", x=0.0, y=0.0)]
    with pytest.raises(ClusteringConfigError):
        cluster_points(points, eps=1e-10, min_pts=1)


def test_every_point_gets_exactly_one_label():
    rng = random.Random(11)
    coords = [(rng.uniform(0, 200), rng.uniform(0, 200)) for _ in range(300)]
    labels = dbscan_labels(coords, eps=12, min_pts=4)

    assert len(labels) == len(coords)
    cluster_ids = {lb for lb in labels if lb != NOISE}
    assert all(lb == NOISE or lb >= 0 for lb in labels)
    assert cluster_ids == set(range(len(cluster_ids)))


def test_labels_are_deterministic_for_fixed_order():
    rng = random.Random(3)
    coords = [(rng.gauss(50, 20), rng.gauss(50, 20)) for _ in range(250)]
    first = dbscan_labels(coords, eps=6, min_pts=5)
    for _ in range(3):
        assert dbscan_labels(coords, eps=6, min_pts=5) == first


def test_raising_min_pts_never_adds_cluster_members():
    rng = random.Random(5)
    coords = [(rng.gauss(0, 15), rng.gauss(0, 15)) for _ in range(200)]
    coords += [(rng.uniform(-100, 100), rng.uniform(-100, 100)) for _ in range(60)]

    counts = []
    for min_pts in range(1, 12):
        labels = dbscan_labels(coords, eps=5, min_pts=min_pts)
        counts.append(sum(1 for lb in labels if lb != NOISE))
    assert counts == sorted(counts, reverse=True)


def test_min_pts_one_makes_every_point_a_cluster_member():
    coords = [(0, 0), (100, 100), (200, 200)]
    assert dbscan_labels(coords, eps=1, min_pts=1) == [0, 1, 2]


def test_noise_point_is_absorbed_as_border_member():
    # the first point is visited before the dense core and starts as noise
    coords = [(-4.5, 0)] + [(i * 0.5, 0) for i in range(5)]
    labels = dbscan_labels(coords, eps=5, min_pts=4)
    assert labels == [0] * 6


def test_points_in_adjacent_grid_cells_are_neighbours():
    coords = [(9.9, 9.9), (10.1, 10.1), (10.0, 9.8)]
    labels = dbscan_labels(coords, eps=10, min_pts=3)
    assert labels == [0, 0, 0]


def test_centroid_is_mean_of_members():
    pts = [Point(id=str(i), x=x, y=y) for i, (x, y) in enumerate([(0, 0), (2, 0), (1, 3)])]
    result = cluster_points(pts, eps=5, min_pts=2)
    assert len(result.clusters) == 1
    cx, cy = result.clusters[0].centroid
    assert cx == pytest.approx(1.0)
    assert cy == pytest.approx(1.0)
    assert result.clusters[0].size == 3
