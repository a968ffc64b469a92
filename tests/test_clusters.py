import math

import numpy as np
import pytest

from galaxy_synth.clusters import cluster_array, clusters_per_arm, generate_cluster_centers
from galaxy_synth.params import ParameterError


@pytest.mark.parametrize("num_clusters,arms", [(20, 2), (7, 3), (0, 2), (1, 4), (33, 5)])
def test_cluster_counts(num_clusters, arms):
    rng = np.random.default_rng(0)
    clusters = generate_cluster_centers(num_clusters, 4.0, arms, rng=rng)
    assert len(clusters) == num_clusters
    on_arm = [c for c in clusters if c.arm_index >= 0]
    assert len(on_arm) == arms * math.floor(num_clusters * 0.7 / arms)
    assert all(c.arm_index == -1 for c in clusters if c not in on_arm)
    assert clusters_per_arm(num_clusters, arms) * arms == len(on_arm)


def test_invalid_inputs():
    with pytest.raises(ParameterError):
        generate_cluster_centers(10, 4.0, 0)
    with pytest.raises(ParameterError):
        generate_cluster_centers(-1, 4.0, 2)


def test_clusters_stay_in_disc():
    rng = np.random.default_rng(5)
    radius = 4.0
    clusters = generate_cluster_centers(40, radius, 2, base_radius=0.5, spiral_pitch_angle=13.0, rng=rng)
    for c in clusters:
        assert c.planar_radius < radius
        assert c.radius > 0.0
        assert 0.0 < c.density <= 1.0
        assert abs(c.position[2]) <= 0.04 * radius * 3.0


def test_arm_clusters_span_the_disc():
    rng = np.random.default_rng(9)
    radius = 4.0
    clusters = generate_cluster_centers(20, radius, 2, base_radius=0.5, spiral_pitch_angle=13.0, rng=rng)
    arm_radii = [c.planar_radius for c in clusters if not c.is_halo]
    halo_radii = [c.planar_radius for c in clusters if c.is_halo]
    assert min(arm_radii) < 1.0
    assert max(arm_radii) > 2.5
    assert all(r <= 0.7 * radius + 1e-9 for r in halo_radii)


def test_seed_reproduces_clusters():
    a = generate_cluster_centers(20, 4.0, 2, rng=np.random.default_rng(42))
    b = generate_cluster_centers(20, 4.0, 2, rng=np.random.default_rng(42))
    assert a == b


def test_cluster_array_layout():
    clusters = generate_cluster_centers(10, 4.0, 2, rng=np.random.default_rng(1))
    packed = cluster_array(clusters)
    assert packed.shape == (10, 6)
    assert packed.dtype == np.float64
    for row, c in zip(packed, clusters):
        assert tuple(row[:3]) == c.position
        assert row[3] == c.radius
        assert row[5] == c.arm_index
    assert cluster_array(()).shape == (0, 6)
