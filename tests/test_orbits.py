import math

import numpy as np
import pytest

from galaxy_synth.orbits import GM, angular_velocity, corotate_point, current_theta, star_positions
from galaxy_synth.params import GalaxyParameters
from galaxy_synth.stars import sample_stars


@pytest.mark.parametrize("r", [1e-4, 0.01, 0.5, 3.0, 40.0])
def test_identity_at_time_zero(r):
    assert current_theta(r, 1.234, 0.0, 20.9) == 1.234


def test_keplerian_rate_with_floor():
    assert angular_velocity(2.0) == pytest.approx(math.sqrt(GM / 8.0))
    assert angular_velocity(0.0) == angular_velocity(0.01)
    assert angular_velocity(0.5) > angular_velocity(1.0) > angular_velocity(4.0)


def test_orbits_advance_clockwise():
    assert current_theta(1.0, 0.0, 10.0, 2.0) == pytest.approx(-angular_velocity(1.0) * 20.0)


def test_corotation_undoes_orbital_motion():
    r, theta0, z, t, ts = 2.0, 0.7, 0.05, 1500.0, 20.9
    theta = current_theta(r, theta0, t, ts)
    x, y, zz = corotate_point(r * math.cos(theta), r * math.sin(theta), z, t, ts)
    assert x == pytest.approx(r * math.cos(theta0))
    assert y == pytest.approx(r * math.sin(theta0))
    assert zz == z


def test_star_positions_keep_radius_and_height():
    catalog = sample_stars(200, GalaxyParameters(), (), seed=0)
    start = star_positions(catalog, 0.0, 20.9)
    later = star_positions(catalog, 500.0, 20.9)
    assert later.shape == (200, 3)
    np.testing.assert_allclose(np.hypot(later[:, 0], later[:, 1]), catalog.r, atol=1e-9)
    np.testing.assert_array_equal(later[:, 2], catalog.z)
    np.testing.assert_allclose(start[:, 0], catalog.r * np.cos(catalog.theta0), atol=1e-12)
    assert not np.allclose(start, later)
