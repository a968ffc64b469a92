import math

import numpy as np
import pytest

from galaxy_synth.density import (
    arm_centerline_theta,
    arm_factor,
    bulge_term,
    disc_term,
    distance_to_nearest_arm,
    radial_cdf,
    spiral_arm_radius,
    surface_density,
    vertical_density,
    wrap_angle,
)
from galaxy_synth.params import GalaxyParameters


def scenario(**changes):
    base = {
        "galactic_radius": 5.0,
        "disc_scale_length": 0.3,
        "spiral_arms": 2,
        "spiral_pitch_angle": 13.0,
        "base_radius": 0.5,
        "arm_width": 0.35,
    }
    base.update(changes)
    return GalaxyParameters.from_mapping(base)


@pytest.mark.parametrize(
    "params",
    [
        GalaxyParameters(),
        scenario(),
        scenario(spiral_arms=5, arm_density_multiplier=6.0),
        scenario(bulge_radius=0.3, disc_scale_length=2.0),
    ],
)
def test_radial_cdf_monotone_and_normalized(params):
    cdf = radial_cdf(params)
    assert cdf.shape == (1000,)
    assert np.all(np.diff(cdf) >= 0.0)
    assert cdf[-1] == 1.0
    assert cdf[0] >= 0.0


def test_wrap_angle_range():
    for a in np.linspace(-20.0, 20.0, 101):
        w = wrap_angle(float(a))
        assert -math.pi <= w < math.pi
        assert math.isclose(math.cos(w), math.cos(a), abs_tol=1e-9)


def test_arm_factor_peaks_on_centerline():
    params = scenario()
    for arm in range(params.spiral_arms):
        for r in (0.5, 1.0, 2.5, 4.5):
            theta = arm_centerline_theta(r, arm, params)
            assert distance_to_nearest_arm(r, theta, params) == pytest.approx(0.0, abs=1e-9)
            assert arm_factor(r, theta, params) == pytest.approx(1.0)
            assert arm_factor(r, theta + 2.0 * math.pi, params) == pytest.approx(1.0)


def test_arm_factor_decays_between_arms():
    params = scenario()
    r = 3.0
    theta = arm_centerline_theta(r, 0, params) + math.pi / 2.0
    assert arm_factor(r, theta, params) < 1e-3


def test_distance_uses_floored_radius_near_center():
    params = scenario()
    theta = arm_centerline_theta(0.0, 0, params) + 0.5
    # Both radii fall under the floor at 0.5 * base_radius.
    assert distance_to_nearest_arm(0.0, theta, params) == pytest.approx(
        distance_to_nearest_arm(0.1, theta, params)
    )


def test_spiral_arm_radius_inverts_centerline():
    params = scenario()
    for r in (0.5, 1.3, 4.0):
        theta = arm_centerline_theta(r, 1, params)
        assert spiral_arm_radius(theta, 1, params) == pytest.approx(r)


def test_bulge_only_inside_extent():
    params = scenario(bulge_radius=0.1)
    extent = 0.1 * params.galactic_radius
    assert bulge_term(extent * 0.25, params) > 0.0
    assert bulge_term(extent, params) == 0.0
    assert bulge_term(extent * 2.0, params) == 0.0


def test_disc_term_matches_exponential():
    params = scenario()
    assert disc_term(1.5, params) == pytest.approx(math.exp(-1.5 / 1.5))


def test_vertical_density():
    assert vertical_density(0.0, 0.2) == 1.0
    assert vertical_density(-0.2, 0.2) == pytest.approx(math.exp(-1.0))


def test_unit_multiplier_reduces_to_disc_plus_bulge():
    params = scenario(arm_density_multiplier=1.0)
    rng = np.random.default_rng(11)
    for r, theta in zip(rng.uniform(0.0, 5.0, 50), rng.uniform(-math.pi, math.pi, 50)):
        expected = disc_term(r, params) + 3.0 * bulge_term(r, params)
        assert surface_density(r, theta, params) == pytest.approx(expected)


def test_unit_multiplier_cdf_has_no_arm_shape():
    params = scenario(arm_density_multiplier=1.0)
    n = 1000
    weights = []
    for i in range(n):
        r = i / n * params.galactic_radius
        weights.append((disc_term(r, params) + 3.0 * bulge_term(r, params)) * r)
    expected = np.cumsum(weights)
    expected /= expected[-1]
    np.testing.assert_allclose(radial_cdf(params), expected, rtol=1e-9, atol=1e-12)


def test_arm_boost_peaks_at_multiplier():
    params = scenario(arm_density_multiplier=2.5)
    r = 2.0
    on_arm = arm_centerline_theta(r, 0, params)
    base = disc_term(r, params) + 3.0 * bulge_term(r, params)
    assert surface_density(r, on_arm, params) == pytest.approx(2.5 * base)
