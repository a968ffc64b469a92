import math

import numpy as np
import pytest

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.field import DensityField
from galaxy_synth.orbits import angular_velocity
from galaxy_synth.params import GalaxyParameters, VolumeSettings
from galaxy_synth.raymarch import VolumetricRenderer

SIZE = 16


def uniform_field(density, temperature=0.8):
    data = np.zeros((8, 8, 8, 2), dtype=np.float32)
    data[..., 0] = density
    data[..., 1] = temperature
    return DensityField(data=data, box_min=(-1.0, -1.0, -0.5), box_max=(1.0, 1.0, 0.5))


def starry_scene(seed=0):
    rng = np.random.default_rng(seed)
    color = rng.random((SIZE, SIZE, 3)).astype(np.float32)
    depth = np.ones((SIZE, SIZE), dtype=np.float32)
    return color, depth


@pytest.fixture
def camera():
    return GalaxyCamera((0.0, -5.0, 0.0), (0.0, 0.0, 0.0), (0.0, 0.0, 1.0))


@pytest.fixture
def renderer():
    return VolumetricRenderer(GalaxyParameters(), VolumeSettings(jitter=False))


def test_empty_field_passes_scene_through(renderer, camera):
    color, depth = starry_scene()
    out = renderer.render(color, depth, camera, 0.0, field=uniform_field(0.0))
    assert out.shape == color.shape
    np.testing.assert_array_equal(out, color)


def test_rays_missing_the_box_pass_through(renderer):
    away = GalaxyCamera((0.0, -5.0, 0.0), (0.0, -10.0, 0.0), (0.0, 0.0, 1.0))
    color, depth = starry_scene(1)
    out = renderer.render(color, depth, away, 0.0, field=uniform_field(1.0))
    np.testing.assert_array_equal(out, color)


def test_geometry_in_front_of_volume_hides_it(renderer, camera):
    color, _ = starry_scene(2)
    near_depth = np.zeros((SIZE, SIZE), dtype=np.float32)
    out = renderer.render(color, near_depth, camera, 0.0, field=uniform_field(1.0))
    np.testing.assert_array_equal(out, color)


def test_dense_field_glows_over_black(renderer, camera):
    color = np.zeros((SIZE, SIZE, 3), dtype=np.float32)
    depth = np.ones((SIZE, SIZE), dtype=np.float32)
    out = renderer.render(color, depth, camera, 0.0, field=uniform_field(1.0))
    assert np.all(np.isfinite(out))
    assert out[SIZE // 2, SIZE // 2].sum() > 0.0


def test_dense_field_dims_background(renderer, camera):
    color = np.ones((SIZE, SIZE, 3), dtype=np.float32)
    depth = np.ones((SIZE, SIZE), dtype=np.float32)
    params, _ = GalaxyParameters().with_changes(density_factor=50.0)
    renderer.update_parameters(params)
    lit = renderer.render(color, depth, camera, 0.0, field=uniform_field(1.0, temperature=0.0))
    assert lit[SIZE // 2, SIZE // 2].mean() < 1.0


def test_without_field_returns_copy(renderer, camera):
    color, depth = starry_scene(3)
    out = renderer.render(color, depth, camera, 0.0)
    np.testing.assert_array_equal(out, color)
    assert out is not color


def test_mismatched_depth(renderer, camera):
    color, _ = starry_scene()
    with pytest.raises(ValueError):
        renderer.render(color, np.ones((4, 4), dtype=np.float32), camera, 0.0, field=uniform_field(1.0))


def test_scene_depth_sets_how_much_gas_covers_a_star(camera):
    renderer = VolumetricRenderer(GalaxyParameters(), VolumeSettings(jitter=False, powder_strength=0.0))
    field = uniform_field(0.2, temperature=0.5)
    origin, direction = camera.pixel_ray(8, 8, SIZE, SIZE)
    # Faint enough that the star does not tint the gas, so lit - dark is the transmitted star light.
    star = np.full((SIZE, SIZE, 3), 0.03, dtype=np.float32)
    black = np.zeros((SIZE, SIZE, 3), dtype=np.float32)

    transmitted = []
    for distance in (4.2, 5.0, 7.0):  # box front, box middle, behind the box
        ndc, _ = camera.project((origin + direction * distance)[None, :])
        depth = np.full((SIZE, SIZE), ndc[0, 2] * 0.5 + 0.5, dtype=np.float32)
        lit = renderer.render(star, depth, camera, 0.0, field=field)
        dark = renderer.render(black, depth, camera, 0.0, field=field)
        transmitted.append(float(lit[8, 8, 0]) - float(dark[8, 8, 0]))
    assert 0.03 > transmitted[0] > transmitted[1] > transmitted[2] > 0.0


def half_field(positive_x):
    data = np.zeros((8, 8, 8, 2), dtype=np.float32)
    if positive_x:
        data[:, :, 4:, 0] = 1.0
    else:
        data[:, :, :4, 0] = 1.0
    data[..., 1] = 0.8
    return DensityField(data=data, box_min=(-1.0, -1.0, -0.5), box_max=(1.0, 1.0, 0.5))


def test_volume_corotates_with_the_stars():
    params, _ = GalaxyParameters().with_changes(sun_position=(0.5, 0.0, 2.0))
    renderer = VolumetricRenderer(params, VolumeSettings(jitter=False))
    overhead = GalaxyCamera((0.5, 0.0, 3.0), (0.5, 0.0, 0.0), (0.0, 1.0, 0.0), fov=10.0)
    black = np.zeros((15, 15, 3), dtype=np.float32)
    depth = np.ones((15, 15), dtype=np.float32)
    half_turn = math.pi / (angular_velocity(0.5) * params.orbital_time_scale)

    still = renderer.render(black, depth, overhead, 0.0, field=half_field(True))
    turned = renderer.render(black, depth, overhead, half_turn, field=half_field(True))
    mirrored = renderer.render(black, depth, overhead, half_turn, field=half_field(False))

    assert still[7, 7].sum() > 0.0
    assert not turned[7, 7].any()
    np.testing.assert_allclose(mirrored[7, 7], still[7, 7], rtol=1e-4, atol=1e-6)
