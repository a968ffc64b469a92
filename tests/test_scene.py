import logging

import numpy as np
import pytest

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.field import DensityField
from galaxy_synth.params import GalaxyParameters, ParameterError
from galaxy_synth.scene import (
    REGEN_BACKGROUND,
    REGEN_CLUSTERS,
    REGEN_DENSITY,
    REGEN_STARS,
    GalaxyScene,
    plan_regeneration,
)


class RecordingService:
    def __init__(self, field=None):
        self.field = field
        self.requests = []
        self.closed = False

    def request_build(self, request):
        self.requests.append(request)
        return len(self.requests)

    def wait(self, timeout=None):
        return self.field

    def close(self):
        self.closed = True


def small_params(**changes):
    params, _ = GalaxyParameters().with_changes(num_stars=300, background_star_count=40, **changes)
    return params


@pytest.mark.parametrize(
    "changed, expected",
    [
        ({"density_factor"}, set()),
        ({"absorption_coefficient", "ray_march_steps"}, set()),
        ({"spiral_arms"}, {REGEN_CLUSTERS, REGEN_DENSITY, REGEN_STARS}),
        ({"galactic_radius"}, {REGEN_CLUSTERS, REGEN_DENSITY, REGEN_STARS}),
        ({"num_stars"}, {REGEN_STARS}),
        ({"star_size", "bulge_radius"}, {REGEN_STARS}),
        ({"arm_width"}, {REGEN_DENSITY}),
        ({"arm_density_multiplier"}, {REGEN_DENSITY}),
        ({"cluster_influence"}, {REGEN_DENSITY, REGEN_STARS}),
        ({"background_star_count"}, {REGEN_BACKGROUND}),
        ({"arm_width", "background_star_size"}, {REGEN_DENSITY, REGEN_BACKGROUND}),
    ],
)
def test_plan_regeneration(changed, expected):
    assert plan_regeneration(frozenset(changed)) == frozenset(expected)


def test_scene_generates_everything_and_requests_a_field():
    service = RecordingService()
    scene = GalaxyScene(small_params(), seed=4, field_service=service, grid_size=16, num_clusters=8)
    assert len(scene.clusters) > 0
    assert len(scene.catalog) == 300
    assert len(scene.background) == 40
    assert len(service.requests) == 1
    request = service.requests[0]
    assert request.grid_size == 16
    assert request.params.spiral_arms == scene.params.spiral_arms
    assert request.cluster_centers.shape == (len(scene.clusters), 6)


def test_render_only_changes_rebuild_nothing(caplog):
    service = RecordingService()
    scene = GalaxyScene(small_params(), seed=4, field_service=service, grid_size=8, num_clusters=8)
    catalog = scene.catalog
    with caplog.at_level(logging.INFO, logger="galaxy_synth.scene"):
        actions = scene.apply_changes(density_factor=1.5, nebula_warm_color="#ffffff")
    assert actions == frozenset()
    assert scene.catalog is catalog
    assert len(service.requests) == 1
    assert scene.params.density_factor == 1.5
    assert scene.renderer.params.nebula_warm_color == "#ffffff"
    assert caplog.records


def test_arm_change_regenerates_clusters_density_and_stars():
    service = RecordingService()
    scene = GalaxyScene(small_params(), seed=4, field_service=service, grid_size=8, num_clusters=8)
    clusters, catalog = scene.clusters, scene.catalog
    actions = scene.apply_changes(spiral_arms=4)
    assert actions == frozenset({REGEN_CLUSTERS, REGEN_DENSITY, REGEN_STARS})
    assert scene.clusters is not clusters
    assert scene.catalog is not catalog
    assert len(service.requests) == 2
    assert service.requests[-1].params.spiral_arms == 4


def test_star_count_change_keeps_clusters():
    service = RecordingService()
    scene = GalaxyScene(small_params(), seed=4, field_service=service, grid_size=8, num_clusters=8)
    clusters = scene.clusters
    scene.apply_changes(num_stars=120)
    assert scene.clusters is clusters
    assert len(scene.catalog) == 120
    assert len(service.requests) == 1


def test_unknown_parameter_is_rejected():
    scene = GalaxyScene(small_params(), seed=1, field_service=RecordingService(), num_clusters=4)
    with pytest.raises(ParameterError):
        scene.apply_changes(warp_drive=True)
    with pytest.raises(ParameterError):
        scene.apply_changes(spiral_arms=0)
    assert scene.params.spiral_arms == 2


def test_render_frame_without_field_is_the_star_layer():
    scene = GalaxyScene(small_params(), seed=2, field_service=RecordingService(), num_clusters=4)
    camera = GalaxyCamera(aspect=20 / 12)
    frame = scene.render_frame(camera, 0.0, 20, 12)
    assert frame.shape == (12, 20, 3)
    assert frame.dtype == np.float32
    assert np.all(frame >= 0.0)


def test_render_frame_with_field():
    data = np.zeros((4, 4, 4, 2), dtype=np.float32)
    field = DensityField(data=data, box_min=(-1, -1, -1), box_max=(1, 1, 1))
    service = RecordingService(field)
    scene = GalaxyScene(small_params(), seed=2, field_service=service, num_clusters=4)
    camera = GalaxyCamera(aspect=20 / 12)
    stars_only = GalaxyScene(small_params(), seed=2, field_service=RecordingService(), num_clusters=4)
    np.testing.assert_array_equal(
        scene.render_frame(camera, 1.0, 20, 12), stars_only.render_frame(camera, 1.0, 20, 12)
    )


def test_close_closes_service():
    service = RecordingService()
    with GalaxyScene(small_params(), seed=2, field_service=service, num_clusters=4, build_field=False):
        pass
    assert service.closed
    assert service.requests == []
