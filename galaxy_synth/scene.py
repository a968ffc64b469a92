from __future__ import annotations

import logging
from typing import FrozenSet, Optional, Tuple

import numpy as np

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.clusters import ClusterCenter, cluster_array, generate_cluster_centers
from galaxy_synth.field import DensityFieldService, FieldBuildRequest, FieldParameters
from galaxy_synth.params import (
    BACKGROUND_KEYS,
    CLUSTER_KEYS,
    CLUSTER_RADIUS_FRACTION,
    DEFAULT_GRID_SIZE,
    DEFAULT_NOISE_SCALE,
    DEFAULT_NUM_CLUSTERS,
    DENSITY_KEYS,
    STAR_KEYS,
    GalaxyParameters,
    VolumeSettings,
)
from galaxy_synth.raymarch import VolumetricRenderer
from galaxy_synth.starfield import BackgroundStars, generate_background_stars, render_star_layer
from galaxy_synth.stars import StarCatalog, sample_stars

LOGGER = logging.getLogger(__name__)

REGEN_CLUSTERS = "clusters"
REGEN_DENSITY = "density"
REGEN_STARS = "stars"
REGEN_BACKGROUND = "background"


def plan_regeneration(changed: FrozenSet[str]) -> FrozenSet[str]:
    """Map changed parameter names to the rebuilds they require."""
    density = bool(changed & DENSITY_KEYS)
    stars = bool(changed & STAR_KEYS)
    actions = set()
    if (density or stars) and changed & CLUSTER_KEYS:
        actions.add(REGEN_CLUSTERS)
    if density:
        actions.add(REGEN_DENSITY)
    if stars:
        actions.add(REGEN_STARS)
    if changed & BACKGROUND_KEYS:
        actions.add(REGEN_BACKGROUND)
    return frozenset(actions)


class GalaxyScene:
    """Owns the generated galaxy state and keeps it consistent with its parameters."""

    def __init__(
        self,
        params: Optional[GalaxyParameters] = None,
        seed: Optional[int] = None,
        field_service: Optional[DensityFieldService] = None,
        grid_size: int = DEFAULT_GRID_SIZE,
        num_clusters: int = DEFAULT_NUM_CLUSTERS,
        settings: Optional[VolumeSettings] = None,
        noise_scale: float = DEFAULT_NOISE_SCALE,
        build_field: bool = True,
    ) -> None:
        self.params = (params or GalaxyParameters()).validate()
        self.grid_size = int(grid_size)
        self.num_clusters = int(num_clusters)
        self.noise_scale = float(noise_scale)
        self.build_field = build_field
        self._rng = np.random.default_rng(seed)
        self.field_service = field_service or DensityFieldService()
        self.renderer = VolumetricRenderer(self.params, settings)

        self.clusters: Tuple[ClusterCenter, ...] = self._generate_clusters()
        self.catalog: StarCatalog = self._sample_catalog()
        self.background: BackgroundStars = self._generate_background()
        if self.build_field:
            self.request_field()

    def _generate_clusters(self) -> Tuple[ClusterCenter, ...]:
        p = self.params
        return generate_cluster_centers(
            self.num_clusters,
            p.galactic_radius * CLUSTER_RADIUS_FRACTION,
            p.spiral_arms,
            p.base_radius,
            p.spiral_pitch_angle,
            p.vertical_scale_height,
            rng=self._rng,
        )

    def _sample_catalog(self) -> StarCatalog:
        return sample_stars(self.params.num_stars, self.params, self.clusters, rng=self._rng)

    def _generate_background(self) -> BackgroundStars:
        p = self.params
        return generate_background_stars(
            p.background_star_count,
            p.background_star_inner_radius,
            p.background_star_outer_radius,
            p.background_star_size,
            rng=self._rng,
        )

    def field_request(self) -> FieldBuildRequest:
        return FieldBuildRequest(
            grid_size=self.grid_size,
            params=FieldParameters.from_galaxy(self.params),
            noise_scale=self.noise_scale,
            cluster_centers=cluster_array(self.clusters),
        )

    def request_field(self) -> int:
        return self.field_service.request_build(self.field_request())

    def apply_changes(self, **changes: object) -> FrozenSet[str]:
        params, changed = self.params.with_changes(**changes)
        self.params = params
        self.renderer.update_parameters(params)
        actions = plan_regeneration(changed)

        if REGEN_CLUSTERS in actions:
            self.clusters = self._generate_clusters()
        if REGEN_DENSITY in actions and self.build_field:
            self.request_field()
        if REGEN_STARS in actions:
            self.catalog = self._sample_catalog()
        if REGEN_BACKGROUND in actions:
            self.background = self._generate_background()
        if changed:
            LOGGER.info("Parameters %s changed; rebuilt %s", sorted(changed), sorted(actions) or "nothing")
        return actions

    def render_frame(self, camera: GalaxyCamera, time: float, width: int, height: int) -> np.ndarray:
        color, depth = render_star_layer(
            self.catalog, camera, time, width, height, self.params, background=self.background
        )
        field = self.field_service.field
        if field is None:
            return color
        return self.renderer.render(color, depth, camera, time, field=field)

    def close(self) -> None:
        self.field_service.close()

    def __enter__(self) -> "GalaxyScene":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
