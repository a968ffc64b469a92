from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from numba import njit

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.orbits import star_positions
from galaxy_synth.params import GalaxyParameters, ParameterError
from galaxy_synth.stars import StarCatalog

MIN_SPLAT_RADIUS = 0.75
MAX_SPLAT_RADIUS = 48.0
STAR_GAIN = 1.35
STAR_GAMMA = 0.85
ALPHA_CUTOFF = 0.05


@dataclass(frozen=True, eq=False)
class BackgroundStars:
    """Distant shell of stars, positioned relative to the camera."""

    offsets: np.ndarray
    color: np.ndarray
    size: np.ndarray

    def __len__(self) -> int:
        return int(self.offsets.shape[0])


def generate_background_stars(
    count: int,
    inner_radius: float,
    outer_radius: float,
    size: float,
    rng: Optional[np.random.Generator] = None,
) -> BackgroundStars:
    if count < 0:
        raise ParameterError(f"background star count must be >= 0, got {count}")
    if outer_radius < inner_radius:
        raise ParameterError("background shell outer radius is below the inner radius")
    rng = rng if rng is not None else np.random.default_rng()

    direction = rng.normal(size=(count, 3))
    direction /= np.maximum(np.linalg.norm(direction, axis=1, keepdims=True), 1e-12)
    radius = inner_radius + rng.random(count) * (outer_radius - inner_radius)
    offsets = direction * radius[:, None]

    # Mostly white with a faint blue or orange cast.
    tint = rng.random(count)
    color = np.ones((count, 3), dtype=np.float64)
    color[:, 0] -= 0.25 * np.clip(0.5 - tint, 0.0, None)
    color[:, 2] -= 0.25 * np.clip(tint - 0.5, 0.0, None)
    brightness = 0.3 + 0.7 * rng.random(count) ** 2
    sizes = size * (0.5 + rng.random(count))
    return BackgroundStars(
        offsets=offsets,
        color=(color * brightness[:, None]).astype(np.float32),
        size=sizes.astype(np.float32),
    )


@njit(cache=True)
def _nb_star_profile(d: float) -> float:
    # Radial gradient stops: 1 at the core, 0.8 at 0.1, 0.4 at 0.3, 0 at the rim.
    if d < 0.1:
        return 1.0 - 2.0 * d
    if d < 0.3:
        return 0.8 - 2.0 * (d - 0.1)
    return max(0.4 * (1.0 - (d - 0.3) / 0.7), 0.0)


@njit(cache=True)
def _nb_splat(
    color: np.ndarray,
    depth: np.ndarray,
    px: np.ndarray,
    py: np.ndarray,
    ndc_depth: np.ndarray,
    radius: np.ndarray,
    gain: np.ndarray,
    rgb: np.ndarray,
    write_depth: bool,
) -> None:
    height = depth.shape[0]
    width = depth.shape[1]
    for s in range(px.shape[0]):
        rad = radius[s]
        x0 = max(int(math.floor(px[s] - rad)), 0)
        x1 = min(int(math.ceil(px[s] + rad)), width - 1)
        y0 = max(int(math.floor(py[s] - rad)), 0)
        y1 = min(int(math.ceil(py[s] + rad)), height - 1)
        for y in range(y0, y1 + 1):
            for x in range(x0, x1 + 1):
                dx = x + 0.5 - px[s]
                dy = y + 0.5 - py[s]
                d = math.sqrt(dx * dx + dy * dy) / rad
                if d >= 1.0:
                    continue
                a = _nb_star_profile(d)
                if a < ALPHA_CUTOFF:
                    continue
                a *= gain[s]
                for c in range(3):
                    color[y, x, c] += rgb[s, c] * a
                if write_depth and ndc_depth[s] < depth[y, x]:
                    depth[y, x] = ndc_depth[s]


def _splat_points(
    color: np.ndarray,
    depth: np.ndarray,
    camera: GalaxyCamera,
    points: np.ndarray,
    sizes: np.ndarray,
    rgb: np.ndarray,
    write_depth: bool,
) -> int:
    if points.shape[0] == 0:
        return 0
    height, width = depth.shape
    ndc, w = camera.project(points)
    visible = (w > camera.near) & (np.abs(ndc[:, 2]) <= 1.0)
    visible &= (np.abs(ndc[:, 0]) <= 1.1) & (np.abs(ndc[:, 1]) <= 1.1)
    if not np.any(visible):
        return 0
    ndc = ndc[visible]
    w = w[visible]

    # Billboards are sized in view space, like the instanced quads they replace.
    radius_px = 0.5 * sizes[visible] * camera.projection[1, 1] / w * 0.5 * height
    gain = np.clip((radius_px / MIN_SPLAT_RADIUS) ** 2, 0.1, 1.0)
    radius_px = np.clip(radius_px, MIN_SPLAT_RADIUS, MAX_SPLAT_RADIUS)

    px = (ndc[:, 0] * 0.5 + 0.5) * width
    py = (0.5 - ndc[:, 1] * 0.5) * height
    shaded = np.power(np.clip(rgb[visible], 0.0, None), STAR_GAMMA) * STAR_GAIN
    _nb_splat(
        color,
        depth,
        np.ascontiguousarray(px),
        np.ascontiguousarray(py),
        np.ascontiguousarray(ndc[:, 2] * 0.5 + 0.5),
        np.ascontiguousarray(radius_px),
        np.ascontiguousarray(gain),
        np.ascontiguousarray(shaded, dtype=np.float64),
        write_depth,
    )
    return int(px.shape[0])


def render_star_layer(
    catalog: StarCatalog,
    camera: GalaxyCamera,
    time: float,
    width: int,
    height: int,
    params: GalaxyParameters,
    background: Optional[BackgroundStars] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Rasterize the opaque star pass.

    Returns an (H, W, 3) float32 color buffer and an (H, W) float32 buffer of
    NDC depth in [0, 1]; 1.0 marks pixels no star covers.
    """
    color = np.zeros((height, width, 3), dtype=np.float64)
    depth = np.ones((height, width), dtype=np.float64)

    if background is not None and len(background) > 0:
        # The shell travels with the camera and never occludes the volume.
        _splat_points(
            color,
            depth,
            camera,
            background.offsets + camera.eye[None, :],
            background.size.astype(np.float64),
            background.color.astype(np.float64),
            False,
        )

    if len(catalog) > 0:
        _splat_points(
            color,
            depth,
            camera,
            star_positions(catalog, time, params.orbital_time_scale),
            catalog.size.astype(np.float64),
            catalog.color.astype(np.float64),
            True,
        )
    return color.astype(np.float32), depth.astype(np.float32)
