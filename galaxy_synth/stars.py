from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numba import njit

from galaxy_synth.clusters import ClusterCenter, cluster_array
from galaxy_synth.density import _arm_args, _nb_arm_factor, radial_cdf
from galaxy_synth.params import (
    ARM_EARLY_ACCEPT,
    ARM_EARLY_ACCEPT_PROBABILITY,
    ARM_REJECTION_ATTEMPTS,
    CLUSTER_JITTER_FRACTION,
    EPSILON,
    STAR_TYPES,
    STAR_Z_LIMIT,
    STELLAR_TYPE_WEIGHTS,
    GalaxyParameters,
    ParameterError,
)

TWO_PI = 2.0 * math.pi

# Column layout of the per-star uniform draws fed to the placement kernel.
U_SNAP = 0
U_CLUSTER = 1
U_JITTER = 2
U_BIN = 5
U_OFFSET = 6
U_PHASE = 7
U_CANDIDATE = 8
U_ACCEPT = U_CANDIDATE + ARM_REJECTION_ATTEMPTS
U_HEIGHT = U_ACCEPT + ARM_REJECTION_ATTEMPTS
UNIFORM_COLUMNS = U_HEIGHT + 1


@dataclass(frozen=True)
class StarRecord:
    r: float
    theta0: float
    z: float
    stellar_type: int
    color: Tuple[float, float, float]
    size: float

    @property
    def type_name(self) -> str:
        return STAR_TYPES[self.stellar_type].name


@dataclass(frozen=True, eq=False)
class StarCatalog:
    """Column-oriented star records. Arrays are frozen on construction."""

    r: np.ndarray
    theta0: np.ndarray
    z: np.ndarray
    stellar_type: np.ndarray
    color: np.ndarray
    size: np.ndarray

    def __post_init__(self) -> None:
        n = self.r.shape[0]
        for name in ("theta0", "z", "stellar_type", "size"):
            if getattr(self, name).shape != (n,):
                raise ValueError(f"StarCatalog.{name} must have shape ({n},)")
        if self.color.shape != (n, 3):
            raise ValueError(f"StarCatalog.color must have shape ({n}, 3)")
        for name in ("r", "theta0", "z", "stellar_type", "color", "size"):
            getattr(self, name).flags.writeable = False

    def __len__(self) -> int:
        return int(self.r.shape[0])

    def __getitem__(self, index: int) -> StarRecord:
        c = self.color[index]
        return StarRecord(
            r=float(self.r[index]),
            theta0=float(self.theta0[index]),
            z=float(self.z[index]),
            stellar_type=int(self.stellar_type[index]),
            color=(float(c[0]), float(c[1]), float(c[2])),
            size=float(self.size[index]),
        )

    @classmethod
    def empty(cls) -> "StarCatalog":
        return cls(
            r=np.zeros(0, dtype=np.float64),
            theta0=np.zeros(0, dtype=np.float64),
            z=np.zeros(0, dtype=np.float64),
            stellar_type=np.zeros(0, dtype=np.int64),
            color=np.zeros((0, 3), dtype=np.float32),
            size=np.zeros(0, dtype=np.float32),
        )


def max_star_height(params: GalaxyParameters) -> float:
    return STAR_Z_LIMIT * params.vertical_scale_height * params.galactic_radius


@njit(cache=True)
def _nb_scale_height(nr: float, base_h: float, bulge_radius: float) -> float:
    if nr < 2.0 * bulge_radius:
        return base_h * (1.0 + 0.5 * math.exp(-nr / (2.0 * bulge_radius)))
    return base_h * (0.8 + 0.2 * nr)


@njit(cache=True)
def _nb_place_stars(
    uniforms: np.ndarray,
    cdf: np.ndarray,
    clusters: np.ndarray,
    cluster_influence: float,
    galactic_radius: float,
    vertical_scale_height: float,
    bulge_radius: float,
    num_arms: int,
    pitch_rad: float,
    base_radius: float,
    arm_width: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    n = uniforms.shape[0]
    bins = cdf.shape[0]
    n_clusters = clusters.shape[0]
    base_h = vertical_scale_height * galactic_radius
    z_limit = STAR_Z_LIMIT * base_h

    out_r = np.zeros(n, dtype=np.float64)
    out_theta = np.zeros(n, dtype=np.float64)
    out_z = np.zeros(n, dtype=np.float64)

    for s in range(n):
        u = uniforms[s]
        if n_clusters > 0 and u[U_SNAP] < cluster_influence:
            c = min(int(u[U_CLUSTER] * n_clusters), n_clusters - 1)
            js = CLUSTER_JITTER_FRACTION * clusters[c, 3]
            x = clusters[c, 0] + (u[U_JITTER] - 0.5) * js
            y = clusters[c, 1] + (u[U_JITTER + 1] - 0.5) * js
            z = clusters[c, 2] + (u[U_JITTER + 2] - 0.5) * 0.3 * js
            r = min(math.sqrt(x * x + y * y), galactic_radius)
            theta = math.atan2(y, x)
        else:
            # Inverse-transform sampling over the radial bins.
            i = np.searchsorted(cdf, u[U_BIN], side="right")
            if i > bins - 1:
                i = bins - 1
            r = min((i + u[U_OFFSET]) / bins * galactic_radius, galactic_radius)

            phase = u[U_PHASE] * TWO_PI
            theta = phase + u[U_CANDIDATE] / ARM_REJECTION_ATTEMPTS * TWO_PI
            best = -1.0
            for k in range(ARM_REJECTION_ATTEMPTS):
                candidate = phase + (k + u[U_CANDIDATE + k]) / ARM_REJECTION_ATTEMPTS * TWO_PI
                af = _nb_arm_factor(r, candidate, num_arms, pitch_rad, base_radius, arm_width)
                if af > best:
                    best = af
                    theta = candidate
                if af > ARM_EARLY_ACCEPT and u[U_ACCEPT + k] < ARM_EARLY_ACCEPT_PROBABILITY:
                    break
            theta = theta % TWO_PI

            nr = r / max(galactic_radius, EPSILON)
            h = _nb_scale_height(nr, base_h, bulge_radius)
            uz = min(max(u[U_HEIGHT], 0.001), 0.999)
            z = h * math.log(uz / (1.0 - uz)) * 0.3
            z = min(max(z, -2.5 * h), 2.5 * h)
            if best > 0.3:
                z *= 1.0 - 0.6 * best

        if math.isnan(r) or math.isnan(theta) or math.isnan(z):
            r = 0.0
            theta = 0.0
            z = 0.0
        out_r[s] = r
        out_theta[s] = theta
        out_z[s] = min(max(z, -z_limit), z_limit)
    return out_r, out_theta, out_z


def _type_weights(normalized_radius: float) -> np.ndarray:
    for upper, weights in STELLAR_TYPE_WEIGHTS:
        if normalized_radius < upper:
            w = np.asarray(weights, dtype=np.float64)
            return w / w.sum()
    w = np.asarray(STELLAR_TYPE_WEIGHTS[-1][1], dtype=np.float64)
    return w / w.sum()


def select_stellar_type(normalized_radius: float, u: float) -> int:
    """Pick a STAR_TYPES index from the radius dependent weight table."""
    cumulative = np.cumsum(_type_weights(normalized_radius))
    return int(min(np.searchsorted(cumulative, u, side="right"), len(STAR_TYPES) - 1))


def _stellar_types(r: np.ndarray, galactic_radius: float, rng: np.random.Generator) -> np.ndarray:
    nr = r / max(galactic_radius, EPSILON)
    draws = rng.random(r.shape[0])
    types = np.zeros(r.shape[0], dtype=np.int64)
    lower = 0.0
    for upper, _ in STELLAR_TYPE_WEIGHTS:
        mask = (nr >= lower) & (nr < upper)
        if np.any(mask):
            cumulative = np.cumsum(_type_weights(lower))
            picked = np.searchsorted(cumulative, draws[mask], side="right")
            types[mask] = np.minimum(picked, len(STAR_TYPES) - 1)
        lower = upper
    return types


def _star_appearance(
    types: np.ndarray, star_size: float, rng: np.random.Generator
) -> Tuple[np.ndarray, np.ndarray]:
    color_min = np.array([t.color_min for t in STAR_TYPES], dtype=np.float64)
    color_max = np.array([t.color_max for t in STAR_TYPES], dtype=np.float64)
    lum_min = np.array([t.luminosity_min for t in STAR_TYPES], dtype=np.float64)
    lum_max = np.array([t.luminosity_max for t in STAR_TYPES], dtype=np.float64)
    modifier = np.array([t.size_modifier for t in STAR_TYPES], dtype=np.float64)

    n = types.shape[0]
    # Channels are drawn independently inside each type's range.
    channel = rng.random((n, 3))
    color = color_min[types] + channel * (color_max[types] - color_min[types])

    lum = lum_min[types] + rng.random(n) * (lum_max[types] - lum_min[types])
    factor = np.clip((0.3 + lum * 0.25) * modifier[types], 0.15, 3.0)
    size = star_size * factor * 15.0
    return color.astype(np.float32), size.astype(np.float32)


def sample_stars(
    num_stars: int,
    params: GalaxyParameters,
    clusters: Sequence[ClusterCenter] = (),
    rng: Optional[np.random.Generator] = None,
    seed: Optional[int] = None,
    cdf: Optional[np.ndarray] = None,
) -> StarCatalog:
    if num_stars < 0:
        raise ParameterError(f"num_stars must be >= 0, got {num_stars}")
    if params.spiral_arms < 1:
        raise ParameterError(f"spiral_arms must be >= 1, got {params.spiral_arms}")
    if rng is None:
        rng = np.random.default_rng(seed)
    if num_stars == 0:
        return StarCatalog.empty()
    if cdf is None:
        cdf = radial_cdf(params)

    arms, pitch, base = _arm_args(params)
    uniforms = rng.random((int(num_stars), UNIFORM_COLUMNS))
    r, theta, z = _nb_place_stars(
        uniforms,
        np.ascontiguousarray(cdf, dtype=np.float64),
        cluster_array(clusters),
        float(params.cluster_influence),
        float(params.galactic_radius),
        float(params.vertical_scale_height),
        float(params.bulge_radius),
        arms,
        pitch,
        base,
        float(params.arm_width),
    )
    types = _stellar_types(r, params.galactic_radius, rng)
    color, size = _star_appearance(types, params.star_size, rng)
    return StarCatalog(r=r, theta0=theta, z=z, stellar_type=types, color=color, size=size)
