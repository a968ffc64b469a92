from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from typing import FrozenSet, Mapping, Tuple

from PIL import ImageColor


class ParameterError(ValueError):
    pass


@dataclass(frozen=True)
class StarType:
    name: str
    color_min: Tuple[float, float, float]
    color_max: Tuple[float, float, float]
    luminosity_min: float
    luminosity_max: float
    size_modifier: float = 1.0


STAR_TYPES: Tuple[StarType, ...] = (
    StarType("O-type", (0.2, 0.2, 0.9), (0.4, 0.4, 1.0), 2.5, 5.0, 1.3),
    StarType("B-type", (0.6, 0.7, 1.0), (0.8, 0.9, 1.0), 2.0, 4.0, 1.3),
    StarType("A-type", (0.8, 0.8, 0.95), (0.9, 0.9, 1.0), 1.5, 2.5),
    StarType("F-type", (0.95, 0.95, 0.8), (1.0, 1.0, 0.9), 1.2, 1.8),
    StarType("G-type", (1.0, 0.95, 0.7), (1.0, 1.0, 0.8), 0.9, 1.3),
    StarType("K-type", (1.0, 0.6, 0.4), (1.0, 0.8, 0.6), 0.6, 1.0),
    StarType("M-type", (1.0, 0.3, 0.3), (1.0, 0.5, 0.5), 0.4, 0.7),
    StarType("Red Giant", (1.0, 0.4, 0.2), (1.0, 0.6, 0.4), 2.0, 4.0, 2.0),
    StarType("White Dwarf", (0.7, 0.7, 0.9), (0.9, 0.9, 1.0), 0.8, 1.5, 0.3),
    StarType("Brown Dwarf", (0.3, 0.15, 0.1), (0.5, 0.3, 0.2), 0.1, 0.3),
)

# (upper normalized radius, weights per STAR_TYPES entry); hot types favored near the core.
STELLAR_TYPE_WEIGHTS: Tuple[Tuple[float, Tuple[float, ...]], ...] = (
    (0.3, (0.02, 0.08, 0.15, 0.20, 0.25, 0.15, 0.10, 0.03, 0.01, 0.01)),
    (0.7, (0.01, 0.05, 0.10, 0.15, 0.25, 0.20, 0.15, 0.05, 0.03, 0.01)),
    (math.inf, (0.005, 0.02, 0.05, 0.10, 0.20, 0.25, 0.25, 0.08, 0.05, 0.02)),
)

EPSILON = 1e-6
BULGE_WEIGHT = 3.0
SERSIC_INDEX = 2.0
ARM_RADIUS_FLOOR = 0.5
ARM_CLUSTER_FRACTION = 0.7
ARM_CLUSTER_REACH = 0.85
ARM_CLUSTER_LIMIT = 0.92
HALO_RADIUS_POWER = 1.5
HALO_RADIUS_REACH = 0.7
ARM_REJECTION_ATTEMPTS = 8
ARM_EARLY_ACCEPT = 0.7
ARM_EARLY_ACCEPT_PROBABILITY = 0.8
CLUSTER_JITTER_FRACTION = 0.3
STAR_Z_LIMIT = 4.0
DEFAULT_NUM_CLUSTERS = 20
CLUSTER_RADIUS_FRACTION = 0.8
DEFAULT_GRID_SIZE = 128
DEFAULT_NOISE_SCALE = 0.08
FIELD_Z_EXTENT = 0.5

CLUSTER_KEYS: FrozenSet[str] = frozenset(
    {
        "galactic_radius",
        "spiral_arms",
        "base_radius",
        "spiral_pitch_angle",
        "vertical_scale_height",
    }
)

DENSITY_KEYS: FrozenSet[str] = frozenset(
    {
        "galactic_radius",
        "vertical_scale_height",
        "disc_scale_length",
        "spiral_arms",
        "spiral_pitch_angle",
        "base_radius",
        "arm_width",
        "arm_density_multiplier",
        "cluster_influence",
    }
)

STAR_KEYS: FrozenSet[str] = frozenset(
    {
        "num_stars",
        "star_size",
        "core_radius",
        "galactic_radius",
        "spiral_arms",
        "disc_scale_length",
        "bulge_radius",
        "vertical_scale_height",
        "spiral_pitch_angle",
        "cluster_influence",
        "base_radius",
    }
)

BACKGROUND_KEYS: FrozenSet[str] = frozenset(
    {
        "background_star_count",
        "background_star_inner_radius",
        "background_star_outer_radius",
        "background_star_size",
    }
)


@dataclass(frozen=True)
class GalaxyParameters:
    """One generation's worth of galaxy configuration.

    Lengths named ``*_scale_length``, ``*_scale_height`` and ``bulge_radius``
    are fractions of ``galactic_radius``; ``base_radius`` and ``arm_width`` are
    world units. ``spiral_pitch_angle`` is in degrees.
    """

    num_stars: int = 10000
    star_size: float = 0.002
    galactic_radius: float = 4.64
    spiral_arms: int = 2
    core_radius: float = 0.05
    orbital_time_scale: float = 20.9
    disc_scale_length: float = 0.43
    bulge_radius: float = 0.05
    vertical_scale_height: float = 0.04
    spiral_pitch_angle: float = 20.0
    cluster_influence: float = 0.11
    base_radius: float = 0.6
    arm_width: float = 1.0
    arm_density_multiplier: float = 2.3
    density_factor: float = 0.6
    absorption_coefficient: float = 1.1
    scattering_coefficient: float = 2.0
    ray_march_steps: int = 40
    nebula_cool_color: str = "#1f47f2"
    nebula_dust_color: str = "#8c401f"
    nebula_warm_color: str = "#ffdbb3"
    central_light_intensity: float = 2.0
    sun_position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    background_star_count: int = 2000
    background_star_inner_radius: float = 40.0
    background_star_outer_radius: float = 60.0
    background_star_size: float = 0.15

    def validate(self) -> "GalaxyParameters":
        if int(self.spiral_arms) != self.spiral_arms or self.spiral_arms < 1:
            raise ParameterError(f"spiral_arms must be an integer >= 1, got {self.spiral_arms}")
        if self.num_stars < 0:
            raise ParameterError(f"num_stars must be >= 0, got {self.num_stars}")
        if self.galactic_radius <= 0.0:
            raise ParameterError(f"galactic_radius must be positive, got {self.galactic_radius}")
        if not 0.0 <= self.cluster_influence <= 1.0:
            raise ParameterError(f"cluster_influence must be in [0, 1], got {self.cluster_influence}")
        if self.ray_march_steps < 1:
            raise ParameterError(f"ray_march_steps must be >= 1, got {self.ray_march_steps}")
        if self.background_star_outer_radius < self.background_star_inner_radius:
            raise ParameterError("background_star_outer_radius must not be below the inner radius")
        for name in (
            "disc_scale_length",
            "bulge_radius",
            "vertical_scale_height",
            "base_radius",
            "arm_width",
            "density_factor",
            "absorption_coefficient",
            "scattering_coefficient",
        ):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0.0:
                raise ParameterError(f"{name} must be finite and >= 0, got {value}")
        for name in ("nebula_cool_color", "nebula_dust_color", "nebula_warm_color"):
            hex_to_rgb(getattr(self, name))
        return self

    def with_changes(self, **changes: object) -> Tuple["GalaxyParameters", FrozenSet[str]]:
        unknown = set(changes) - set(PARAMETER_NAMES)
        if unknown:
            raise ParameterError(f"Unknown galaxy parameter(s): {sorted(unknown)}")
        changed = frozenset(k for k, v in changes.items() if getattr(self, k) != v)
        updated = replace(self, **changes).validate()
        return updated, changed

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "GalaxyParameters":
        params, _ = cls().with_changes(**dict(values))
        return params

    @property
    def pitch_radians(self) -> float:
        return math.radians(self.spiral_pitch_angle)

    @property
    def light_color(self) -> Tuple[float, float, float]:
        k = self.central_light_intensity
        return (1.0 * k, 0.9 * k, 0.8 * k)


PARAMETER_NAMES: Tuple[str, ...] = tuple(f.name for f in fields(GalaxyParameters))


def coerce_parameter(name: str, raw: str) -> object:
    """Parse a ``--set name=value`` string into the field's type."""
    if name not in PARAMETER_NAMES:
        raise ParameterError(f"Unknown galaxy parameter: {name}")
    default = getattr(GalaxyParameters(), name)
    if isinstance(default, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, tuple):
        parts = [float(p) for p in raw.split(",")]
        if len(parts) != len(default):
            raise ParameterError(f"{name} expects {len(default)} comma separated values")
        return tuple(parts)
    return raw


def hex_to_rgb(color: str) -> Tuple[float, float, float]:
    try:
        r, g, b = ImageColor.getrgb(color)[:3]
    except ValueError as exc:
        raise ParameterError(f"Invalid color {color!r}") from exc
    return (r / 255.0, g / 255.0, b / 255.0)


@dataclass(frozen=True)
class VolumeSettings:
    phase_g: float = 0.35
    phase_g2: float = -0.3
    phase_blend: float = 0.3
    shadow_steps: int = 16
    shadow_strength: float = 1.2
    multi_scatter_strength: float = 0.35
    ambient_density: float = 0.08
    powder_strength: float = 0.6
    shadow_density_scale: float = 1.5
    jitter: bool = True
