from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from galaxy_synth.params import (
    ARM_CLUSTER_FRACTION,
    ARM_CLUSTER_LIMIT,
    ARM_CLUSTER_REACH,
    EPSILON,
    HALO_RADIUS_POWER,
    HALO_RADIUS_REACH,
    ParameterError,
)

CLUSTER_COLUMNS = 6


@dataclass(frozen=True)
class ClusterCenter:
    position: Tuple[float, float, float]
    radius: float
    density: float
    arm_index: int

    @property
    def planar_radius(self) -> float:
        return math.hypot(self.position[0], self.position[1])

    @property
    def is_halo(self) -> bool:
        return self.arm_index < 0


def clusters_per_arm(num_clusters: int, spiral_arms: int) -> int:
    return int(math.floor(num_clusters * ARM_CLUSTER_FRACTION / spiral_arms))


def logistic_height(u: float, scale: float, spread: float, clip: float) -> float:
    # Inverse CDF of the logistic law, i.e. a sech^2 vertical profile.
    u = min(max(u, 0.01), 0.99)
    z = scale * math.log(u / (1.0 - u)) * spread
    limit = scale * clip
    return min(max(z, -limit), limit)


def generate_cluster_centers(
    num_clusters: int,
    galactic_radius: float,
    spiral_arms: int,
    base_radius: float = 0.5,
    spiral_pitch_angle: float = 13.0,
    vertical_scale_height: float = 0.04,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[ClusterCenter, ...]:
    if spiral_arms < 1:
        raise ParameterError(f"Cluster generation needs at least one spiral arm, got {spiral_arms}")
    if num_clusters < 0:
        raise ParameterError(f"num_clusters must be >= 0, got {num_clusters}")
    rng = rng if rng is not None else np.random.default_rng()
    spiral_arms = int(spiral_arms)

    base = max(base_radius, EPSILON)
    b = math.tan(math.radians(spiral_pitch_angle))
    extent = max(galactic_radius, EPSILON)
    v_scale = vertical_scale_height * galactic_radius
    per_arm = clusters_per_arm(num_clusters, spiral_arms)
    clusters: List[ClusterCenter] = []

    for arm in range(spiral_arms):
        arm_base_angle = arm / spiral_arms * 2.0 * math.pi
        for i in range(per_arm):
            progress = (i + 0.5) / per_arm
            radius = base + progress * (galactic_radius * ARM_CLUSTER_REACH - base)
            radius = max(base * 0.5, min(radius, galactic_radius * ARM_CLUSTER_LIMIT))

            angle = arm_base_angle
            if abs(b) > EPSILON and radius > 0.0:
                angle = math.log(radius / base) / b + arm_base_angle

            local_scale = v_scale * (0.6 + 0.4 * radius / extent)
            z = logistic_height(rng.random(), local_scale, 0.25, 1.5)
            jitter = (0.3 + rng.random() * 0.5) * 0.12

            clusters.append(
                ClusterCenter(
                    position=(
                        radius * math.cos(angle) + (rng.random() - 0.5) * jitter * radius,
                        radius * math.sin(angle) + (rng.random() - 0.5) * jitter * radius,
                        z + (rng.random() - 0.5) * local_scale * 0.2,
                    ),
                    radius=(0.15 + rng.random() * 0.25) * (galactic_radius / 10.0),
                    density=0.3 + rng.random() * 0.4,
                    arm_index=arm,
                )
            )

    halo_count = num_clusters - len(clusters)
    for _ in range(halo_count):
        angle = rng.random() * 2.0 * math.pi
        radius = math.pow(rng.random(), HALO_RADIUS_POWER) * galactic_radius * HALO_RADIUS_REACH
        local_scale = v_scale * (1.0 + 0.5 * radius / extent)
        z = logistic_height(rng.random(), local_scale, 0.35, 2.0)
        clusters.append(
            ClusterCenter(
                position=(radius * math.cos(angle), radius * math.sin(angle), z),
                radius=0.3 + rng.random() * 0.5,
                density=0.2 + rng.random() * 0.3,
                arm_index=-1,
            )
        )

    return tuple(clusters)


def cluster_array(clusters: Sequence[ClusterCenter]) -> np.ndarray:
    packed = np.zeros((len(clusters), CLUSTER_COLUMNS), dtype=np.float64)
    for i, c in enumerate(clusters):
        packed[i, :] = [c.position[0], c.position[1], c.position[2], c.radius, c.density, c.arm_index]
    return packed
