from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from numba import njit

GM = 4.3e-6
MIN_ORBIT_RADIUS = 0.01


@njit(cache=True)
def _nb_angular_velocity(r: float) -> float:
    rr = max(r, MIN_ORBIT_RADIUS)
    return math.sqrt(GM / (rr * rr * rr))


@njit(cache=True)
def _nb_orbit_angle(r: float, theta0: float, t: float, time_scale: float) -> float:
    return theta0 - _nb_angular_velocity(r) * t * time_scale


@njit(cache=True)
def _nb_corotate(x: float, y: float, z: float, t: float, time_scale: float) -> Tuple[float, float, float]:
    # Undo the orbital drift so a world point maps back onto the t=0 field.
    r = math.sqrt(x * x + y * y)
    angle = _nb_angular_velocity(r) * t * time_scale
    c = math.cos(angle)
    s = math.sin(angle)
    return (x * c - y * s, x * s + y * c, z)


@njit(cache=True)
def _nb_star_positions(
    r: np.ndarray, theta0: np.ndarray, z: np.ndarray, t: float, time_scale: float
) -> np.ndarray:
    out = np.empty((r.shape[0], 3), dtype=np.float64)
    for i in range(r.shape[0]):
        theta = _nb_orbit_angle(r[i], theta0[i], t, time_scale)
        out[i, 0] = r[i] * math.cos(theta)
        out[i, 1] = r[i] * math.sin(theta)
        out[i, 2] = z[i]
    return out


def angular_velocity(r: float) -> float:
    return float(_nb_angular_velocity(r))


def current_theta(r: float, theta0: float, t: float, time_scale: float) -> float:
    """Displayed angle of an orbit at time ``t``; ``theta0`` at ``t == 0``."""
    return float(_nb_orbit_angle(r, theta0, t, time_scale))


def corotate_point(x: float, y: float, z: float, t: float, time_scale: float) -> Tuple[float, float, float]:
    px, py, pz = _nb_corotate(x, y, z, t, time_scale)
    return float(px), float(py), float(pz)


def star_positions(catalog, t: float, time_scale: float) -> np.ndarray:
    """World XYZ of every catalog entry at time ``t`` as an (N, 3) array."""
    return _nb_star_positions(
        np.ascontiguousarray(catalog.r, dtype=np.float64),
        np.ascontiguousarray(catalog.theta0, dtype=np.float64),
        np.ascontiguousarray(catalog.z, dtype=np.float64),
        float(t),
        float(time_scale),
    )
