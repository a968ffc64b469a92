from __future__ import annotations

import math

import numpy as np
from numba import njit

from galaxy_synth.params import (
    ARM_RADIUS_FLOOR,
    BULGE_WEIGHT,
    EPSILON,
    SERSIC_INDEX,
    GalaxyParameters,
)

TWO_PI = 2.0 * math.pi


@njit(cache=True)
def _nb_finite_or_zero(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


@njit(cache=True)
def _nb_mix(a: float, b: float, t: float) -> float:
    return a * (1.0 - t) + b * t


@njit(cache=True)
def _nb_smoothstep(edge0: float, edge1: float, x: float) -> float:
    if edge1 == edge0:
        return 1.0 if x >= edge1 else 0.0
    t = min(max((x - edge0) / (edge1 - edge0), 0.0), 1.0)
    return t * t * (3.0 - 2.0 * t)


@njit(cache=True)
def _nb_wrap_angle(angle: float) -> float:
    return (angle + math.pi) % TWO_PI - math.pi


@njit(cache=True)
def _nb_disc_term(r: float, scale_length: float) -> float:
    return math.exp(-r / max(scale_length, EPSILON))


@njit(cache=True)
def _nb_sersic(r: float, effective_radius: float, index: float) -> float:
    bn = 2.0 * index - 1.0 / 3.0
    x = r / max(effective_radius, EPSILON)
    return math.exp(-bn * (math.pow(x, 1.0 / index) - 1.0))


@njit(cache=True)
def _nb_bulge_term(r: float, bulge_extent: float) -> float:
    if r >= bulge_extent:
        return 0.0
    return _nb_sersic(r, bulge_extent * 0.5, SERSIC_INDEX)


@njit(cache=True)
def _nb_arm_centerline_theta(
    r: float, arm: int, num_arms: int, pitch_rad: float, base_radius: float
) -> float:
    base = max(base_radius, EPSILON)
    offset = arm * TWO_PI / max(num_arms, 1)
    b = math.tan(pitch_rad)
    if abs(b) < EPSILON:
        return offset
    r_safe = max(r, base * ARM_RADIUS_FLOOR)
    return math.log(r_safe / base) / b + offset


@njit(cache=True)
def _nb_distance_to_nearest_arm(
    r: float, theta: float, num_arms: int, pitch_rad: float, base_radius: float
) -> float:
    r_safe = max(r, max(base_radius, EPSILON) * ARM_RADIUS_FLOOR)
    best = np.inf
    for arm in range(num_arms):
        arm_theta = _nb_arm_centerline_theta(r, arm, num_arms, pitch_rad, base_radius)
        d = abs(r_safe * _nb_wrap_angle(theta - arm_theta))
        if d < best:
            best = d
    return best


@njit(cache=True)
def _nb_arm_factor(
    r: float,
    theta: float,
    num_arms: int,
    pitch_rad: float,
    base_radius: float,
    arm_width: float,
) -> float:
    if num_arms < 1:
        return 0.0
    d = _nb_distance_to_nearest_arm(r, theta, num_arms, pitch_rad, base_radius)
    width = max(arm_width, EPSILON)
    return _nb_finite_or_zero(math.exp(-(d * d) / (2.0 * width * width)))


@njit(cache=True)
def _nb_surface_density(
    r: float,
    theta: float,
    galactic_radius: float,
    disc_scale_length: float,
    bulge_radius: float,
    num_arms: int,
    pitch_rad: float,
    base_radius: float,
    arm_width: float,
    arm_multiplier: float,
) -> float:
    disc = _nb_disc_term(r, disc_scale_length * galactic_radius)
    bulge = _nb_bulge_term(r, bulge_radius * galactic_radius)
    arm = _nb_arm_factor(r, theta, num_arms, pitch_rad, base_radius, arm_width)
    # Peak on-arm gain rather than 1 + mult * af, so a multiplier of 1 means no arm boost.
    value = (disc + BULGE_WEIGHT * bulge) * _nb_mix(1.0, arm_multiplier, arm)
    return max(_nb_finite_or_zero(value), 0.0)


@njit(cache=True)
def _nb_spiral_tangent(theta: float, pitch_rad: float) -> tuple:
    # Log spirals cross every circle at the pitch angle.
    sp = math.sin(pitch_rad)
    cp = math.cos(pitch_rad)
    st = math.sin(theta)
    ct = math.cos(theta)
    return (sp * ct - cp * st, sp * st + cp * ct)


def _arm_args(params: GalaxyParameters) -> tuple:
    return (
        int(params.spiral_arms),
        params.pitch_radians,
        float(params.base_radius),
    )


def wrap_angle(angle: float) -> float:
    return float(_nb_wrap_angle(angle))


def vertical_density(z: float, scale_height: float) -> float:
    return math.exp(-abs(z) / max(scale_height, EPSILON))


def disc_term(r: float, params: GalaxyParameters) -> float:
    return float(_nb_disc_term(r, params.disc_scale_length * params.galactic_radius))


def bulge_term(r: float, params: GalaxyParameters) -> float:
    return float(_nb_bulge_term(r, params.bulge_radius * params.galactic_radius))


def arm_centerline_theta(r: float, arm: int, params: GalaxyParameters) -> float:
    arms, pitch, base = _arm_args(params)
    return float(_nb_arm_centerline_theta(r, arm, arms, pitch, base))


def spiral_arm_radius(theta: float, arm: int, params: GalaxyParameters) -> float:
    """Radius at which ``arm`` passes through polar angle ``theta``."""
    b = math.tan(params.pitch_radians)
    offset = arm * 2.0 * math.pi / params.spiral_arms
    return params.base_radius * math.exp(b * (theta - offset))


def distance_to_nearest_arm(r: float, theta: float, params: GalaxyParameters) -> float:
    arms, pitch, base = _arm_args(params)
    return float(_nb_distance_to_nearest_arm(r, theta, arms, pitch, base))


def arm_factor(r: float, theta: float, params: GalaxyParameters) -> float:
    arms, pitch, base = _arm_args(params)
    return float(_nb_arm_factor(r, theta, arms, pitch, base, params.arm_width))


def surface_density(r: float, theta: float, params: GalaxyParameters) -> float:
    arms, pitch, base = _arm_args(params)
    return float(
        _nb_surface_density(
            r,
            theta,
            params.galactic_radius,
            params.disc_scale_length,
            params.bulge_radius,
            arms,
            pitch,
            base,
            params.arm_width,
            params.arm_density_multiplier,
        )
    )


@njit(cache=True)
def _nb_radial_cdf(
    radius_samples: int,
    theta_samples: int,
    galactic_radius: float,
    disc_scale_length: float,
    bulge_radius: float,
    num_arms: int,
    pitch_rad: float,
    base_radius: float,
    arm_width: float,
    arm_multiplier: float,
) -> np.ndarray:
    cdf = np.zeros(radius_samples, dtype=np.float64)
    total = 0.0
    for i in range(radius_samples):
        r = i / radius_samples * galactic_radius
        avg = 0.0
        for j in range(theta_samples):
            theta = j / theta_samples * TWO_PI
            avg += _nb_surface_density(
                r,
                theta,
                galactic_radius,
                disc_scale_length,
                bulge_radius,
                num_arms,
                pitch_rad,
                base_radius,
                arm_width,
                arm_multiplier,
            )
        # Annulus mass, not surface density: weight by circumference.
        total += max(avg / theta_samples * r, 0.0)
        cdf[i] = total
    if total <= 0.0:
        for i in range(radius_samples):
            cdf[i] = (i + 1.0) / radius_samples
        return cdf
    for i in range(radius_samples):
        cdf[i] /= total
    cdf[radius_samples - 1] = 1.0
    return cdf


def radial_cdf(
    params: GalaxyParameters,
    radius_samples: int = 1000,
    theta_samples: int = 32,
) -> np.ndarray:
    arms, pitch, base = _arm_args(params)
    return _nb_radial_cdf(
        int(radius_samples),
        int(theta_samples),
        params.galactic_radius,
        params.disc_scale_length,
        params.bulge_radius,
        arms,
        pitch,
        base,
        params.arm_width,
        params.arm_density_multiplier,
    )
