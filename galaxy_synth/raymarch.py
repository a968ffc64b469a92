from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np
from numba import njit, prange

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.density import _nb_mix, _nb_smoothstep
from galaxy_synth.field import DensityField, _nb_sample_field
from galaxy_synth.orbits import _nb_corotate
from galaxy_synth.params import GalaxyParameters, VolumeSettings, hex_to_rgb

LOGGER = logging.getLogger(__name__)

MAX_STEPS = 128
MAX_SHADOW_STEPS = 64
EMPTY_SPACE_THRESHOLD = 0.001
MIN_TRANSMITTANCE = 0.005
MAX_OPTICAL_DEPTH = 12.0
SHADOW_STEP_GROWTH = 1.15
DERIVATIVE_OFFSET = 0.15
DEPTH_EMPTY = 0.999999
CORE_TINT = np.array([1.0, 0.85, 0.65], dtype=np.float64)

# Slots of the packed shading constants handed to the kernel.
K_DENSITY_FACTOR = 0
K_ABSORPTION = 1
K_SCATTERING = 2
K_PHASE_G = 3
K_PHASE_G2 = 4
K_PHASE_BLEND = 5
K_SHADOW_STRENGTH = 6
K_MULTI_SCATTER = 7
K_AMBIENT = 8
K_POWDER = 9
K_SHADOW_SCALE = 10
K_TIME = 11
K_TIME_SCALE = 12
K_FRAME = 13
K_JITTER = 14
CONSTANT_SLOTS = 15

# Rows of the palette array.
P_COOL = 0
P_DUST = 1
P_WARM = 2
P_LIGHT = 3
P_LIGHT_POSITION = 4


@njit(cache=True)
def _nb_transform(m: np.ndarray, x: float, y: float, z: float, w: float) -> Tuple[float, float, float, float]:
    return (
        m[0, 0] * x + m[0, 1] * y + m[0, 2] * z + m[0, 3] * w,
        m[1, 0] * x + m[1, 1] * y + m[1, 2] * z + m[1, 3] * w,
        m[2, 0] * x + m[2, 1] * y + m[2, 2] * z + m[2, 3] * w,
        m[3, 0] * x + m[3, 1] * y + m[3, 2] * z + m[3, 3] * w,
    )


@njit(cache=True)
def _nb_slab(o: float, d: float, lo: float, hi: float, t_enter: float, t_exit: float) -> Tuple[bool, float, float]:
    if abs(d) < 1e-12:
        return o >= lo and o <= hi, t_enter, t_exit
    ta = (lo - o) / d
    tb = (hi - o) / d
    if ta > tb:
        ta, tb = tb, ta
    return True, max(t_enter, ta), min(t_exit, tb)


@njit(cache=True)
def _nb_intersect_box(
    ox: float, oy: float, oz: float, dx: float, dy: float, dz: float, box: np.ndarray
) -> Tuple[bool, float, float]:
    t0 = -np.inf
    t1 = np.inf
    ok, t0, t1 = _nb_slab(ox, dx, box[0], box[3], t0, t1)
    if not ok:
        return False, 0.0, 0.0
    ok, t0, t1 = _nb_slab(oy, dy, box[1], box[4], t0, t1)
    if not ok:
        return False, 0.0, 0.0
    ok, t0, t1 = _nb_slab(oz, dz, box[2], box[5], t0, t1)
    if not ok:
        return False, 0.0, 0.0
    return t1 > max(0.0, t0), t0, t1


@njit(cache=True)
def _nb_dither(px: float, py: float, frame: float) -> float:
    # Interleaved gradient noise; stands in for a tiled blue-noise texture.
    x = px + 5.588238 * frame
    y = py + 5.588238 * frame * 7.0
    v = 0.06711056 * x + 0.00583715 * y
    v = 52.9829189 * (v - math.floor(v))
    return v - math.floor(v)


@njit(cache=True)
def _nb_henyey_greenstein(cos_theta: float, g: float) -> float:
    g2 = g * g
    denom = max(1.0 + g2 - 2.0 * g * cos_theta, 1e-6)
    return (1.0 - g2) / (4.0 * math.pi * math.pow(denom, 1.5))


@njit(cache=True)
def _nb_dual_lobe_phase(cos_theta: float, g1: float, g2: float, blend: float) -> float:
    return _nb_mix(_nb_henyey_greenstein(cos_theta, g1), _nb_henyey_greenstein(cos_theta, g2), blend)


@njit(cache=True)
def _nb_beers_powder(sigma: float, distance: float, powder_strength: float) -> float:
    # Used as the per-step transmittance; with strong powder even thin gas turns opaque within a few steps.
    beer = math.exp(-sigma * distance)
    powder = 1.0 - math.exp(-sigma * distance * 2.0)
    return beer * _nb_mix(1.0, powder, powder_strength)


@njit(cache=True)
def _nb_absorption(k: np.ndarray, density: float, temperature: float) -> float:
    dust = 1.0 - min(max(temperature, 0.0), 1.0)
    return k[K_ABSORPTION] * density * _nb_mix(0.45, 1.65, dust)


@njit(cache=True)
def _nb_scattering(k: np.ndarray, density: float, temperature: float) -> float:
    gas = min(max(temperature, 0.0), 1.0)
    return k[K_SCATTERING] * density * _nb_mix(0.55, 1.15, gas)


@njit(cache=True)
def _nb_emission(density: float, temperature: float) -> float:
    hot = _nb_smoothstep(0.35, 0.9, temperature)
    mid = _nb_smoothstep(0.2, 0.55, temperature) * (1.0 - hot * 0.6)
    return (hot * 0.9 + mid * 0.45) * density


@njit(cache=True)
def _nb_core_falloff(x: float, y: float, z: float) -> float:
    r2 = x * x + y * y
    return 1.0 / (1.0 + 0.04 * r2) * math.exp(-abs(z) * 0.3)


@njit(cache=True)
def _nb_sample_medium(
    data: np.ndarray, box: np.ndarray, k: np.ndarray, x: float, y: float, z: float
) -> Tuple[float, float]:
    rx, ry, rz = _nb_corotate(x, y, z, k[K_TIME], k[K_TIME_SCALE])
    d, t = _nb_sample_field(data, box[0], box[1], box[2], box[3], box[4], box[5], rx, ry, rz)
    d = min(max(d * k[K_DENSITY_FACTOR], 0.0), 1000.0)
    t = min(max(t, 0.0), 1.0)
    if math.isnan(d):
        d = 0.0
    if math.isnan(t):
        t = 0.0
    return d, t


@njit(cache=True)
def _nb_light_march(
    data: np.ndarray,
    box: np.ndarray,
    k: np.ndarray,
    x: float,
    y: float,
    z: float,
    lx: float,
    ly: float,
    lz: float,
    light_distance: float,
    shadow_steps: int,
    jitter: float,
) -> Tuple[float, float]:
    hit, t0, t1 = _nb_intersect_box(x, y, z, lx, ly, lz, box)
    if not hit:
        return 1.0, 0.0
    t_start = max(0.0, t0)
    t_end = min(t1, light_distance)
    if t_end <= t_start:
        return 1.0, 0.0

    steps = min(shadow_steps, MAX_SHADOW_STEPS)
    base_step = (t_end - t_start) / max(steps, 1) * 0.5
    t = t_start + jitter * base_step * 0.5
    optical_depth = 0.0
    multi = 0.0
    growth = 1.0
    for _ in range(steps):
        if t >= t_end or optical_depth > MAX_OPTICAL_DEPTH:
            break
        dt = base_step * growth
        growth *= SHADOW_STEP_GROWTH
        d, temp = _nb_sample_medium(data, box, k, x + lx * t, y + ly * t, z + lz * t)
        d *= k[K_SHADOW_SCALE]
        if d > EMPTY_SPACE_THRESHOLD:
            extinction = _nb_absorption(k, d, temp) + _nb_scattering(k, d, temp)
            optical_depth += extinction * dt
            multi += math.exp(-optical_depth) * d * dt * 0.5
        t += dt
    return math.exp(-optical_depth * k[K_SHADOW_STRENGTH]), multi


@njit(cache=True)
def _nb_nebula_color(palette: np.ndarray, temperature: float, c: int) -> float:
    if temperature < 0.35:
        return _nb_mix(palette[P_DUST, c], palette[P_COOL, c], _nb_smoothstep(0.05, 0.35, temperature))
    return _nb_mix(palette[P_COOL, c], palette[P_WARM, c], _nb_smoothstep(0.35, 1.0, temperature))


@njit(cache=True)
def _nb_march_pixel(
    out: np.ndarray,
    scene: np.ndarray,
    depth: np.ndarray,
    i: int,
    j: int,
    inv_proj: np.ndarray,
    inv_view: np.ndarray,
    eye: np.ndarray,
    data: np.ndarray,
    box: np.ndarray,
    k: np.ndarray,
    palette: np.ndarray,
    steps: int,
    shadow_steps: int,
) -> None:
    height = scene.shape[0]
    width = scene.shape[1]
    u = (i + 0.5) / width
    v = 1.0 - (j + 0.5) / height
    sr = float(scene[j, i, 0])
    sg = float(scene[j, i, 1])
    sb = float(scene[j, i, 2])

    scene_t = np.inf
    d_sample = depth[j, i]
    if d_sample < DEPTH_EMPTY:
        vx, vy, vz, vw = _nb_transform(inv_proj, u * 2.0 - 1.0, v * 2.0 - 1.0, d_sample * 2.0 - 1.0, 1.0)
        vw = max(vw, 1e-6)
        scene_t = math.sqrt((vx / vw) ** 2 + (vy / vw) ** 2 + (vz / vw) ** 2)

    vx, vy, vz, vw = _nb_transform(inv_proj, u * 2.0 - 1.0, v * 2.0 - 1.0, 1.0, 1.0)
    dx, dy, dz, _ = _nb_transform(inv_view, vx / vw, vy / vw, vz / vw, 0.0)
    norm = math.sqrt(dx * dx + dy * dy + dz * dz)
    if norm <= 0.0:
        return
    dx /= norm
    dy /= norm
    dz /= norm
    ox = eye[0]
    oy = eye[1]
    oz = eye[2]

    hit, t_near, t_far = _nb_intersect_box(ox, oy, oz, dx, dy, dz, box)
    if not hit:
        return
    t_near = max(t_near, 0.0)
    # Opaque geometry in front of the volume hides it completely.
    if scene_t <= t_near:
        return
    t_end = min(t_far, scene_t)
    if t_end <= t_near:
        return

    n_steps = min(steps, MAX_STEPS)
    step = (t_far - t_near) / max(n_steps, 1)
    jitter = 0.0
    if k[K_JITTER] > 0.0:
        jitter = _nb_dither(float(i), float(j), k[K_FRAME])
    t = t_near + jitter * step

    lpx = palette[P_LIGHT_POSITION, 0]
    lpy = palette[P_LIGHT_POSITION, 1]
    lpz = palette[P_LIGHT_POSITION, 2]
    luma = 0.2126 * sr + 0.7152 * sg + 0.0722 * sb

    acc_r = 0.0
    acc_g = 0.0
    acc_b = 0.0
    transmittance = 1.0
    for _ in range(n_steps):
        if t >= t_end or transmittance < MIN_TRANSMITTANCE:
            break
        px = ox + dx * t
        py = oy + dy * t
        pz = oz + dz * t
        density, temperature = _nb_sample_medium(data, box, k, px, py, pz)
        if density <= EMPTY_SPACE_THRESHOLD:
            t += step
            continue

        dt = step * min(max(1.0 / (density * 2.0 + 1.0), 0.3), 1.0)
        dt = min(dt, t_end - t)
        sigma_a = _nb_absorption(k, density, temperature)
        sigma_s = _nb_scattering(k, density, temperature)
        sigma_t = sigma_a + sigma_s
        segment = _nb_beers_powder(sigma_t, dt, k[K_POWDER])

        lx = lpx - px
        ly = lpy - py
        lz = lpz - pz
        light_distance = math.sqrt(lx * lx + ly * ly + lz * lz)
        inv_l = 1.0 / max(light_distance, 1e-6)
        lx *= inv_l
        ly *= inv_l
        lz *= inv_l
        falloff = _nb_core_falloff(px, py, pz)

        shadow_jitter = 0.0
        if k[K_JITTER] > 0.0:
            shadow_jitter = _nb_dither(i + px * 37.0, j + py * 37.0, k[K_FRAME])
        shadow, multi = _nb_light_march(
            data, box, k, px, py, pz, lx, ly, lz, light_distance, shadow_steps, shadow_jitter
        )

        ahead, _ = _nb_sample_medium(
            data, box, k, px + lx * DERIVATIVE_OFFSET, py + ly * DERIVATIVE_OFFSET, pz + lz * DERIVATIVE_OFFSET
        )
        derivative = min(max((density - ahead) / DERIVATIVE_OFFSET, -2.0), 2.0)
        diffuse = min(max(0.5 + derivative * 0.4, 0.1), 1.0)

        phase = _nb_dual_lobe_phase(dx * lx + dy * ly + dz * lz, k[K_PHASE_G], k[K_PHASE_G2], k[K_PHASE_BLEND])
        scatter_amount = (1.0 - segment) * (sigma_s / max(sigma_t, 1e-6))
        star_influence = _nb_smoothstep(0.04, 0.55, luma) * (1.0 - min(max(density * 0.2, 0.0), 0.85)) * 0.5
        emission_amount = _nb_emission(density, temperature) * 0.1
        core = math.exp(-math.sqrt(px * px + py * py) * 3.0) * _nb_smoothstep(0.5, 1.0, temperature) * density * 0.08
        ambient = k[K_AMBIENT] * density * dt * (1.0 - shadow * 0.7)

        for c in range(3):
            base = _nb_nebula_color(palette, temperature, c)
            tint = math.pow(max(float(scene[j, i, c]), 0.0), 1.25)
            color = _nb_mix(base, tint, star_influence)
            light = palette[P_LIGHT, c] * falloff
            core_c = core * CORE_TINT[c]
            emitted = (core_c + color * emission_amount) * transmittance * dt
            single = light * shadow * color * phase * scatter_amount * diffuse * 2.5
            multiple = light * color * multi * k[K_MULTI_SCATTER]
            lit = (single + multiple + color * ambient) * transmittance
            if c == 0:
                acc_r += emitted + lit
            elif c == 1:
                acc_g += emitted + lit
            else:
                acc_b += emitted + lit

        transmittance *= segment
        t += dt

    out[j, i, 0] = sr * transmittance + acc_r
    out[j, i, 1] = sg * transmittance + acc_g
    out[j, i, 2] = sb * transmittance + acc_b


@njit(parallel=True, cache=True)
def _nb_raymarch(
    scene: np.ndarray,
    depth: np.ndarray,
    inv_proj: np.ndarray,
    inv_view: np.ndarray,
    eye: np.ndarray,
    data: np.ndarray,
    box: np.ndarray,
    k: np.ndarray,
    palette: np.ndarray,
    steps: int,
    shadow_steps: int,
) -> np.ndarray:
    out = scene.copy()
    for j in prange(scene.shape[0]):
        for i in range(scene.shape[1]):
            _nb_march_pixel(out, scene, depth, i, j, inv_proj, inv_view, eye, data, box, k, palette, steps, shadow_steps)
    return out


class VolumetricRenderer:
    """Composites the published density field over an opaque scene buffer."""

    def __init__(
        self,
        params: GalaxyParameters,
        settings: Optional[VolumeSettings] = None,
        field: Optional[DensityField] = None,
    ) -> None:
        self.settings = settings or VolumeSettings()
        self.field = field
        self.update_parameters(params)

    def update_parameters(self, params: GalaxyParameters) -> None:
        self.params = params
        self._palette = np.array(
            [
                hex_to_rgb(params.nebula_cool_color),
                hex_to_rgb(params.nebula_dust_color),
                hex_to_rgb(params.nebula_warm_color),
                params.light_color,
                params.sun_position,
            ],
            dtype=np.float64,
        )

    def _constants(self, time: float) -> np.ndarray:
        p = self.params
        s = self.settings
        k = np.zeros(CONSTANT_SLOTS, dtype=np.float64)
        k[K_DENSITY_FACTOR] = p.density_factor
        k[K_ABSORPTION] = p.absorption_coefficient
        k[K_SCATTERING] = p.scattering_coefficient
        k[K_PHASE_G] = s.phase_g
        k[K_PHASE_G2] = s.phase_g2
        k[K_PHASE_BLEND] = s.phase_blend
        k[K_SHADOW_STRENGTH] = s.shadow_strength
        k[K_MULTI_SCATTER] = s.multi_scatter_strength
        k[K_AMBIENT] = s.ambient_density
        k[K_POWDER] = s.powder_strength
        k[K_SHADOW_SCALE] = s.shadow_density_scale
        k[K_TIME] = time
        k[K_TIME_SCALE] = p.orbital_time_scale
        k[K_FRAME] = math.floor(time * 60.0)
        k[K_JITTER] = 1.0 if s.jitter else 0.0
        return k

    def render(
        self,
        scene_color: np.ndarray,
        scene_depth: np.ndarray,
        camera: GalaxyCamera,
        time: float,
        field: Optional[DensityField] = None,
    ) -> np.ndarray:
        field = field if field is not None else self.field
        scene = np.ascontiguousarray(scene_color, dtype=np.float32)
        if field is None:
            return scene.copy()
        depth = np.ascontiguousarray(scene_depth, dtype=np.float32)
        if depth.shape != scene.shape[:2]:
            raise ValueError(f"Depth buffer {depth.shape} does not match color buffer {scene.shape[:2]}")
        box = np.array(tuple(field.box_min) + tuple(field.box_max), dtype=np.float64)
        return _nb_raymarch(
            scene,
            depth,
            np.ascontiguousarray(camera.inverse_projection, dtype=np.float64),
            np.ascontiguousarray(camera.inverse_view, dtype=np.float64),
            camera.eye,
            field.data,
            box,
            self._constants(float(time)),
            self._palette,
            int(self.params.ray_march_steps),
            int(self.settings.shadow_steps),
        )
