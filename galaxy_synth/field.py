from __future__ import annotations

import concurrent.futures
import functools
import logging
import math
import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from numba import njit, prange

from galaxy_synth.clusters import CLUSTER_COLUMNS
from galaxy_synth.density import _nb_arm_factor, _nb_mix, _nb_smoothstep, _nb_spiral_tangent
from galaxy_synth.noise import _nb_fbm_3d
from galaxy_synth.params import (
    DEFAULT_GRID_SIZE,
    DEFAULT_NOISE_SCALE,
    EPSILON,
    FIELD_Z_EXTENT,
    GalaxyParameters,
    ParameterError,
)

LOGGER = logging.getLogger(__name__)

NOISE_OCTAVES = 5
MAX_DENSITY = 8.0
EMPTY_CLUSTER_INFLUENCE = 0.1
EDGE_FADE_START = 0.9
TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True)
class FieldParameters:
    galactic_radius: float = 4.64
    vertical_scale_height: float = 0.04
    disc_scale_length: float = 0.43
    spiral_arms: int = 2
    spiral_pitch_angle: float = 20.0
    base_radius: float = 0.6
    arm_width: float = 1.0
    arm_density_multiplier: float = 2.3

    @classmethod
    def from_galaxy(cls, params: GalaxyParameters) -> "FieldParameters":
        return cls(
            galactic_radius=float(params.galactic_radius),
            vertical_scale_height=float(params.vertical_scale_height),
            disc_scale_length=float(params.disc_scale_length),
            spiral_arms=int(params.spiral_arms),
            spiral_pitch_angle=float(params.spiral_pitch_angle),
            base_radius=float(params.base_radius),
            arm_width=float(params.arm_width),
            arm_density_multiplier=float(params.arm_density_multiplier),
        )

    def box(self) -> Tuple[Tuple[float, float, float], Tuple[float, float, float]]:
        r = self.galactic_radius
        h = r * FIELD_Z_EXTENT
        return (-r, -r, -h), (r, r, h)


@dataclass(frozen=True, eq=False)
class FieldBuildRequest:
    """Everything a worker process needs to voxelize one field."""

    grid_size: int = DEFAULT_GRID_SIZE
    params: FieldParameters = field(default_factory=FieldParameters)
    noise_scale: float = DEFAULT_NOISE_SCALE
    cluster_centers: np.ndarray = field(default_factory=lambda: np.zeros((0, CLUSTER_COLUMNS), dtype=np.float64))


@dataclass(frozen=True, eq=False)
class DensityField:
    """Voxel grid of (density, temperature), indexed ``data[z, y, x, channel]``.

    Voxel ``(i, j, k)`` covers the cell whose center is
    ``box_min + (index + 0.5) * (box_max - box_min) / S`` on each axis.
    """

    data: np.ndarray
    box_min: Tuple[float, float, float]
    box_max: Tuple[float, float, float]

    def __post_init__(self) -> None:
        s = self.data.shape[0]
        if self.data.shape != (s, s, s, 2):
            raise ValueError(f"DensityField data must be (S, S, S, 2), got {self.data.shape}")
        self.data.flags.writeable = False

    @property
    def grid_size(self) -> int:
        return int(self.data.shape[0])

    @property
    def density(self) -> np.ndarray:
        return self.data[..., 0]

    @property
    def temperature(self) -> np.ndarray:
        return self.data[..., 1]

    def to_buffer(self) -> np.ndarray:
        # C order over [z, y, x, c] is exactly (x + y*S + z*S*S) * 2 + c.
        return np.ascontiguousarray(self.data, dtype=np.float32).reshape(-1)

    @classmethod
    def from_buffer(
        cls,
        buffer: np.ndarray,
        grid_size: int,
        box_min: Sequence[float],
        box_max: Sequence[float],
    ) -> "DensityField":
        s = int(grid_size)
        flat = np.asarray(buffer, dtype=np.float32)
        if flat.size != s * s * s * 2:
            raise ValueError(f"Buffer holds {flat.size} values, expected {s * s * s * 2}")
        return cls(
            data=flat.reshape((s, s, s, 2)).copy(),
            box_min=tuple(float(v) for v in box_min),
            box_max=tuple(float(v) for v in box_max),
        )

    def sample(self, point: Sequence[float]) -> Tuple[float, float]:
        d, t = _nb_sample_field(
            self.data,
            self.box_min[0],
            self.box_min[1],
            self.box_min[2],
            self.box_max[0],
            self.box_max[1],
            self.box_max[2],
            float(point[0]),
            float(point[1]),
            float(point[2]),
        )
        return float(d), float(t)

    def stats(self) -> Dict[str, float]:
        density = self.density
        return {
            "grid_size": self.grid_size,
            "voxels": int(density.size),
            "nonzero": int(np.count_nonzero(density > 0.01)),
            "max_density": float(density.max()) if density.size else 0.0,
            "mean_density": float(density.mean()) if density.size else 0.0,
            "mean_temperature": float(self.temperature.mean()) if density.size else 0.0,
        }


@njit(cache=True)
def _nb_cluster_influence(x: float, y: float, z: float, clusters: np.ndarray) -> float:
    n = clusters.shape[0]
    if n == 0:
        return EMPTY_CLUSTER_INFLUENCE
    total = 0.0
    for c in range(n):
        dx = x - clusters[c, 0]
        dy = y - clusters[c, 1]
        dz = z - clusters[c, 2]
        dist = math.sqrt(dx * dx + dy * dy + dz * dz)
        contribution = clusters[c, 4] * math.exp(-dist / max(clusters[c, 3], EPSILON))
        if clusters[c, 5] >= 0.0:
            contribution *= 1.3
        total += contribution
    return min(total, 1.0)


@njit(parallel=True, cache=True)
def _nb_build_field(
    grid_size: int,
    galactic_radius: float,
    vertical_scale_height: float,
    disc_scale_length: float,
    num_arms: int,
    pitch_rad: float,
    base_radius: float,
    arm_width: float,
    arm_multiplier: float,
    noise_scale: float,
    clusters: np.ndarray,
) -> np.ndarray:
    s = grid_size
    out = np.zeros((s, s, s, 2), dtype=np.float32)
    big_r = galactic_radius
    half_z = big_r * FIELD_Z_EXTENT
    cell_xy = 2.0 * big_r / s
    cell_z = 2.0 * half_z / s
    v_scale = max(vertical_scale_height * big_r, EPSILON)
    d_scale = max(disc_scale_length * big_r, EPSILON)

    for k in prange(s):
        z = -half_z + (k + 0.5) * cell_z
        for j in range(s):
            y = -big_r + (j + 0.5) * cell_xy
            for i in range(s):
                x = -big_r + (i + 0.5) * cell_xy
                r = math.sqrt(x * x + y * y)
                if r > big_r:
                    out[k, j, i, 1] = 0.35
                    continue
                theta = math.atan2(y, x)

                arm = _nb_arm_factor(r, theta, num_arms, pitch_rad, base_radius, arm_width)
                tx, ty = _nb_spiral_tangent(theta, pitch_rad)
                wx = (x + tx * 2.0 * arm) * noise_scale
                wy = (y + ty * 2.0 * arm) * noise_scale
                n = _nb_fbm_3d(wx, wy, z * noise_scale, NOISE_OCTAVES, 0.5, 2.0)
                n = min(max(n * 0.5 + 0.5, 0.0), 1.0)

                gain = _nb_mix(1.0, arm_multiplier, arm)
                cluster = _nb_cluster_influence(x, y, z, clusters)
                disc = math.exp(-abs(z) / v_scale) * math.exp(-r / d_scale)
                bulge = 1.0
                if r < big_r * 0.2:
                    bulge = max(1.5 * math.exp(-r / (big_r * 0.08)), 1.0)

                density = n * disc * bulge * gain * (0.4 + cluster * 1.6) * 2.0
                density *= 1.0 - _nb_smoothstep(EDGE_FADE_START * big_r, big_r, r)
                if math.isnan(density):
                    density = 0.0
                density = min(max(density, 0.0), MAX_DENSITY)

                temperature = _nb_mix(0.7, 0.35, arm) + n * 0.15 + cluster * 0.15
                if math.isnan(temperature):
                    temperature = 0.0
                out[k, j, i, 0] = density
                out[k, j, i, 1] = min(max(temperature, 0.0), 1.0)
    return out


@njit(cache=True)
def _nb_sample_field(
    data: np.ndarray,
    bx0: float,
    by0: float,
    bz0: float,
    bx1: float,
    by1: float,
    bz1: float,
    x: float,
    y: float,
    z: float,
) -> Tuple[float, float]:
    if x < bx0 or y < by0 or z < bz0 or x > bx1 or y > by1 or z > bz1:
        return 0.0, 0.0
    s = data.shape[0]
    fx = min(max((x - bx0) / max(bx1 - bx0, EPSILON) * s - 0.5, 0.0), s - 1.0)
    fy = min(max((y - by0) / max(by1 - by0, EPSILON) * s - 0.5, 0.0), s - 1.0)
    fz = min(max((z - bz0) / max(bz1 - bz0, EPSILON) * s - 0.5, 0.0), s - 1.0)
    i0 = int(fx)
    j0 = int(fy)
    k0 = int(fz)
    i1 = min(i0 + 1, s - 1)
    j1 = min(j0 + 1, s - 1)
    k1 = min(k0 + 1, s - 1)
    tx = fx - i0
    ty = fy - j0
    tz = fz - k0

    result = np.zeros(2, dtype=np.float64)
    for c in range(2):
        c00 = data[k0, j0, i0, c] * (1.0 - tx) + data[k0, j0, i1, c] * tx
        c10 = data[k0, j1, i0, c] * (1.0 - tx) + data[k0, j1, i1, c] * tx
        c01 = data[k1, j0, i0, c] * (1.0 - tx) + data[k1, j0, i1, c] * tx
        c11 = data[k1, j1, i0, c] * (1.0 - tx) + data[k1, j1, i1, c] * tx
        c0 = c00 * (1.0 - ty) + c10 * ty
        c1 = c01 * (1.0 - ty) + c11 * ty
        result[c] = c0 * (1.0 - tz) + c1 * tz
    return result[0], result[1]


def build_density_field(request: FieldBuildRequest) -> DensityField:
    p = request.params
    if request.grid_size < 1:
        raise ParameterError(f"grid_size must be >= 1, got {request.grid_size}")
    if p.spiral_arms < 1:
        raise ParameterError(f"spiral_arms must be >= 1, got {p.spiral_arms}")
    clusters = np.ascontiguousarray(request.cluster_centers, dtype=np.float64).reshape((-1, CLUSTER_COLUMNS))

    start = time.perf_counter()
    data = _nb_build_field(
        int(request.grid_size),
        float(p.galactic_radius),
        float(p.vertical_scale_height),
        float(p.disc_scale_length),
        int(p.spiral_arms),
        math.radians(p.spiral_pitch_angle),
        float(p.base_radius),
        float(p.arm_width),
        float(p.arm_density_multiplier),
        float(request.noise_scale),
        clusters,
    )
    box_min, box_max = p.box()
    result = DensityField(data=data, box_min=box_min, box_max=box_max)
    stats = result.stats()
    LOGGER.info(
        "Density field %d^3 built in %.2fs: %d non-zero voxels, max %.3f, avg %.3f",
        request.grid_size,
        time.perf_counter() - start,
        stats["nonzero"],
        stats["max_density"],
        stats["mean_density"],
    )
    return result


def _run_in_child(conn, fn: Callable, args: tuple) -> None:
    try:
        result = fn(*args)
    except Exception as exc:
        conn.send((False, exc))
    else:
        conn.send((True, result))
    finally:
        conn.close()


class SpawnBuildExecutor(concurrent.futures.Executor):
    """Runs one task in its own spawned process.

    ``shutdown(cancel_futures=True)`` terminates a task that is already
    running, which a ``ProcessPoolExecutor`` cannot do. The result comes back
    over a pipe and a collector thread reaps the process.
    """

    def __init__(self, context: Optional[multiprocessing.context.BaseContext] = None) -> None:
        # Spawned workers never inherit the parent's compiled thread pools.
        self._context = context or multiprocessing.get_context("spawn")
        self._lock = threading.Lock()
        self._process: Optional[multiprocessing.process.BaseProcess] = None
        self._collector: Optional[threading.Thread] = None
        self._shutdown = False

    @property
    def process(self) -> Optional[multiprocessing.process.BaseProcess]:
        return self._process

    def submit(self, fn: Callable, /, *args: object, **kwargs: object) -> concurrent.futures.Future:
        if kwargs:
            raise TypeError("SpawnBuildExecutor.submit takes positional arguments only")
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot submit after shutdown")
            if self._process is not None:
                raise RuntimeError("SpawnBuildExecutor runs a single task")
            receiver, sender = self._context.Pipe(duplex=False)
            process = self._context.Process(target=_run_in_child, args=(sender, fn, args), daemon=True)
            try:
                process.start()
            except BaseException:
                receiver.close()
                raise
            finally:
                sender.close()
            future: concurrent.futures.Future = concurrent.futures.Future()
            future.set_running_or_notify_cancel()
            self._process = process
            self._collector = threading.Thread(
                target=self._collect, args=(process, receiver, future), name="field-build-collector", daemon=True
            )
            self._collector.start()
        return future

    @staticmethod
    def _collect(process, receiver, future: concurrent.futures.Future) -> None:
        try:
            ok, payload = receiver.recv()
        except (EOFError, OSError):
            ok, payload = False, None
        finally:
            receiver.close()
        process.join()
        if ok:
            future.set_result(payload)
        elif payload is not None:
            future.set_exception(payload)
        else:
            future.set_exception(RuntimeError(f"Build process exited with code {process.exitcode}"))

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        with self._lock:
            self._shutdown = True
            process = self._process
            collector = self._collector
        if process is None:
            return
        if cancel_futures:
            process.terminate()
            process.join(TERMINATE_TIMEOUT)
            if process.is_alive():
                process.kill()
                process.join()
        if wait and collector is not None and collector is not threading.current_thread():
            collector.join()


def _default_executor() -> concurrent.futures.Executor:
    return SpawnBuildExecutor()


class DensityFieldService:
    """Single-flight background builds of the density field.

    Each ``request_build`` starts a new generation and abandons the previous
    one. Only the result of the newest generation is ever published.
    """

    def __init__(
        self,
        executor_factory: Optional[Callable[[], concurrent.futures.Executor]] = None,
        builder: Callable[[FieldBuildRequest], DensityField] = build_density_field,
    ) -> None:
        self._executor_factory = executor_factory or _default_executor
        self._builder = builder
        self._cond = threading.Condition()
        self._generation = 0
        self._settled_generation = 0
        self._published_generation = 0
        self._executor: Optional[concurrent.futures.Executor] = None
        self._future: Optional[concurrent.futures.Future] = None
        self._field: Optional[DensityField] = None

    @property
    def field(self) -> Optional[DensityField]:
        return self._field

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def published_generation(self) -> int:
        return self._published_generation

    @property
    def building(self) -> bool:
        with self._cond:
            return self._settled_generation < self._generation

    def request_build(self, request: FieldBuildRequest) -> int:
        with self._cond:
            self._generation += 1
            generation = self._generation
            self._cancel_locked()
            try:
                executor = self._executor_factory()
            except (OSError, RuntimeError):
                LOGGER.exception("Could not start density field build %d", generation)
                self._settle_locked(generation)
                return generation
            try:
                future = executor.submit(self._builder, request)
            except (OSError, RuntimeError):
                LOGGER.exception("Could not submit density field build %d", generation)
                executor.shutdown(wait=False)
                self._settle_locked(generation)
                return generation
            self._executor = executor
            self._future = future
        LOGGER.debug("Density field build %d started (grid %d)", generation, request.grid_size)
        future.add_done_callback(functools.partial(self._on_done, generation))
        return generation

    def _cancel_locked(self) -> None:
        if self._future is not None:
            self._future.cancel()
        if self._executor is not None:
            # Process builds are terminated; a running thread build finishes and is dropped by generation.
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._future = None
        self._executor = None

    def _settle_locked(self, generation: int) -> None:
        self._settled_generation = max(self._settled_generation, generation)
        self._cond.notify_all()

    def _on_done(self, generation: int, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            LOGGER.debug("Density field build %d cancelled", generation)
            return
        error = future.exception()
        executor = None
        with self._cond:
            if generation != self._generation:
                LOGGER.debug("Discarding stale density field from build %d", generation)
                return
            if error is None:
                self._field = future.result()
                self._published_generation = generation
                LOGGER.info("Published density field generation %d", generation)
            else:
                LOGGER.error("Density field build %d failed; keeping previous field", generation, exc_info=error)
            executor = self._executor
            self._executor = None
            self._future = None
            self._settle_locked(generation)
        if executor is not None:
            executor.shutdown(wait=False)

    def wait(self, timeout: Optional[float] = None) -> Optional[DensityField]:
        """Block until the newest requested build settles, then return the field."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._settled_generation < self._generation:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0.0:
                    break
                self._cond.wait(remaining)
            return self._field

    def close(self) -> None:
        with self._cond:
            self._generation += 1
            self._cancel_locked()
            self._settle_locked(self._generation)

    def __enter__(self) -> "DensityFieldService":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
