#!/usr/bin/env python
from __future__ import annotations

import argparse
import logging
import sys
import time as wallclock
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from galaxy_synth.camera import GalaxyCamera
from galaxy_synth.noise import SimplexNoise
from galaxy_synth.params import DEFAULT_GRID_SIZE, GalaxyParameters, ParameterError, coerce_parameter
from galaxy_synth.scene import GalaxyScene

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameConfig:
    camera: Tuple[float, float, float]
    target: Tuple[float, float, float]
    up: Tuple[float, float, float]
    fov: float
    exposure: float
    gamma: float
    saturation: float
    width: int
    height: int
    frames: int
    start_time: float
    time_step: float


def tone_map(img: np.ndarray, exposure: float, gamma: float, saturation: float) -> np.ndarray:
    """HDR float RGB to 8-bit: exposure, gamma, then saturation about the channel mean."""
    v = np.clip(np.asarray(img, dtype=np.float64), 0.0, None) * (1.0 / exposure)
    v = np.power(v, gamma)
    center = v.mean(axis=2, keepdims=True)
    v = center - saturation * (center - v)
    return np.clip(v * 255.0, 0.0, 255.0).astype(np.uint8)


def save_png(img: np.ndarray, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(img).save(path)


def parse_overrides(items: Sequence[str]) -> Dict[str, object]:
    overrides: Dict[str, object] = {}
    for item in items:
        name, sep, raw = item.partition("=")
        if not sep:
            raise ParameterError(f"Expected key=value, got {item!r}")
        name = name.strip().replace("-", "_")
        try:
            overrides[name] = coerce_parameter(name, raw.strip())
        except ValueError as exc:
            raise ParameterError(f"Bad value for {name}: {exc}") from exc
    return overrides


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Render procedural spiral galaxy frames to PNG.")
    p.add_argument("--output-dir", type=Path, default=Path("artifacts/frames"))
    p.add_argument("--width", type=int, default=320)
    p.add_argument("--height", type=int, default=240)
    p.add_argument("--frames", type=int, default=1)
    p.add_argument("--start-time", type=float, default=0.0)
    p.add_argument("--time-step", type=float, default=0.5)

    p.add_argument("--camera", nargs=3, type=float, default=[0.0, -9.0, 4.0])
    p.add_argument("--target", nargs=3, type=float, default=[0.0, 0.0, 0.0])
    p.add_argument("--up", nargs=3, type=float, default=[0.0, 0.0, 1.0])
    p.add_argument("--fov", type=float, default=60.0)
    p.add_argument("--exposure", type=float, default=1.0)
    p.add_argument("--gamma", type=float, default=1.0 / 2.2)
    p.add_argument("--saturation", type=float, default=1.0)

    p.add_argument("--grid-size", type=int, default=DEFAULT_GRID_SIZE)
    p.add_argument("--seed", type=int, default=None)
    p.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a galaxy parameter, e.g. --set spiral_arms=3. Can be passed multiple times.",
    )
    p.add_argument("--wait", type=float, default=300.0, help="Seconds to wait for the density field build.")
    p.add_argument("--no-volume", action="store_true", help="Skip the density field and render stars only.")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> FrameConfig:
    if args.width < 1 or args.height < 1:
        raise ParameterError(f"Frame size must be positive, got {args.width}x{args.height}")
    if args.frames < 0:
        raise ParameterError(f"--frames must be >= 0, got {args.frames}")
    if args.exposure <= 0.0:
        raise ParameterError(f"--exposure must be positive, got {args.exposure}")
    return FrameConfig(
        camera=(float(args.camera[0]), float(args.camera[1]), float(args.camera[2])),
        target=(float(args.target[0]), float(args.target[1]), float(args.target[2])),
        up=(float(args.up[0]), float(args.up[1]), float(args.up[2])),
        fov=float(args.fov),
        exposure=float(args.exposure),
        gamma=float(args.gamma),
        saturation=float(args.saturation),
        width=int(args.width),
        height=int(args.height),
        frames=int(args.frames),
        start_time=float(args.start_time),
        time_step=float(args.time_step),
    )


def render_frames(scene: GalaxyScene, cfg: FrameConfig, output_dir: Path) -> List[Path]:
    camera = GalaxyCamera(cfg.camera, cfg.target, cfg.up, cfg.fov, aspect=cfg.width / cfg.height)
    written: List[Path] = []
    for frame in range(cfg.frames):
        t = cfg.start_time + frame * cfg.time_step
        start = wallclock.perf_counter()
        hdr = scene.render_frame(camera, t, cfg.width, cfg.height)
        img = tone_map(hdr, cfg.exposure, cfg.gamma, cfg.saturation)
        out = output_dir / f"frame_{frame:04d}.png"
        save_png(img, out)
        written.append(out)
        print(f"[frame] {frame:04d} t={t:.3f} {wallclock.perf_counter() - start:.2f}s -> {out}")
    return written


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        params = GalaxyParameters.from_mapping(parse_overrides(args.set))
        cfg = config_from_args(args)
    except ParameterError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    LOGGER.debug("Galaxy parameters: %s", params)
    if not args.no_volume:
        # Fills the on-disk kernel cache before the field worker process starts.
        SimplexNoise.warmup()

    with GalaxyScene(params, seed=args.seed, grid_size=args.grid_size, build_field=not args.no_volume) as scene:
        print(
            f"Generated {len(scene.clusters)} clusters, {len(scene.catalog)} stars, "
            f"{len(scene.background)} background stars"
        )
        if not args.no_volume:
            field = scene.field_service.wait(args.wait)
            if field is None:
                print("[WARN] density field not available; rendering stars only")
        written = render_frames(scene, cfg, args.output_dir)

    print(f"Summary: wrote {len(written)} frame(s) to {args.output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
