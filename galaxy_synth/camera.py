from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from PySide6.QtGui import QMatrix4x4, QVector3D


def _vec3(v: Sequence[float]) -> QVector3D:
    return QVector3D(float(v[0]), float(v[1]), float(v[2]))


def _to_numpy(m: QMatrix4x4) -> np.ndarray:
    # copyDataTo() is row-major, so the result multiplies column vectors.
    return np.array(m.copyDataTo(), dtype=np.float64).reshape((4, 4))


def _normalize(v: np.ndarray) -> np.ndarray:
    return v / np.maximum(np.linalg.norm(v), 1e-8)


class GalaxyCamera:
    def __init__(
        self,
        position: Sequence[float] = (0.0, -9.0, 4.0),
        target: Sequence[float] = (0.0, 0.0, 0.0),
        up: Sequence[float] = (0.0, 0.0, 1.0),
        fov: float = 60.0,
        aspect: float = 1.0,
        near: float = 0.05,
        far: float = 200.0,
    ) -> None:
        if aspect <= 0.0:
            raise ValueError(f"Camera aspect must be positive, got {aspect}")
        if not 0.0 < near < far:
            raise ValueError(f"Camera needs 0 < near < far, got near={near} far={far}")
        self.position = _vec3(position)
        self.target = _vec3(target)
        self.up = _vec3(up)
        self.fov = float(fov)
        self.aspect = float(aspect)
        self.near = float(near)
        self.far = float(far)
        self.setup_matrices()

    def setup_matrices(self) -> None:
        projection = QMatrix4x4()
        projection.setToIdentity()
        projection.perspective(self.fov, self.aspect, self.near, self.far)

        view = QMatrix4x4()
        view.setToIdentity()
        view.lookAt(self.position, self.target, self.up)

        inv_proj, ok = projection.inverted()
        if not ok:
            raise RuntimeError("Failed to invert projection matrix")
        inv_view, ok = view.inverted()
        if not ok:
            raise RuntimeError("Failed to invert view matrix")

        self.view = _to_numpy(view)
        self.projection = _to_numpy(projection)
        self.view_projection = self.projection @ self.view
        self.inverse_projection = _to_numpy(inv_proj)
        self.inverse_view = _to_numpy(inv_view)

    @property
    def eye(self) -> np.ndarray:
        return np.array([self.position.x(), self.position.y(), self.position.z()], dtype=np.float64)

    def pixel_ray(self, x: float, y: float, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
        """World-space origin and unit direction through the center of pixel (x, y)."""
        u = (x + 0.5) / width
        v = 1.0 - (y + 0.5) / height
        clip = np.array([u * 2.0 - 1.0, v * 2.0 - 1.0, 1.0, 1.0], dtype=np.float64)
        view_pos = self.inverse_projection @ clip
        view_dir = view_pos[:3] / view_pos[3]
        world_dir = self.inverse_view @ np.array([view_dir[0], view_dir[1], view_dir[2], 0.0])
        return self.eye, _normalize(world_dir[:3])

    def project(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Clip (N, 3) world points; returns NDC xyz and clip-space w."""
        pts = np.asarray(points, dtype=np.float64).reshape((-1, 3))
        homo = np.concatenate([pts, np.ones((pts.shape[0], 1))], axis=1)
        clip = homo @ self.view_projection.T
        w = clip[:, 3]
        safe_w = np.where(np.abs(w) < 1e-12, 1e-12, w)
        return clip[:, :3] / safe_w[:, None], w
