r"""
Camera geometry and a CPU depth renderer.

Projection model
----------------
A world point :math:`w` is mapped to the optical camera frame
(:math:`x` right, :math:`y` down, :math:`z` forward) by the inverse of the
camera-to-world pose :math:`T_{wc} = (R, t)`,

.. math:: p = R^\top (w - t),

and projected with the pinhole intrinsics

.. math::

    u = \operatorname{round}\!\left(f_x \frac{p_x}{p_z} + c_x\right), \qquad
    v = \operatorname{round}\!\left(f_y \frac{p_y}{p_z} + c_y\right).

The renderer keeps the minimum :math:`p_z` per pixel (z-buffer) and stores it as
``uint16`` millimetres; pixels without a surface hold :data:`NO_DEPTH`.
Back-projection inverts the same model,

.. math:: p = d \left(\frac{u - c_x}{f_x},\; \frac{v - c_y}{f_y},\; 1\right), \qquad w = R p + t.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from perch_search.config import CameraIntrinsics
from perch_search.errors import RenderFailure
from perch_search.models import ObjectModel, transform_points
from perch_search.state import NO_DEPTH, Placement

logger = logging.getLogger(__name__)

__all__ = ["Camera", "DepthRenderer", "backproject", "depth_to_cloud", "covered"]


@dataclass(slots=True)
class Camera:
    """Intrinsics plus a 4x4 camera-to-world pose (optical frame convention)."""
    intrinsics: CameraIntrinsics
    pose: np.ndarray = field(default_factory=lambda: np.eye(4))

    def __post_init__(self) -> None:
        T = np.asarray(self.pose, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"camera pose must be 4x4, got {T.shape}")
        self.pose = T

    @classmethod
    def look_at(
        cls,
        eye: Sequence[float],
        target: Sequence[float] = (0.0, 0.0, 0.0),
        intrinsics: Optional[CameraIntrinsics] = None,
        up: Sequence[float] = (0.0, 0.0, 1.0),
    ) -> "Camera":
        r"""
        Camera at ``eye`` whose optical axis points at ``target``.

        The image ``x`` axis is :math:`\hat f \times \hat u` and ``y`` is
        :math:`\hat f \times \hat x`. When the view direction is (nearly)
        parallel to ``up``, world :math:`+y` is used as the up hint.
        """
        eye_ = np.asarray(eye, dtype=np.float64)
        f = np.asarray(target, dtype=np.float64) - eye_
        f /= np.linalg.norm(f)
        up_ = np.asarray(up, dtype=np.float64)
        if abs(float(np.dot(f, up_ / np.linalg.norm(up_)))) > 0.99:
            up_ = np.array([0.0, 1.0, 0.0])
        x = np.cross(f, up_)
        x /= np.linalg.norm(x)
        y = np.cross(f, x)
        T = np.eye(4)
        T[:3, 0], T[:3, 1], T[:3, 2], T[:3, 3] = x, y, f, eye_
        return cls(intrinsics or CameraIntrinsics(), T)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.intrinsics.height, self.intrinsics.width)

    def world_to_camera(self, points: np.ndarray) -> np.ndarray:
        R, t = self.pose[:3, :3], self.pose[:3, 3]
        return (points - t) @ R

    def camera_to_world(self, points: np.ndarray) -> np.ndarray:
        R, t = self.pose[:3, :3], self.pose[:3, 3]
        return points @ R.T + t


@njit(cache=True)
def _zbuffer_splat(u, v, z, radius, depth):
    height, width = depth.shape
    for i in range(z.shape[0]):
        zi = z[i]
        for dv in range(-radius, radius + 1):
            vv = v[i] + dv
            if vv < 0 or vv >= height:
                continue
            for du in range(-radius, radius + 1):
                uu = u[i] + du
                if uu < 0 or uu >= width:
                    continue
                if zi < depth[vv, uu]:
                    depth[vv, uu] = zi


def covered(depth: np.ndarray) -> np.ndarray:
    """Boolean mask of pixels holding a return."""
    return depth < NO_DEPTH


class DepthRenderer:
    r"""
    Process-local z-buffer renderer over surface-sampled models.

    Every call to :meth:`render` runs a complete clear → add placements →
    rasterize → read back cycle and returns a fresh ``uint16`` depth image, so
    repeated use leaves nothing behind. One instance is owned by one process;
    it is not re-entrant.

    Parameters
    ----------
    models : sequence of ObjectModel
        Library indexed by model id.
    camera : Camera, optional
        May be supplied later through :meth:`set_camera`.
    table_height : float
        Support plane height added to every placement.
    splat_radius : int
        Each projected point fills a ``(2r+1) x (2r+1)`` pixel square.

    Raises
    ------
    RenderFailure
        From :meth:`render` when the camera is unset, a model id is unknown, or
        a render is issued while another one is in progress.
    """

    def __init__(
        self,
        models: Sequence[ObjectModel],
        camera: Optional[Camera] = None,
        *,
        table_height: float = 0.0,
        splat_radius: int = 1,
    ) -> None:
        self.models = list(models)
        self.camera = camera
        self.table_height = float(table_height)
        self.splat_radius = int(splat_radius)
        self.num_renders = 0
        self._busy = False

    def set_camera(self, camera: Camera) -> None:
        self.camera = camera

    def render(self, placements: Iterable[Placement]) -> np.ndarray:
        """Depth image (uint16 mm) of the given placements; empty input gives all background."""
        if self.camera is None:
            raise RenderFailure("render called before a camera was configured")
        if self._busy:
            raise RenderFailure("renderer is not re-entrant")
        self._busy = True
        try:
            return self._render(list(placements))
        finally:
            self._busy = False

    def _render(self, placements: Sequence[Placement]) -> np.ndarray:
        cam = self.camera
        K = cam.intrinsics
        zbuf = np.full(cam.shape, np.inf, dtype=np.float64)
        clouds = []
        for pl in placements:
            if not (0 <= pl.model_id < len(self.models)):
                raise RenderFailure(f"unknown model id {pl.model_id}")
            clouds.append(transform_points(self.models[pl.model_id].points, pl.pose, self.table_height))
        self.num_renders += 1
        if clouds:
            pc = cam.world_to_camera(np.vstack(clouds))
            pc = pc[(pc[:, 2] > K.near) & (pc[:, 2] < K.far)]
            if len(pc):
                u = np.rint(K.fx * pc[:, 0] / pc[:, 2] + K.cx).astype(np.int64)
                v = np.rint(K.fy * pc[:, 1] / pc[:, 2] + K.cy).astype(np.int64)
                _zbuffer_splat(u, v, np.ascontiguousarray(pc[:, 2]), self.splat_radius, zbuf)
        mm = np.full(cam.shape, NO_DEPTH, dtype=np.uint16)
        hit = np.isfinite(zbuf)
        mm[hit] = np.clip(np.rint(zbuf[hit] * 1000.0), 1, NO_DEPTH).astype(np.uint16)
        return mm


def backproject(depth: np.ndarray, camera: Camera, mask: Optional[np.ndarray] = None) -> np.ndarray:
    r"""
    World points of the covered pixels of ``depth`` (optionally restricted to ``mask``).

    Returns
    -------
    ndarray, shape (N, 3)
        Points in row-major pixel order.
    """
    sel = covered(depth)
    if mask is not None:
        sel &= mask
    v, u = np.nonzero(sel)
    K = camera.intrinsics
    d = depth[v, u].astype(np.float64) / 1000.0
    pc = np.column_stack([(u - K.cx) * d / K.fx, (v - K.cy) * d / K.fy, d])
    return camera.camera_to_world(pc)


def depth_to_cloud(depth: np.ndarray, camera: Camera) -> np.ndarray:
    """Organized (H, W, 3) world cloud aligned with ``depth``; NaN where there is no return."""
    out = np.full(depth.shape + (3,), np.nan, dtype=np.float64)
    sel = covered(depth)
    out[sel] = backproject(depth, camera)
    return out
