from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import numpy as np
from scipy.spatial import cKDTree

from perch_search.config import CameraIntrinsics
from perch_search.errors import ConfigurationError
from perch_search.renderer import Camera, DepthRenderer, covered, depth_to_cloud
from perch_search.state import Placement

logger = logging.getLogger(__name__)

__all__ = ["Observation", "voxel_downsample"]


def voxel_downsample(points: np.ndarray, leaf: float) -> np.ndarray:
    r"""
    Replace the points of each occupied voxel by their centroid.

    Voxel keys are :math:`\lfloor p / \ell \rfloor` for leaf size :math:`\ell`.
    A non-positive ``leaf`` returns a copy of the input.
    """
    pts = np.asarray(points, dtype=np.float64)
    if leaf <= 0 or len(pts) == 0:
        return pts.copy()
    keys = np.floor(pts / leaf).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3), dtype=np.float64)
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]


class Observation:
    r"""
    The sensor snapshot the search has to explain, with its neighbour indices.

    Holds the observed depth image, the organized world cloud aligned with it,
    a KD-tree over all observed points (support and explanation queries) and a
    KD-tree over a voxel-downsampled copy (ICP target).

    Parameters
    ----------
    depth : ndarray, shape (H, W), uint16
        Depth in millimetres with :data:`NO_DEPTH` for missing returns.
    camera : Camera
        Camera that produced ``depth``.
    cloud : ndarray, shape (H, W, 3), optional
        Organized world cloud; computed from ``depth`` when omitted.
    downsample_leaf : float
        Voxel size of the ICP target.

    Raises
    ------
    ConfigurationError
        If the image does not match the camera or holds no returns.
    """

    __slots__ = ("depth", "camera", "cloud", "points", "pixels", "tree", "icp_points", "icp_tree")

    def __init__(
        self,
        depth: np.ndarray,
        camera: Camera,
        cloud: Optional[np.ndarray] = None,
        *,
        downsample_leaf: float = 0.005,
    ) -> None:
        depth = np.asarray(depth)
        if depth.shape != camera.shape:
            raise ConfigurationError(f"depth image {depth.shape} does not match camera {camera.shape}")
        self.depth = depth.astype(np.uint16, copy=False)
        self.camera = camera
        self.cloud = depth_to_cloud(self.depth, camera) if cloud is None else np.asarray(cloud, dtype=np.float64)
        if self.cloud.shape != depth.shape + (3,):
            raise ConfigurationError(f"organized cloud {self.cloud.shape} does not match depth {depth.shape}")
        valid = covered(self.depth) & np.isfinite(self.cloud).all(axis=2)
        self.pixels = np.flatnonzero(valid)
        self.points = np.ascontiguousarray(self.cloud.reshape(-1, 3)[self.pixels])
        if len(self.points) == 0:
            raise ConfigurationError("observation holds no valid points")
        self.tree = cKDTree(self.points, balanced_tree=True, compact_nodes=True)
        self.icp_points = voxel_downsample(self.points, downsample_leaf)
        self.icp_tree = cKDTree(self.icp_points)
        logger.debug(
            "Observation: %d points (%d after %.4f voxel downsampling)",
            len(self.points), len(self.icp_points), downsample_leaf,
        )

    def __len__(self) -> int:
        return len(self.points)

    def has_support(self, point: np.ndarray, radius: float) -> bool:
        """True when some observed point lies within ``radius`` of ``point``."""
        d, _ = self.tree.query(np.asarray(point, dtype=np.float64), k=1, distance_upper_bound=radius)
        return bool(np.isfinite(d))

    def explained(self, points: np.ndarray, radius: float) -> np.ndarray:
        """Per point: does an observed point lie within ``radius``?"""
        if len(points) == 0:
            return np.zeros(0, dtype=bool)
        d, _ = self.tree.query(points, k=1, distance_upper_bound=radius)
        return np.isfinite(d)

    @classmethod
    def synthetic(
        cls,
        renderer: DepthRenderer,
        placements: Iterable[Placement],
        *,
        downsample_leaf: float = 0.005,
    ) -> "Observation":
        """Observation rendered from ground-truth placements."""
        if renderer.camera is None:
            raise ConfigurationError("renderer has no camera")
        depth = renderer.render(placements)
        return cls(depth, renderer.camera, downsample_leaf=downsample_leaf)

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        intrinsics: CameraIntrinsics,
        *,
        downsample_leaf: float = 0.005,
    ) -> "Observation":
        r"""
        Read an ``.npz`` archive with ``depth`` (H, W) and ``camera_pose`` (4, 4),
        and optionally ``cloud`` (H, W, 3).
        """
        p = Path(path)
        try:
            with np.load(p) as data:
                depth = data["depth"]
                pose = data["camera_pose"]
                cloud = data["cloud"] if "cloud" in data.files else None
        except (OSError, KeyError, ValueError) as e:
            raise ConfigurationError(f"failed to read observation {p}: {e}") from e
        return cls(depth, Camera(intrinsics, pose), cloud, downsample_leaf=downsample_leaf)

    def save(self, path: Union[str, Path]) -> None:
        np.savez_compressed(Path(path), depth=self.depth, camera_pose=self.camera.pose, cloud=self.cloud)
