r"""
Planar ICP (x, y, yaw).

Each iteration pairs every source point with its nearest target point in 3D
(pairs farther apart than ``max_correspondence_distance`` are dropped) and
solves the 2D orthogonal Procrustes problem on the :math:`(x, y)` components,

.. math::

    \min_{\phi,\,t} \sum_i \bigl\| R(\phi)\,a_i + t - b_i \bigr\|^2 ,

via the SVD of the cross-covariance
:math:`H = \sum_i (a_i - \bar a)(b_i - \bar b)^\top = U \Sigma V^\top`:
:math:`R = V\,\mathrm{diag}(1, \det V U^\top)\,U^\top`,
:math:`t = \bar b - R\bar a`. The :math:`z` component of the source is left
unchanged. Iteration stops when the relative change in mean squared
correspondence distance is below the fitness epsilon, or at the iteration cap
(which counts as converged). An optional transformation epsilon also stops on a
small increment. Fewer than ``min_correspondences`` pairs means no convergence.

The accumulated correction :math:`(R(\phi), t)` is applied to the pose of the
placement that produced the source cloud:

.. math:: (x', y') = R(\phi)\,(x, y) + t, \qquad \psi' = \psi + \phi.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.spatial import cKDTree

from perch_search.state import ContinuousPose

__all__ = ["AlignmentResult", "PlanarICP", "estimate_rigid_2d", "apply_correction"]


@dataclass(slots=True)
class AlignmentResult:
    """Correction found by :class:`PlanarICP` and its quality."""
    converged: bool
    fitness: float
    rotation: float = 0.0
    translation: Tuple[float, float] = (0.0, 0.0)
    iterations: int = 0

    def matrix(self) -> np.ndarray:
        c, s = math.cos(self.rotation), math.sin(self.rotation)
        return np.array([[c, -s, self.translation[0]], [s, c, self.translation[1]], [0.0, 0.0, 1.0]])


def estimate_rigid_2d(a: np.ndarray, b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Least-squares rotation ``R`` (2x2) and translation ``t`` mapping ``a`` onto ``b``."""
    ca, cb = a.mean(axis=0), b.mean(axis=0)
    H = (a - ca).T @ (b - cb)
    U, _, Vt = np.linalg.svd(H)
    D = np.diag([1.0, np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0])
    R = Vt.T @ D @ U.T
    return R, cb - R @ ca


def apply_correction(pose: ContinuousPose, result: AlignmentResult) -> ContinuousPose:
    if not result.converged:
        return pose
    c, s = math.cos(result.rotation), math.sin(result.rotation)
    tx, ty = result.translation
    return ContinuousPose(
        c * pose.x - s * pose.y + tx,
        s * pose.x + c * pose.y + ty,
        pose.yaw + result.rotation,
    )


class PlanarICP:
    r"""
    Point-to-point ICP restricted to in-plane motion.

    Parameters
    ----------
    target : ndarray, shape (M, 3)
        Target cloud (typically the downsampled observation).
    max_correspondence_distance : float
        Maximum 3D distance of a valid pair.
    max_iterations : int
        Iteration cap.
    fitness_epsilon : float
        Threshold on the relative change of the mean squared pair distance
        between consecutive iterations.
    transformation_epsilon : float
        Threshold on the squared size of one increment
        (:math:`\phi^2 + \|t\|^2`); 0 (the default) disables the test.
    tree : scipy.spatial.cKDTree, optional
        Prebuilt index over ``target``.
    """

    def __init__(
        self,
        target: np.ndarray,
        max_correspondence_distance: float,
        *,
        max_iterations: int = 50,
        fitness_epsilon: float = 1e-5,
        transformation_epsilon: float = 0.0,
        min_correspondences: int = 3,
        tree: "cKDTree | None" = None,
    ) -> None:
        self.target = np.asarray(target, dtype=np.float64)
        self.tree = tree if tree is not None else cKDTree(self.target)
        self.max_correspondence_distance = float(max_correspondence_distance)
        self.max_iterations = int(max_iterations)
        self.fitness_epsilon = float(fitness_epsilon)
        self.transformation_epsilon = float(transformation_epsilon)
        self.min_correspondences = int(min_correspondences)

    def align(self, source: np.ndarray) -> AlignmentResult:
        """Align ``source`` (N, 3) to the target; never modifies ``source``."""
        src = np.array(source, dtype=np.float64, copy=True)
        if len(src) < self.min_correspondences or len(self.target) == 0:
            return AlignmentResult(False, math.inf)

        R_acc = np.eye(2)
        t_acc = np.zeros(2)
        prev_mse = math.inf
        converged = False
        it = 0
        while it < self.max_iterations:
            d, idx = self.tree.query(src, k=1, distance_upper_bound=self.max_correspondence_distance)
            ok = np.isfinite(d)
            if int(ok.sum()) < self.min_correspondences:
                return AlignmentResult(False, math.inf, iterations=it)
            R, t = estimate_rigid_2d(src[ok, :2], self.target[idx[ok], :2])
            src[:, :2] = src[:, :2] @ R.T + t
            R_acc = R @ R_acc
            t_acc = R @ t_acc + t
            it += 1

            mse = float(np.mean(d[ok] ** 2))
            dphi = math.atan2(R[1, 0], R[0, 0])
            if self.transformation_epsilon > 0 and dphi * dphi + float(t @ t) < self.transformation_epsilon:
                converged = True
                break
            if math.isfinite(prev_mse) and abs(mse - prev_mse) <= self.fitness_epsilon * prev_mse:
                converged = True
                break
            prev_mse = mse
        else:
            converged = True

        return AlignmentResult(
            converged=converged,
            fitness=self.fitness(src),
            rotation=math.atan2(R_acc[1, 0], R_acc[0, 0]),
            translation=(float(t_acc[0]), float(t_acc[1])),
            iterations=it,
        )

    def fitness(self, points: np.ndarray) -> float:
        """Mean squared distance from each point to its nearest target point."""
        if len(points) == 0:
            return math.inf
        d, _ = self.tree.query(points, k=1)
        return float(np.mean(d ** 2))
