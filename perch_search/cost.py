r"""
Rendering-based edge cost with local pose refinement and occlusion checks.

Given a parent state :math:`s` and a child :math:`s' = s \cup \{(m, q)\}`, let
:math:`D_s` and :math:`D_{s'}` be their rendered depth images and
:math:`B_s = \{u : D_s(u) = \varnothing\}` the parent background. The pixels
newly explained by the added object are

.. math:: N = \{u \in B_s : D_{s'}(u) \neq \varnothing\}.

The candidate is rejected (cost :data:`INVALID_COST`) when the refined pose
fails the pruning test, or when it occludes the parent,

.. math:: \exists\,u:\; D_s(u) \neq \varnothing,\; D_{s'}(u) \neq \varnothing,\; D_{s'}(u) < D_s(u).

Otherwise the target cost counts back-projected points of :math:`N` with no
observed point within the sensor resolution :math:`\rho`:

.. math:: C_\text{target} = \bigl|\{u \in N : \min_{o \in O} \|w(u) - o\| > \rho\}\bigr|.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from perch_search.alignment import AlignmentResult, PlanarICP, apply_correction
from perch_search.config import EnvConfig
from perch_search.models import ObjectModel
from perch_search.observation import Observation
from perch_search.renderer import DepthRenderer, backproject, covered
from perch_search.state import CostResult, NO_DEPTH, PlacementState, StateProperties
from perch_search.successors import FeasibilityChecker

logger = logging.getLogger(__name__)

__all__ = ["CostEvaluator", "is_occluded", "new_pixel_mask", "depth_range"]


def new_pixel_mask(parent_depth: np.ndarray, depth: np.ndarray) -> np.ndarray:
    """Pixels covered in ``depth`` but background in ``parent_depth``."""
    return covered(depth) & ~covered(parent_depth)


def is_occluded(parent_depth: np.ndarray, child_depth: np.ndarray) -> bool:
    """True if the child is strictly nearer than the parent at any pixel covered in both."""
    both = covered(parent_depth) & covered(child_depth)
    return bool(np.any(child_depth[both] < parent_depth[both]))


def depth_range(depth: np.ndarray, mask: np.ndarray) -> StateProperties:
    vals = depth[mask]
    if vals.size == 0:
        return StateProperties(NO_DEPTH, 0)
    return StateProperties(int(vals.min()), int(vals.max()))


class CostEvaluator:
    r"""
    Scores one candidate edge against the observation.

    One evaluator lives in each process and owns that process's renderer. The
    depth image of the most recent parent is memoized, since all candidates of
    one expansion share their parent.

    Parameters
    ----------
    config : EnvConfig
        Grid resolution, ICP settings, sensor resolution, source-cost switch.
    models : sequence of ObjectModel
        Library indexed by model id.
    observation : Observation
        Observed cloud and its indices.
    renderer : DepthRenderer
        Process-local renderer with its camera set.
    """

    def __init__(
        self,
        config: EnvConfig,
        models: Sequence[ObjectModel],
        observation: Observation,
        renderer: DepthRenderer,
    ) -> None:
        self.config = config
        self.models = list(models)
        self.observation = observation
        self.renderer = renderer
        self.checker = FeasibilityChecker(self.models, observation, config.res, config.table_height)
        self.icp = PlanarICP(
            observation.icp_points,
            0.5 * config.res,
            max_iterations=config.icp_max_iterations,
            fitness_epsilon=config.icp_fitness_epsilon,
            transformation_epsilon=config.icp_transformation_epsilon,
            tree=observation.icp_tree,
        )
        self.use_source_cost = bool(config.use_source_cost)
        self.claimed: Dict[int, np.ndarray] = {}
        self.num_evaluations = 0
        self._parent_cache: Optional[Tuple[PlacementState, np.ndarray]] = None

    def render(self, state: PlacementState) -> np.ndarray:
        return self.renderer.render(state.placements)

    def _parent_depth(self, parent: PlacementState) -> np.ndarray:
        cached = self._parent_cache
        if cached is not None and cached[0] == parent:
            return cached[1]
        depth = self.render(parent)
        self._parent_cache = (parent, depth)
        return depth

    def refine(self, parent_depth: np.ndarray, child: PlacementState) -> Tuple[PlacementState, AlignmentResult]:
        """Align the isolated new object's newly visible points to the observation."""
        placement = child.last
        iso = self.renderer.render([placement])
        pts = backproject(iso, self.renderer.camera, new_pixel_mask(parent_depth, iso))
        if len(pts) == 0:
            return child, AlignmentResult(False, math.inf)
        result = self.icp.align(pts)
        return child.with_last_pose(apply_correction(placement.pose, result)), result

    def evaluate(
        self,
        parent: PlacementState,
        child: PlacementState,
        parent_id: int = -1,
        child_id: int = -1,
        *,
        use_source_cost: Optional[bool] = None,
    ) -> CostResult:
        r"""
        Cost of adding ``child.last`` to ``parent``.

        Parameters
        ----------
        parent, child : PlacementState
            ``child`` must extend ``parent`` by exactly one placement.
        parent_id, child_id : int
            Registry ids, used to inherit and store claimed pixels of the source
            cost term; ``-1`` when unknown.
        use_source_cost : bool, optional
            Overrides the configured switch (the distributed path forces it off).

        Returns
        -------
        CostResult
            Non-negative cost with the pose-refined child and its depth range,
            or :data:`INVALID_COST` when the refined pose is infeasible or the
            placement occludes the parent.
        """
        if len(child) != len(parent) + 1 or child.placements[:-1] != parent.placements:
            raise ValueError("child must extend parent by exactly one placement")
        self.num_evaluations += 1
        model_id = child.last.model_id

        parent_depth = self._parent_depth(parent)
        adjusted, alignment = self.refine(parent_depth, child)
        if not self.checker.is_valid_pose(parent, model_id, adjusted.last.pose):
            return CostResult.invalid(adjusted)

        child_depth = self.render(adjusted)
        if is_occluded(parent_depth, child_depth):
            return CostResult.invalid(adjusted)

        new_mask = new_pixel_mask(parent_depth, child_depth)
        props = depth_range(child_depth, new_mask)
        pts = backproject(child_depth, self.renderer.camera, new_mask)
        target_cost = int(np.count_nonzero(~self.observation.explained(pts, self.config.sensor_resolution)))

        enabled = self.use_source_cost if use_source_cost is None else bool(use_source_cost)
        source_cost = self.source_cost(adjusted, child_depth, props, parent_id, child_id) if enabled else 0

        logger.debug(
            "model %d at (%.3f, %.3f, %.2f): icp=%s target=%d source=%d",
            model_id, adjusted.last.pose.x, adjusted.last.pose.y, adjusted.last.pose.yaw,
            alignment.converged, target_cost, source_cost,
        )
        return CostResult(target_cost + source_cost, adjusted, props)

    def source_cost(
        self,
        state: PlacementState,
        depth: np.ndarray,
        props: StateProperties,
        parent_id: int,
        child_id: int,
    ) -> int:
        r"""
        Observed points left unexplained near the newly placed object.

        An observed point not yet claimed by an ancestor is unexplained when the
        full render of ``state`` has no point within ``source_radius``. It is
        charged (and claimed for ``child_id``) when it lies within three
        circumscribed radii of the new object in the plane, or when its observed
        depth is strictly smaller than the minimum new-pixel depth.
        """
        obs = self.observation
        claimed = self.claimed.get(parent_id)
        claimed = np.zeros(len(obs), dtype=bool) if claimed is None else claimed.copy()
        rendered = backproject(depth, self.renderer.camera)
        if len(rendered):
            d, _ = cKDTree(rendered).query(obs.points, k=1, distance_upper_bound=self.config.source_radius)
            unexplained = ~np.isfinite(d)
        else:
            unexplained = np.ones(len(obs), dtype=bool)
        unexplained &= ~claimed

        placement = state.last
        radius = 3.0 * self.models[placement.model_id].circumscribed_radius
        dxy = obs.points[:, :2] - np.array([placement.pose.x, placement.pose.y])
        near = np.einsum("ij,ij->i", dxy, dxy) <= radius * radius
        obs_depth = obs.depth.reshape(-1)[obs.pixels]
        in_front = obs_depth < props.min_depth

        charged = unexplained & (near | in_front)
        claimed |= charged
        if child_id >= 0:
            self.claimed[child_id] = claimed
        return int(np.count_nonzero(charged))
