r"""
Successor enumeration with geometric pruning.

For a source state :math:`s` and every model :math:`m \notin s`, candidate poses
are drawn from the regular grid of :class:`PoseGrid`. A candidate survives when

(a) the observation holds at least one point within
    :math:`r_\text{out}(m) + \Delta/2` of its support point
    :math:`(x, y, z_\text{table} + h_m/2)`, and
(b) its inscribed footprint disk does not overlap the inscribed disk of any
    placed object :math:`j`:

    .. math:: (r_\text{in}(m) + r_\text{in}(j))^2 \le \|c_m - c_j\|^2 .

Surviving children are registered immediately, so equal candidates share an id.
"""

from __future__ import annotations

import logging
import math
from typing import Iterator, List, NamedTuple, Sequence, Tuple

import numpy as np

from perch_search.config import EnvConfig
from perch_search.models import ObjectModel
from perch_search.observation import Observation
from perch_search.registry import StateRegistry
from perch_search.state import ContinuousPose, DiscretePose, Placement, PlacementState

logger = logging.getLogger(__name__)

__all__ = ["PoseGrid", "FeasibilityChecker", "Candidate", "SuccessorGenerator"]


class PoseGrid:
    """Regular (x, y, yaw) sample grid over the search bounds."""

    __slots__ = ("xs", "ys", "thetas")

    def __init__(self, config: EnvConfig) -> None:
        nx_ = int(math.floor((config.x_max - config.x_min) / config.res + 1e-9)) + 1
        ny_ = int(math.floor((config.y_max - config.y_min) / config.res + 1e-9)) + 1
        self.xs = config.x_min + config.res * np.arange(nx_)
        self.ys = config.y_min + config.res * np.arange(ny_)
        self.thetas = config.theta_res * np.arange(config.num_thetas)

    def __len__(self) -> int:
        return len(self.xs) * len(self.ys) * len(self.thetas)

    def poses(self, symmetric: bool = False) -> Iterator[Tuple[ContinuousPose, DiscretePose]]:
        """Grid samples in x-major order; symmetric models only get the first yaw."""
        thetas = self.thetas[:1] if symmetric else self.thetas
        for ix, x in enumerate(self.xs):
            for iy, y in enumerate(self.ys):
                for it, th in enumerate(thetas):
                    yield ContinuousPose(x, y, th), DiscretePose(ix, iy, it)


class FeasibilityChecker:
    r"""
    Pruning test applied before any rendering and again after pose refinement.

    Parameters
    ----------
    models : sequence of ObjectModel
        Library indexed by model id.
    observation : Observation
        Supplies the KD-tree for the support test.
    res : float
        Grid resolution; half of it is added to the support radius.
    table_height : float
        Support plane height.
    """

    __slots__ = ("models", "observation", "res", "table_height")

    def __init__(self, models: Sequence[ObjectModel], observation: Observation, res: float,
                 table_height: float = 0.0) -> None:
        self.models = list(models)
        self.observation = observation
        self.res = float(res)
        self.table_height = float(table_height)

    def has_support(self, model_id: int, pose: ContinuousPose) -> bool:
        m = self.models[model_id]
        point = np.array([pose.x, pose.y, self.table_height + 0.5 * m.height])
        return self.observation.has_support(point, m.circumscribed_radius + 0.5 * self.res)

    def overlaps(self, state: PlacementState, model_id: int, pose: ContinuousPose) -> bool:
        r_new = self.models[model_id].inscribed_radius
        for p in state.placements:
            r = r_new + self.models[p.model_id].inscribed_radius
            dx, dy = pose.x - p.pose.x, pose.y - p.pose.y
            if r * r > dx * dx + dy * dy:
                return True
        return False

    def is_valid_pose(self, state: PlacementState, model_id: int, pose: ContinuousPose) -> bool:
        return self.has_support(model_id, pose) and not self.overlaps(state, model_id, pose)


class Candidate(NamedTuple):
    """A child to be costed: its canonical id, the parent and the child state."""
    child_id: int
    parent_state: PlacementState
    child_state: PlacementState


class SuccessorGenerator:
    r"""
    Enumerates and canonicalizes the children of a state.

    Parameters
    ----------
    registry : StateRegistry
        Canonical state table; children are registered here.
    checker : FeasibilityChecker
        Pruning test.
    grid : PoseGrid
        Pose samples.
    num_objects : int
        Number of placements that makes a state a goal.
    """

    def __init__(self, registry: StateRegistry, checker: FeasibilityChecker, grid: PoseGrid,
                 num_objects: int) -> None:
        self.registry = registry
        self.checker = checker
        self.grid = grid
        self.num_objects = int(num_objects)

    @classmethod
    def from_config(cls, config: EnvConfig, registry: StateRegistry, models: Sequence[ObjectModel],
                    observation: Observation) -> "SuccessorGenerator":
        checker = FeasibilityChecker(models, observation, config.res, config.table_height)
        return cls(registry, checker, PoseGrid(config), config.num_objects)

    def is_goal(self, state: PlacementState) -> bool:
        return len(state) >= self.num_objects

    def generate(self, state_id: int) -> List[Candidate]:
        """Candidates for ``state_id``; empty for goal states."""
        source = self.registry.to_state(state_id)
        if self.is_goal(source):
            return []
        models = self.checker.models
        out: List[Candidate] = []
        seen = set()
        n_pruned = 0
        for model_id, model in enumerate(models):
            if source.contains(model_id):
                continue
            for pose, disc in self.grid.poses(model.symmetric):
                if not self.checker.is_valid_pose(source, model_id, pose):
                    n_pruned += 1
                    continue
                child = source.append(Placement(model_id, pose, disc))
                cid = self.registry.to_id(child)
                if cid in seen:
                    continue
                seen.add(cid)
                out.append(Candidate(cid, source, child))
        logger.debug("state %d: %d candidates, %d pruned", state_id, len(out), n_pruned)
        return out
