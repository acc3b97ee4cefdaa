r"""
Heuristics exposed to the multi-heuristic search driver.

For a state :math:`s` with :math:`|s|` placements out of :math:`n` objects:

- :math:`h_0(s) = 0` (anchor);
- :math:`h_1(s) = n - |s|`;
- :math:`h_2(s) = \sum_{k=1}^{n-|s|} \lfloor \lambda\, e_{(k)} \rfloor`, where
  :math:`e_{(1)} \le e_{(2)} \le \dots` are the greedy alignment residuals of
  the models *not* in :math:`s` and :math:`\lambda` is the ICP cost multiplier.

The greedy residual :math:`e_m` of a model is the smallest ICP fitness obtained
by sliding it alone over the full pose grid against the full observation.
It ignores interactions between objects, so :math:`h_2` is a per-object
approximation and is not admissible when objects occlude one another.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

import pandas as pd

from perch_search.alignment import apply_correction
from perch_search.cost import CostEvaluator
from perch_search.registry import StateRegistry
from perch_search.renderer import backproject, covered
from perch_search.state import ContinuousPose, Placement, PlacementState, empty_state
from perch_search.successors import PoseGrid

logger = logging.getLogger(__name__)

__all__ = ["GreedyScore", "HeuristicEngine", "DEFAULT_RESIDUAL"]

#: Residual assigned to a model for which no grid pose aligned.
DEFAULT_RESIDUAL = 100.0


@dataclass(slots=True)
class GreedyScore:
    model_id: int
    residual: float = DEFAULT_RESIDUAL
    pose: Optional[ContinuousPose] = None


class HeuristicEngine:
    r"""
    Heuristic values by index, with the greedy table computed once per episode.

    Parameters
    ----------
    evaluator : CostEvaluator
        Supplies the renderer, the ICP settings and the support test.
    registry : StateRegistry
        Resolves state ids.
    grid : PoseGrid
        Poses tried by the greedy sweep.
    num_objects : int
        Objects to place.
    goal_id : int
        Id of the goal sentinel; its heuristic is always 0.
    icp_cost_multiplier : int
        Scale :math:`\lambda` of :math:`h_2`.
    """

    NUM_HEURISTICS = 3

    def __init__(
        self,
        evaluator: CostEvaluator,
        registry: StateRegistry,
        grid: PoseGrid,
        num_objects: int,
        goal_id: int,
        icp_cost_multiplier: int = 1_000_000,
    ) -> None:
        self.evaluator = evaluator
        self.registry = registry
        self.grid = grid
        self.num_objects = int(num_objects)
        self.goal_id = int(goal_id)
        self.icp_cost_multiplier = int(icp_cost_multiplier)
        self.scores: List[GreedyScore] = []
        self._cache: Dict[int, int] = {}

    @property
    def ready(self) -> bool:
        return bool(self.scores)

    def precompute(self) -> List[GreedyScore]:
        """Run the greedy sweep for every model and sort models by best residual."""
        ev = self.evaluator
        empty = empty_state()
        scores = []
        for model_id, model in enumerate(ev.models):
            best = GreedyScore(model_id)
            for pose, disc in self.grid.poses(model.symmetric):
                if not ev.checker.has_support(model_id, pose):
                    continue
                depth = ev.renderer.render([Placement(model_id, pose, disc)])
                pts = backproject(depth, ev.renderer.camera, covered(depth))
                if len(pts) == 0:
                    continue
                result = ev.icp.align(pts)
                if not result.converged or result.fitness >= best.residual:
                    continue
                aligned = apply_correction(pose, result)
                # support is checked again after alignment
                if not ev.checker.has_support(model_id, aligned):
                    continue
                best.residual = result.fitness
                best.pose = aligned
            scores.append(best)
            logger.debug("greedy model %d: residual %.3g at %s", model_id, best.residual, best.pose)
        scores.sort(key=lambda s: s.residual)
        self.scores = scores
        self._cache.clear()
        logger.info("Greedy heuristic table ready for %d models", len(scores))
        return scores

    def table(self) -> pd.DataFrame:
        rows = []
        for s in self.scores:
            rows.append({
                "model_id": s.model_id,
                "name": self.evaluator.models[s.model_id].name,
                "residual": s.residual,
                "x": s.pose.x if s.pose else math.nan,
                "y": s.pose.y if s.pose else math.nan,
                "yaw": s.pose.yaw if s.pose else math.nan,
            })
        return pd.DataFrame(rows, columns=["model_id", "name", "residual", "x", "y", "yaw"])

    def remaining(self, state: PlacementState) -> int:
        return max(0, self.num_objects - len(state))

    def greedy(self, state: PlacementState) -> int:
        if not self.scores:
            self.precompute()
        k = self.remaining(state)
        total = 0
        for s in self.scores:
            if k == 0:
                break
            if state.contains(s.model_id):
                continue
            total += int(s.residual * self.icp_cost_multiplier)
            k -= 1
        return total

    def get_goal_heuristic(self, state_id: int, index: int = 0) -> int:
        """
        Heuristic ``index`` of ``state_id``.

        Raises
        ------
        ValueError
            For an index outside ``0..NUM_HEURISTICS-1``.
        StateLookupError
            For unknown state ids.
        """
        if not 0 <= index < self.NUM_HEURISTICS:
            raise ValueError(f"heuristic index must be in [0, {self.NUM_HEURISTICS}), got {index}")
        if state_id == self.goal_id:
            return 0
        state = self.registry.to_state(state_id)
        if index == 0:
            return 0
        if index == 1:
            return self.remaining(state)
        if state_id not in self._cache:
            self._cache[state_id] = self.greedy(state)
        return self._cache[state_id]
