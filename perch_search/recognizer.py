from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from perch_search.comm import ProcessGroup
from perch_search.config import EnvConfig
from perch_search.environment import EnvStats, ObjectRecognitionEnv
from perch_search.errors import ConfigurationError
from perch_search.models import ObjectModel, load_models, placement_transform
from perch_search.observation import Observation
from perch_search.renderer import Camera, DepthRenderer
from perch_search.scheduler import STOP, WorkerSpec, worker_main
from perch_search.search import MultiHeuristicAStar, PlannerStats
from perch_search.state import ContinuousPose, Placement, PlacementState

logger = logging.getLogger(__name__)

__all__ = ["RecognitionResult", "ObjectRecognizer", "placements_frame"]


def placements_frame(state: PlacementState, models: Sequence[ObjectModel]) -> pd.DataFrame:
    """One row per placement: ``model_id, name, x, y, yaw``, sorted by model id."""
    rows = [
        {"model_id": p.model_id, "name": models[p.model_id].name,
         "x": p.pose.x, "y": p.pose.y, "yaw": p.pose.yaw}
        for p in state.placements
    ]
    df = pd.DataFrame(rows, columns=["model_id", "name", "x", "y", "yaw"])
    return df.sort_values("model_id", kind="stable").reset_index(drop=True)


@dataclass
class RecognitionResult:
    """Outcome of one recognition episode."""
    state: Optional[PlacementState]
    poses: pd.DataFrame
    path: List[int] = field(default_factory=list)
    env_stats: EnvStats = field(default_factory=EnvStats)
    planner_stats: PlannerStats = field(default_factory=PlannerStats)

    @property
    def solved(self) -> bool:
        return self.state is not None

    def transforms(self, table_height: float = 0.0) -> Dict[int, np.ndarray]:
        """Model id -> 4x4 model-to-world transform."""
        if self.state is None:
            return {}
        return {p.model_id: placement_transform(p.pose, table_height) for p in self.state.placements}


class ObjectRecognizer:
    r"""
    End-to-end recognition: environment, worker pool and search driver.

    Parameters
    ----------
    config : EnvConfig
        Episode configuration; validated against the model library.
    models : sequence of ObjectModel, optional
        Model library; built from ``config.models`` when omitted.

    Examples
    --------
    >>> rec = ObjectRecognizer(cfg)                                   # doctest: +SKIP
    >>> obs = rec.synthetic_observation(camera, [(0, 0.0, 0.0, 0.0)])  # doctest: +SKIP
    >>> rec.localize(obs, num_workers=4).poses                         # doctest: +SKIP
    """

    def __init__(self, config: EnvConfig, models: Optional[Sequence[ObjectModel]] = None) -> None:
        self.models = list(models) if models is not None else load_models(config.models, spacing=config.point_spacing)
        self.config = config.validate(len(self.models))
        self.last_env: Optional[ObjectRecognitionEnv] = None

    def renderer(self, camera: Camera) -> DepthRenderer:
        return DepthRenderer(self.models, camera, table_height=self.config.table_height,
                             splat_radius=self.config.splat_radius)

    def synthetic_observation(
        self,
        camera: Camera,
        truth: Sequence[Tuple[int, float, float, float]],
    ) -> Observation:
        """Render ``(model_id, x, y, yaw)`` ground-truth placements as the observation."""
        if not truth:
            raise ConfigurationError("synthetic scene needs at least one placement")
        placements = [Placement(int(m), ContinuousPose(x, y, yaw)) for m, x, y, yaw in truth]
        return Observation.synthetic(self.renderer(camera), placements,
                                     downsample_leaf=self.config.downsample_leaf)

    def localize(
        self,
        observation: Observation,
        *,
        num_workers: int = 1,
        heuristics: Sequence[int] = (0, 1, 2),
        inflation: float = 1.0,
        anchor_factor: float = 1.0,
        max_time_s: Optional[float] = None,
        record_graph: bool = False,
    ) -> RecognitionResult:
        r"""
        Find the placement of every object that best explains ``observation``.

        Parameters
        ----------
        observation : Observation
            Scene to explain.
        num_workers : int
            Pool size including the coordinator; values above 1 spawn
            ``num_workers - 1`` worker processes for cost evaluation.
        heuristics, inflation, anchor_factor, max_time_s
            Search driver settings (see :class:`MultiHeuristicAStar`).
        record_graph : bool
            Keep the explored graph on :attr:`last_env`.

        Returns
        -------
        RecognitionResult
            Poses as a DataFrame (empty when no solution was found).
        """
        if num_workers < 1:
            raise ConfigurationError("num_workers must be >= 1")
        t0 = time.perf_counter()
        if num_workers == 1:
            result = self._search(observation, None, heuristics, inflation, anchor_factor, max_time_s, record_graph)
        else:
            spec = WorkerSpec.from_observation(self.config, self.models, observation)
            group = ProcessGroup(num_workers, worker_main, (spec,),
                                 timeout=self.config.collective_timeout_s, stop_message=STOP)
            with group as comm:
                result = self._search(observation, comm, heuristics, inflation, anchor_factor, max_time_s,
                                      record_graph)
        logger.info("Recognition finished in %.2fs (solved=%s)", time.perf_counter() - t0, result.solved)
        return result

    def _search(self, observation, comm, heuristics, inflation, anchor_factor, max_time_s,
                record_graph) -> RecognitionResult:
        env = ObjectRecognitionEnv(self.config, self.models, observation, comm=comm, record_graph=record_graph)
        self.last_env = env
        if any(h == 2 for h in heuristics):
            env.precompute_heuristics()
            logger.info("Greedy alignment table:\n%s", env.heuristics.table().to_string(index=False))
        planner = MultiHeuristicAStar(env, heuristics, inflation=inflation, anchor_factor=anchor_factor,
                                      max_time_s=max_time_s)
        path = planner.plan()

        stats = env.stats
        logger.info("Expansions: %d | candidates: %d | valid: %d | duplicates: %d | renders: %d",
                    stats.expansions, stats.candidates, stats.valid_successors, stats.duplicates,
                    stats.scenes_rendered)
        if path is None:
            return RecognitionResult(None, placements_frame(PlacementState(), self.models),
                                     [], stats, planner.stats)
        state = env.solution_state(path)
        poses = placements_frame(state, self.models)
        for row in poses.itertuples(index=False):
            logger.info("  %-12s x=%+.3f y=%+.3f yaw=%.3f", row.name, row.x, row.y, row.yaw)
        return RecognitionResult(state, poses, path, stats, planner.stats)
