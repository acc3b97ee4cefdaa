from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import networkx as nx

from perch_search.comm import Communicator, SerialCommunicator
from perch_search.config import EnvConfig
from perch_search.cost import CostEvaluator
from perch_search.heuristics import HeuristicEngine
from perch_search.models import ObjectModel
from perch_search.observation import Observation
from perch_search.registry import StateRegistry
from perch_search.renderer import DepthRenderer
from perch_search.scheduler import DistributedCostScheduler
from perch_search.state import PlacementState, StateProperties, empty_state, goal_state
from perch_search.successors import PoseGrid, SuccessorGenerator

logger = logging.getLogger(__name__)

__all__ = ["EnvStats", "SearchCaches", "ObjectRecognitionEnv"]


@dataclass(slots=True)
class EnvStats:
    """Counters reported after a search."""
    expansions: int = 0
    candidates: int = 0
    valid_successors: int = 0
    duplicates: int = 0
    scenes_rendered: int = 0
    time_s: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class SearchCaches:
    r"""
    Per-run memoization.

    Attributes
    ----------
    successors : dict
        ``source id -> (ids, costs)`` returned by :meth:`ObjectRecognitionEnv.get_succs`.
    properties : dict
        ``state id -> StateProperties`` of every valid costed child.
    """
    successors: Dict[int, Tuple[List[int], List[int]]] = field(default_factory=dict)
    properties: Dict[int, StateProperties] = field(default_factory=dict)


class ObjectRecognitionEnv:
    r"""
    Search environment for tabletop pose recognition (coordinator side).

    The environment is handed to a search driver by composition and exposes
    exactly the capability contract the driver needs:

    - :meth:`get_succs` ``(state_id) -> (ids, costs)``;
    - :meth:`get_goal_heuristic` ``(state_id, index) -> int``;
    - :meth:`is_goal_state` ``(state) -> bool``;

    plus :attr:`start_state_id` and :attr:`goal_state_id`. The goal sentinel is
    registered first (id 0) and the empty start state second (id 1). A state
    holding every object has a single zero-cost edge to the goal sentinel.

    Parameters
    ----------
    config : EnvConfig
        Validated against ``models`` on construction.
    models : sequence of ObjectModel
        Model library.
    observation : Observation
        Scene to explain; its camera is used by the local renderer.
    comm : Communicator, optional
        Rank-0 communicator; defaults to a single-process pool.
    renderer : DepthRenderer, optional
        Local renderer; built from ``config`` when omitted.
    record_graph : bool
        Keep the explored search graph as a :class:`networkx.DiGraph`.

    Raises
    ------
    ConfigurationError
        If the configuration does not fit the model library.
    """

    def __init__(
        self,
        config: EnvConfig,
        models: Sequence[ObjectModel],
        observation: Observation,
        *,
        comm: Optional[Communicator] = None,
        renderer: Optional[DepthRenderer] = None,
        record_graph: bool = False,
    ) -> None:
        self.config = config.validate(len(models))
        self.models = list(models)
        self.observation = observation
        self.registry = StateRegistry(
            [m.symmetric for m in self.models],
            position_tolerance=config.position_tolerance,
            yaw_tolerance=config.yaw_tolerance,
        )
        self.goal_state_id = self.registry.to_id(goal_state())
        self.start_state_id = self.registry.to_id(empty_state())

        self.renderer = renderer or DepthRenderer(
            self.models, observation.camera,
            table_height=config.table_height,
            splat_radius=config.splat_radius,
        )
        self.evaluator = CostEvaluator(config, self.models, observation, self.renderer)
        self.grid = PoseGrid(config)
        self.generator = SuccessorGenerator(self.registry, self.evaluator.checker, self.grid, config.num_objects)
        self.caches = SearchCaches()
        self.scheduler = DistributedCostScheduler(
            comm or SerialCommunicator(), self.evaluator, self.registry,
            config.wire_capacity, self.caches.properties,
        )
        self.heuristics = HeuristicEngine(
            self.evaluator, self.registry, self.grid, config.num_objects,
            self.goal_state_id, config.icp_cost_multiplier,
        )
        self.graph: Optional[nx.DiGraph] = nx.DiGraph() if record_graph else None
        self.stats = EnvStats()

    # ---- driver contract -------------------------------------------------

    def get_succs(self, state_id: int) -> Tuple[List[int], List[int]]:
        r"""
        Successor ids and edge costs of ``state_id`` (memoized per source id).

        Raises
        ------
        StateLookupError
            If ``state_id`` was never issued.
        """
        cached = self.caches.successors.get(state_id)
        if cached is not None:
            return cached
        t0 = time.perf_counter()
        state = self.registry.to_state(state_id)
        if state_id == self.goal_state_id:
            result: Tuple[List[int], List[int]] = ([], [])
        elif self.is_goal_state(state):
            result = ([self.goal_state_id], [0])
        else:
            candidates = self.generator.generate(state_id)
            dup_before = self.scheduler.num_duplicates
            result = self.scheduler.evaluate(state_id, candidates)
            self.stats.candidates += len(candidates)
            self.stats.valid_successors += len(result[0])
            self.stats.duplicates += self.scheduler.num_duplicates - dup_before
        self.caches.successors[state_id] = result
        self.stats.expansions += 1
        self.stats.scenes_rendered = self.renderer.num_renders
        self.stats.time_s += time.perf_counter() - t0

        if self.graph is not None:
            for sid, c in zip(*result):
                self.graph.add_node(sid, size=len(state) + 1)
                self.graph.add_edge(state_id, sid, cost=c)
        if self.config.image_debug and state_id != self.goal_state_id:
            self._save_debug_image(state_id, state)
        logger.debug("expanded %d (%d placed): %d successors", state_id, len(state), len(result[0]))
        return result

    def get_goal_heuristic(self, state_id: int, index: int = 0) -> int:
        return self.heuristics.get_goal_heuristic(state_id, index)

    def is_goal_state(self, state: Union[int, PlacementState]) -> bool:
        if not isinstance(state, PlacementState):
            state = self.registry.to_state(state)
        if state.is_goal_sentinel():
            return True
        return len(state) == self.config.num_objects

    # ---- helpers ---------------------------------------------------------

    def state(self, state_id: int) -> PlacementState:
        return self.registry.to_state(state_id)

    def properties(self, state_id: int) -> Optional[StateProperties]:
        return self.caches.properties.get(state_id)

    def precompute_heuristics(self) -> None:
        self.heuristics.precompute()

    def solution_state(self, path: Sequence[int]) -> PlacementState:
        """Last real state of a path ending in the goal sentinel."""
        ids = [sid for sid in path if sid != self.goal_state_id]
        if not ids:
            raise ValueError("path holds no state besides the goal sentinel")
        return self.registry.to_state(ids[-1])

    def _save_debug_image(self, state_id: int, state: PlacementState) -> None:
        import perch_search.plotting as perch_plot

        out = Path(self.config.debug_dir)
        out.mkdir(parents=True, exist_ok=True)
        depth = self.renderer.render(state.placements)
        perch_plot.save_depth_image(depth, out / f"expansion_{state_id:05d}.png", title=f"state {state_id}")
