r"""
Shared multi-heuristic A* (SMHA*) over an environment's successor contract.

Queue :math:`0` (anchor) is keyed by :math:`g + w_1 h_0`; queues
:math:`i = 1..n-1` by :math:`g + w_1 h_i`. Round robin over the inadmissible
queues: queue :math:`i` is expanded when

.. math:: \min_{\mathrm{OPEN}_i} \mathrm{key}_i \le w_2 \min_{\mathrm{OPEN}_0} \mathrm{key}_0,

otherwise the anchor is expanded. A state expanded from any queue leaves every
queue; it may re-enter the anchor queue if its :math:`g` later improves. The
search stops when the goal's :math:`g` does not exceed the minimum key of the
queue about to be expanded, so with :math:`w_1 = w_2 = 1` and an admissible
anchor the solution is optimal.
"""

from __future__ import annotations

import heapq
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

__all__ = ["SearchProblem", "PlannerStats", "MultiHeuristicAStar"]


class SearchProblem(Protocol):
    start_state_id: int
    goal_state_id: int

    def get_succs(self, state_id: int) -> Tuple[List[int], List[int]]: ...

    def get_goal_heuristic(self, state_id: int, index: int = 0) -> int: ...


@dataclass(slots=True)
class PlannerStats:
    expansions: int = 0
    anchor_expansions: int = 0
    generated: int = 0
    solution_cost: float = math.inf
    time_s: float = 0.0
    solved: bool = False


class MultiHeuristicAStar:
    r"""
    SMHA* driver.

    Parameters
    ----------
    problem : SearchProblem
        Supplies ``get_succs``, ``get_goal_heuristic`` and the start/goal ids.
    heuristics : sequence of int
        Heuristic indices; the first one is the anchor.
    inflation : float
        :math:`w_1`, weight on every heuristic.
    anchor_factor : float
        :math:`w_2`, slack of the inadmissible queues w.r.t. the anchor.
    max_time_s : float, optional
        Wall-clock budget; :meth:`plan` returns ``None`` when exceeded.
    first_solution : bool
        Stop as soon as the goal is generated instead of proving the bound.
    """

    def __init__(
        self,
        problem: SearchProblem,
        heuristics: Sequence[int] = (0, 1, 2),
        *,
        inflation: float = 1.0,
        anchor_factor: float = 1.0,
        max_time_s: Optional[float] = None,
        first_solution: bool = False,
    ) -> None:
        if not heuristics:
            raise ValueError("at least one (anchor) heuristic is required")
        if inflation < 1.0 or anchor_factor < 1.0:
            raise ValueError("inflation and anchor_factor must be >= 1")
        self.problem = problem
        self.heuristics = tuple(int(h) for h in heuristics)
        self.inflation = float(inflation)
        self.anchor_factor = float(anchor_factor)
        self.max_time_s = max_time_s
        self.first_solution = bool(first_solution)
        self.stats = PlannerStats()
        self._reset()

    def _reset(self) -> None:
        n = len(self.heuristics)
        self._g: Dict[int, float] = {}
        self._parent: Dict[int, Optional[int]] = {}
        self._h: Dict[Tuple[int, int], int] = {}
        self._open: List[List[Tuple[float, int, int]]] = [[] for _ in range(n)]
        self._closed_anchor: Set[int] = set()
        self._closed_inad: Set[int] = set()
        self._expanded_g: Dict[int, float] = {}
        self._counter = 0

    def _key(self, sid: int, i: int) -> float:
        hk = (sid, i)
        h = self._h.get(hk)
        if h is None:
            h = self._h[hk] = self.problem.get_goal_heuristic(sid, self.heuristics[i])
        return self._g[sid] + self.inflation * h

    def _push(self, sid: int) -> None:
        if sid not in self._closed_anchor:
            self._counter += 1
            heapq.heappush(self._open[0], (self._key(sid, 0), self._counter, sid))
        if sid not in self._closed_inad and sid not in self._closed_anchor:
            for i in range(1, len(self.heuristics)):
                self._counter += 1
                heapq.heappush(self._open[i], (self._key(sid, i), self._counter, sid))

    def _stale(self, i: int, key: float, sid: int) -> bool:
        if sid in self._closed_anchor:
            return True
        if i == 0:
            eg = self._expanded_g.get(sid)
            if eg is not None and self._g[sid] >= eg:
                return True
        elif sid in self._closed_inad:
            return True
        return key != self._key(sid, i)

    def _top(self, i: int) -> Optional[Tuple[float, int]]:
        heap = self._open[i]
        while heap:
            key, _, sid = heap[0]
            if self._stale(i, key, sid):
                heapq.heappop(heap)
                continue
            return key, sid
        return None

    def _expand(self, sid: int) -> None:
        self._expanded_g[sid] = self._g[sid]
        ids, costs = self.problem.get_succs(sid)
        self.stats.expansions += 1
        for nid, c in zip(ids, costs):
            self.stats.generated += 1
            new_g = self._g[sid] + c
            if new_g < self._g.get(nid, math.inf):
                self._g[nid] = new_g
                self._parent[nid] = sid
                self._push(nid)

    def _path(self, goal: int) -> List[int]:
        path = [goal]
        while self._parent[path[-1]] is not None:
            path.append(self._parent[path[-1]])
        return path[::-1]

    def plan(self) -> Optional[List[int]]:
        r"""
        Search from the start state to the goal sentinel.

        Returns
        -------
        list of int or None
            State ids from start to goal, or ``None`` when the open lists run
            dry or the time budget expires.
        """
        self._reset()
        self.stats = PlannerStats()
        start, goal = self.problem.start_state_id, self.problem.goal_state_id
        t0 = time.perf_counter()
        self._g[start] = 0.0
        self._parent[start] = None
        self._push(start)

        n = len(self.heuristics)
        i = 0
        path: Optional[List[int]] = None
        while path is None:
            if self.max_time_s is not None and time.perf_counter() - t0 > self.max_time_s:
                logger.warning("Search time budget of %.1fs exhausted after %d expansions",
                               self.max_time_s, self.stats.expansions)
                break
            g_goal = self._g.get(goal, math.inf)
            if self.first_solution and g_goal < math.inf:
                path = self._path(goal)
                break
            anchor = self._top(0)
            if anchor is None:
                if g_goal < math.inf:
                    path = self._path(goal)
                else:
                    logger.warning("Open list exhausted without reaching the goal")
                break
            i = i % (n - 1) + 1 if n > 1 else 0
            cand = self._top(i) if i > 0 else None
            if cand is not None and cand[0] <= self.anchor_factor * anchor[0]:
                if g_goal <= cand[0]:
                    path = self._path(goal)
                    break
                self._expand(cand[1])
                self._closed_inad.add(cand[1])
            else:
                if g_goal <= anchor[0]:
                    path = self._path(goal)
                    break
                self._expand(anchor[1])
                self.stats.anchor_expansions += 1
                self._closed_anchor.add(anchor[1])

        self.stats.time_s = time.perf_counter() - t0
        if path is not None:
            self.stats.solved = True
            self.stats.solution_cost = self._g[goal]
            logger.info("Solution cost %.0f after %d expansions (%.2fs)",
                        self.stats.solution_cost, self.stats.expansions, self.stats.time_s)
        return path
