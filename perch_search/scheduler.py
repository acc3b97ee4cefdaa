r"""
Fan-out of candidate costing over the process pool.

One expansion step, executed identically by every rank:

1. ``bcast`` the per-rank record count :math:`N'/P` (0 is the stop message);
2. ``scatter`` equal partitions of the packed request array;
3. evaluate the valid records of the local partition;
4. ``gather`` the packed result arrays at rank 0.

Here :math:`N' = P\,\lceil N/P \rceil` is the smallest multiple of the pool size
:math:`P` not below the number of candidates :math:`N`; the
:math:`N' - N` trailing records are invalid padding.

Rank 0 then deduplicates the refined children against the registry, caches
their depth ranges, and returns the surviving ``(ids, costs)``.
"""

from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from perch_search.comm import Communicator
from perch_search.config import EnvConfig
from perch_search.cost import CostEvaluator
from perch_search.errors import DistributedProtocolMismatch, WorkerFailure
from perch_search.models import ObjectModel
from perch_search.observation import Observation
from perch_search.registry import StateRegistry
from perch_search.renderer import Camera, DepthRenderer
from perch_search.state import CostResult, StateProperties
from perch_search.successors import Candidate
from perch_search.wire import pack_requests, pack_results, unpack_request, unpack_result

logger = logging.getLogger(__name__)

__all__ = [
    "padded_count",
    "evaluate_partition",
    "DistributedCostScheduler",
    "run_worker_loop",
    "WorkerSpec",
    "worker_main",
]

STOP = 0


class _Failure(NamedTuple):
    rank: int
    details: str


def padded_count(n: int, pool_size: int) -> int:
    """Smallest multiple of ``pool_size`` that is >= ``n`` (0 for ``n == 0``)."""
    if pool_size <= 0:
        raise ValueError("pool size must be positive")
    if n <= 0:
        return 0
    return -(-n // pool_size) * pool_size


def evaluate_partition(
    evaluator: CostEvaluator,
    requests: np.ndarray,
    capacity: int,
    *,
    use_source_cost: Optional[bool] = False,
) -> np.ndarray:
    """Cost every valid request record; padding records map to invalid results."""
    results: List[Optional[CostResult]] = []
    for rec in requests:
        if not int(rec["valid"]):
            results.append(None)
            continue
        parent, child, parent_id, child_id = unpack_request(rec)
        results.append(evaluator.evaluate(parent, child, parent_id, child_id, use_source_cost=use_source_cost))
    return pack_results(results, capacity)


class DistributedCostScheduler:
    r"""
    Coordinator side of the cost fan-out.

    Parameters
    ----------
    comm : Communicator
        Rank-0 communicator of the pool (a :class:`SerialCommunicator` runs
        everything in-process).
    evaluator : CostEvaluator
        Local evaluator of rank 0.
    registry : StateRegistry
        Canonical state table; refined children are written back here.
    capacity : int
        Wire capacity (maximum placements per record).
    properties : dict, optional
        Shared ``state id -> StateProperties`` cache.

    Notes
    -----
    The source cost term keeps per-state claimed-pixel sets that only exist in
    the process that computed them, so it is honoured only when the pool has a
    single process.
    """

    def __init__(
        self,
        comm: Communicator,
        evaluator: CostEvaluator,
        registry: StateRegistry,
        capacity: int,
        properties: Optional[Dict[int, StateProperties]] = None,
    ) -> None:
        if comm.rank != 0:
            raise ValueError("the scheduler runs on rank 0 only")
        self.comm = comm
        self.evaluator = evaluator
        self.registry = registry
        self.capacity = int(capacity)
        self.properties: Dict[int, StateProperties] = {} if properties is None else properties
        self.num_scheduled = 0
        self.num_valid = 0
        self.num_duplicates = 0
        self.elapsed = 0.0

    @property
    def pool_size(self) -> int:
        return self.comm.size

    def _collect(self, gathered: Optional[List[Any]]) -> np.ndarray:
        if gathered is None or len(gathered) != self.comm.size:
            raise DistributedProtocolMismatch("gather did not return one block per rank")
        for block in gathered:
            if isinstance(block, _Failure):
                raise WorkerFailure(block.rank, block.details)
        return np.concatenate(gathered)

    def run(self, requests: np.ndarray) -> np.ndarray:
        """One collective step over an already padded request array."""
        P = self.comm.size
        if len(requests) % P:
            raise ValueError(f"{len(requests)} records do not split evenly over {P} ranks")
        per = len(requests) // P
        self.comm.bcast(per)
        local = self.comm.scatter([requests[i * per:(i + 1) * per] for i in range(P)])
        source_cost = None if P == 1 else False
        try:
            block: Any = evaluate_partition(self.evaluator, local, self.capacity, use_source_cost=source_cost)
        except Exception:
            logger.exception("Local evaluation failed on rank 0")
            # finish the collective so workers are not left blocked in gather
            self.comm.gather(_Failure(0, traceback.format_exc()))
            raise
        return self._collect(self.comm.gather(block))

    def evaluate(self, parent_id: int, candidates: Sequence[Candidate]) -> Tuple[List[int], List[int]]:
        r"""
        Cost ``candidates`` of ``parent_id`` across the pool.

        Returns
        -------
        ids, costs : list of int
            Surviving successors, at most ``len(candidates)`` of them.
        """
        n = len(candidates)
        if n == 0:
            return [], []
        t0 = time.perf_counter()
        requests = pack_requests(
            ((c.parent_state, c.child_state, parent_id, c.child_id) for c in candidates),
            padded_count(n, self.comm.size),
            self.capacity,
        )
        results = self.run(requests)[:n]
        ids, costs = self._merge(candidates, results)
        self.num_scheduled += n
        self.num_valid += len(ids)
        self.elapsed += time.perf_counter() - t0
        return ids, costs

    def _merge(self, candidates: Sequence[Candidate], results: np.ndarray) -> Tuple[List[int], List[int]]:
        ids: List[int] = []
        costs: List[int] = []
        emitted = set()
        for cand, rec in zip(candidates, results):
            res = unpack_result(rec)
            if not res.is_valid:
                continue
            dup = self.registry.find(res.adjusted_state, exclude=cand.child_id)
            if dup is not None:
                self.num_duplicates += 1
                # an earlier valid registration wins; the edge is redirected to it
                if dup in self.properties and dup not in emitted:
                    emitted.add(dup)
                    ids.append(dup)
                    costs.append(res.cost)
                continue
            if cand.child_id in emitted:
                continue
            self.registry.replace(cand.child_id, res.adjusted_state)
            self.properties[cand.child_id] = res.properties
            emitted.add(cand.child_id)
            ids.append(cand.child_id)
            costs.append(res.cost)
        return ids, costs


def run_worker_loop(comm: Communicator, evaluator: CostEvaluator, capacity: int) -> int:
    """Serve expansion steps until the stop message; returns the number of steps served."""
    steps = 0
    while True:
        per = comm.bcast(None, timeout=None)
        if not per:
            logger.debug("rank %d: stop after %d steps", comm.rank, steps)
            return steps
        chunk = comm.scatter(None)
        if len(chunk) != per:
            raise DistributedProtocolMismatch(f"rank {comm.rank}: expected {per} records, got {len(chunk)}")
        try:
            block: Any = evaluate_partition(evaluator, chunk, capacity, use_source_cost=False)
        except Exception:
            logger.exception("rank %d: evaluation failed", comm.rank)
            block = _Failure(comm.rank, traceback.format_exc())
        comm.gather(block)
        steps += 1


@dataclass
class WorkerSpec:
    """Everything a spawned worker needs to rebuild its own evaluator."""
    config: EnvConfig
    models: List[ObjectModel]
    depth: np.ndarray
    camera_pose: np.ndarray
    cloud: Optional[np.ndarray] = None

    @classmethod
    def from_observation(cls, config: EnvConfig, models: Sequence[ObjectModel],
                         observation: Observation) -> "WorkerSpec":
        return cls(config, list(models), observation.depth, observation.camera.pose, observation.cloud)

    def build_evaluator(self) -> CostEvaluator:
        camera = Camera(self.config.camera, self.camera_pose)
        observation = Observation(self.depth, camera, self.cloud, downsample_leaf=self.config.downsample_leaf)
        renderer = DepthRenderer(
            self.models, camera,
            table_height=self.config.table_height,
            splat_radius=self.config.splat_radius,
        )
        return CostEvaluator(self.config, self.models, observation, renderer)


def worker_main(comm: Communicator, spec: WorkerSpec) -> None:
    """Entry point of a spawned worker process."""
    evaluator = spec.build_evaluator()
    comm.barrier()
    logger.debug("rank %d ready", comm.rank)
    run_worker_loop(comm, evaluator, spec.config.wire_capacity)
