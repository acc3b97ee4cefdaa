import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import multiprocessing as mp
import threading

import pytest

from perch_search.comm import PipeCommunicator, SerialCommunicator
from perch_search.errors import WorkerFailure
from perch_search.scheduler import (
    STOP,
    DistributedCostScheduler,
    WorkerSpec,
    padded_count,
    run_worker_loop,
)
from perch_search.state import ContinuousPose, CostResult, Placement, PlacementState, StateProperties, empty_state
from perch_search.successors import Candidate
from perch_search.wire import pack_requests


@pytest.mark.parametrize("n, pool, expected", [
    (0, 4, 0),
    (1, 1, 1),
    (5, 1, 5),
    (1, 4, 4),
    (4, 4, 4),
    (5, 4, 8),
    (9, 3, 9),
])
def test_padded_count(n, pool, expected):
    assert padded_count(n, pool) == expected


def test_padded_count_rejects_empty_pool():
    with pytest.raises(ValueError):
        padded_count(3, 0)


def _candidates(env, poses):
    out = []
    parent = empty_state()
    for model_id, x, y in poses:
        child = parent.append(Placement(model_id, ContinuousPose(x, y)))
        out.append(Candidate(env.registry.to_id(child), parent, child))
    return out


def test_no_candidates_issue_no_collectives(env):
    class Silent(SerialCommunicator):
        def bcast(self, obj=None, **kw):
            raise AssertionError("collective issued for an empty batch")

    sched = DistributedCostScheduler(Silent(), env.evaluator, env.registry, 4)
    assert sched.evaluate(env.start_state_id, []) == ([], [])


class SnapToOrigin:
    """Refines every placement onto the tall can at the origin."""

    def evaluate(self, parent, child, parent_id=-1, child_id=-1, *, use_source_cost=None):
        return CostResult(5, child.with_last_pose(ContinuousPose(0.0, 0.0)), StateProperties(900, 950))


def test_duplicate_refinements_collapse(env):
    sched = DistributedCostScheduler(SerialCommunicator(), SnapToOrigin(), env.registry, 4)
    cands = _candidates(env, [(0, -0.03, 0.0), (0, 0.03, 0.0)])
    assert cands[0].child_id != cands[1].child_id
    ids, costs = sched.evaluate(env.start_state_id, cands)
    assert ids == [cands[0].child_id] and costs == [5]
    assert sched.num_duplicates == 1
    kept = env.registry.to_state(ids[0]).last.pose
    assert (kept.x, kept.y) == (0.0, 0.0)
    assert sched.properties[ids[0]] == StateProperties(900, 950)

    # a later expansion refining onto the same costed state is redirected to it
    later = _candidates(env, [(0, 0.0, 0.08)])
    assert sched.evaluate(env.start_state_id, later) == ([cands[0].child_id], [5])
    assert sched.num_duplicates == 2


def test_duplicate_of_uncosted_state_is_dropped(env):
    sched = DistributedCostScheduler(SerialCommunicator(), SnapToOrigin(), env.registry, 4)
    env.registry.to_id(PlacementState((Placement(0, ContinuousPose(0.0, 0.0)),)))
    cands = _candidates(env, [(0, 0.03, 0.0)])
    assert sched.evaluate(env.start_state_id, cands) == ([], [])
    assert sched.num_duplicates == 1
    assert cands[0].child_id not in sched.properties


def test_results_never_exceed_candidates(env):
    cands = env.generator.generate(env.start_state_id)
    ids, costs = env.scheduler.evaluate(env.start_state_id, cands)
    assert len(ids) == len(costs) <= len(cands)
    assert len(set(ids)) == len(ids)
    assert all(c >= 0 for c in costs)
    assert env.scheduler.num_scheduled == len(cands)


def _thread_pool(spec, size):
    root_conns, threads = [], []
    for rank in range(1, size):
        a, b = mp.Pipe(duplex=True)
        root_conns.append(a)
        comm = PipeCommunicator(rank, size, [b], 30.0)
        t = threading.Thread(target=run_worker_loop, args=(comm, spec.build_evaluator(), 4), daemon=True)
        t.start()
        threads.append(t)
    return PipeCommunicator(0, size, root_conns, 30.0), threads


def _pack(cands, parent_id, pool):
    return pack_requests(
        ((c.parent_state, c.child_state, parent_id, c.child_id) for c in cands),
        padded_count(len(cands), pool),
        4,
    )


def test_pool_matches_serial(env, config, models, observation):
    cands = env.generator.generate(env.start_state_id)
    n = len(cands)
    serial = DistributedCostScheduler(SerialCommunicator(), env.evaluator, env.registry, 4)
    serial_results = serial.run(_pack(cands, env.start_state_id, 1))
    assert len(serial_results) == n

    spec = WorkerSpec.from_observation(config, models, observation)
    root, threads = _thread_pool(spec, 3)
    pooled = DistributedCostScheduler(root, spec.build_evaluator(), env.registry, 4)
    pooled_results = pooled.run(_pack(cands, env.start_state_id, 3))
    root.bcast(STOP)
    for t in threads:
        t.join(10.0)
    assert not any(t.is_alive() for t in threads)

    assert len(pooled_results) == padded_count(n, 3)
    assert pooled_results["cost"][:n].tolist() == serial_results["cost"].tolist()
    assert pooled_results["valid"][n:].tolist() == [0] * (padded_count(n, 3) - n)


def test_worker_failure_is_reported(env):
    class Broken:
        def evaluate(self, *args, **kwargs):
            raise RuntimeError("renderer exploded")

    a, b = mp.Pipe(duplex=True)
    worker = PipeCommunicator(1, 2, [b], 10.0)
    t = threading.Thread(target=run_worker_loop, args=(worker, Broken(), 4), daemon=True)
    t.start()
    root = PipeCommunicator(0, 2, [a], 10.0)
    sched = DistributedCostScheduler(root, env.evaluator, env.registry, 4)
    cands = _candidates(env, [(0, 0.0, 0.0), (1, 0.2, 0.0)])
    with pytest.raises(WorkerFailure) as info:
        sched.evaluate(env.start_state_id, cands)
    assert info.value.rank == 1
    assert "renderer exploded" in info.value.details
    root.bcast(STOP)
    t.join(10.0)
    assert not t.is_alive()


def test_scheduler_lives_on_rank_zero(env):
    a, _ = mp.Pipe()
    with pytest.raises(ValueError):
        DistributedCostScheduler(PipeCommunicator(1, 2, [a]), env.evaluator, env.registry, 4)
