import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from perch_search.errors import StateLookupError
from perch_search.heuristics import DEFAULT_RESIDUAL
from perch_search.state import ContinuousPose, Placement, PlacementState


def test_simple_heuristics(env):
    start, goal = env.start_state_id, env.goal_state_id
    assert env.get_goal_heuristic(start, 0) == 0
    assert env.get_goal_heuristic(start, 1) == 2
    one = env.registry.to_id(PlacementState((Placement(1, ContinuousPose(0.2, 0.0)),)))
    assert env.get_goal_heuristic(one, 1) == 1
    for index in range(3):
        assert env.get_goal_heuristic(goal, index) == 0


def test_bad_index_and_unknown_state(env):
    with pytest.raises(ValueError):
        env.get_goal_heuristic(env.start_state_id, 3)
    with pytest.raises(ValueError):
        env.get_goal_heuristic(env.start_state_id, -1)
    with pytest.raises(StateLookupError):
        env.get_goal_heuristic(999, 1)


def test_greedy_table_and_sum(env):
    env.precompute_heuristics()
    scores = env.heuristics.scores
    assert [s.residual for s in scores] == sorted(s.residual for s in scores)
    assert {s.model_id for s in scores} == {0, 1}
    # both models align somewhere on the grid
    assert all(s.residual < DEFAULT_RESIDUAL and s.pose is not None for s in scores)

    table = env.heuristics.table()
    assert list(table.columns) == ["model_id", "name", "residual", "x", "y", "yaw"]
    assert len(table) == 2

    mult = env.config.icp_cost_multiplier
    expected_start = sum(int(s.residual * mult) for s in scores)
    assert env.get_goal_heuristic(env.start_state_id, 2) == expected_start

    first = scores[0]
    state = PlacementState((Placement(first.model_id, ContinuousPose(0.0, 0.0)),))
    sid = env.registry.to_id(state)
    assert env.get_goal_heuristic(sid, 2) == int(scores[1].residual * mult)


def test_greedy_is_memoized_per_state(env):
    h = env.get_goal_heuristic(env.start_state_id, 2)
    env.heuristics.scores[0].residual += 1.0
    assert env.get_goal_heuristic(env.start_state_id, 2) == h


def test_greedy_rejects_poses_aligned_off_the_table(env, monkeypatch):
    from perch_search.alignment import AlignmentResult

    # every alignment drags the object 1 m away from any observed point
    monkeypatch.setattr(env.evaluator.icp, "align",
                        lambda pts: AlignmentResult(True, 1e-6, translation=(1.0, 0.0), iterations=1))
    scores = env.heuristics.precompute()
    assert all(s.residual == DEFAULT_RESIDUAL and s.pose is None for s in scores)
