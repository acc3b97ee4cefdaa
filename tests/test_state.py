import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import numpy as np
import pytest

from perch_search.state import (
    ContinuousPose,
    CostResult,
    INVALID_COST,
    Placement,
    PlacementState,
    TWO_PI,
    angular_distance,
    empty_state,
    goal_state,
    states_equal,
    states_equal_ordered,
    wrap_angle,
)


def _state(*items):
    return PlacementState(tuple(Placement(m, ContinuousPose(x, y, t)) for m, x, y, t in items))


def test_wrap_angle_range():
    for theta in (-7.0, -TWO_PI, -1e-12, 0.0, 3.0, TWO_PI, 13.0):
        w = wrap_angle(theta)
        assert 0.0 <= w < TWO_PI
    assert math.isclose(wrap_angle(-math.pi / 2), 1.5 * math.pi)
    assert ContinuousPose(0.0, 0.0, 2.5 * math.pi).yaw == pytest.approx(0.5 * math.pi)


def test_angular_distance_is_circular():
    assert angular_distance(0.05, TWO_PI - 0.05) == pytest.approx(0.1)
    assert angular_distance(0.0, math.pi) == pytest.approx(math.pi)


def test_unordered_equality_with_tolerance():
    a = _state((0, 0.10, 0.20, 0.0), (1, -0.10, 0.05, 1.0))
    b = _state((1, -0.11, 0.06, 1.05), (0, 0.115, 0.19, 0.02))
    assert states_equal(a, b)
    assert states_equal(b, a)
    assert states_equal(a, a)
    assert not states_equal_ordered(a, b)

    # 0.021 exceeds the position tolerance on x
    c = _state((0, 0.121, 0.20, 0.0), (1, -0.10, 0.05, 1.0))
    assert not states_equal(a, c)

    # different model sets never compare equal
    d = _state((0, 0.10, 0.20, 0.0), (2, -0.10, 0.05, 1.0))
    assert not states_equal(a, d)
    assert not states_equal(a, _state((0, 0.10, 0.20, 0.0)))


def test_yaw_ignored_for_symmetric_models():
    a = _state((0, 0.0, 0.0, 0.0))
    b = _state((0, 0.0, 0.0, 2.0))
    assert not states_equal(a, b, [False])
    assert states_equal(a, b, [True])
    # equality across the 0 / 2pi seam
    c = _state((0, 0.0, 0.0, TWO_PI - 0.05))
    assert states_equal(a, c, [False])


def test_append_only_and_unique_ids():
    s = empty_state()
    s1 = s.append(Placement(1, ContinuousPose(0.1, 0.1)))
    s2 = s1.append(Placement(0, ContinuousPose(-0.1, 0.1)))
    assert len(s) == 0 and len(s1) == 1 and len(s2) == 2
    assert s2.placements[:1] == s1.placements
    assert s2.parent() == s1
    assert s2.model_ids == (1, 0)
    assert s2.contains(0) and not s1.contains(0)
    with pytest.raises(ValueError):
        s2.append(Placement(1, ContinuousPose(0.0, 0.0)))


def test_with_last_pose_moves_only_last():
    s = _state((0, 0.0, 0.0, 0.0), (1, 0.2, 0.0, 0.0))
    moved = s.with_last_pose(ContinuousPose(0.21, -0.01, 0.3))
    assert moved.placements[0] == s.placements[0]
    assert np.allclose(moved.last.pose.as_array(), [0.21, -0.01, 0.3])
    with pytest.raises(ValueError):
        empty_state().with_last_pose(ContinuousPose(0.0, 0.0))


def test_goal_sentinel_and_invalid_result():
    g = goal_state()
    assert g.is_goal_sentinel()
    assert not empty_state().is_goal_sentinel()
    res = CostResult.invalid(g)
    assert res.cost == INVALID_COST and not res.is_valid
