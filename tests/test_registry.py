import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from perch_search.errors import StateLookupError
from perch_search.registry import StateRegistry
from perch_search.state import ContinuousPose, Placement, PlacementState, empty_state, goal_state


def _state(*items):
    return PlacementState(tuple(Placement(m, ContinuousPose(x, y, t)) for m, x, y, t in items))


def test_ids_are_sequential_and_idempotent():
    reg = StateRegistry([False, True])
    assert reg.to_id(goal_state()) == 0
    assert reg.to_id(empty_state()) == 1
    a = _state((0, 0.1, 0.1, 0.0))
    sid = reg.to_id(a)
    assert sid == 2
    assert reg.to_id(a) == sid
    # within tolerance maps to the same id
    assert reg.to_id(_state((0, 0.11, 0.09, 0.05))) == sid
    # placement order does not matter
    ab = _state((0, 0.1, 0.1, 0.0), (1, -0.1, 0.0, 0.0))
    ba = _state((1, -0.1, 0.0, 3.0), (0, 0.1, 0.1, 0.0))
    assert reg.to_id(ab) == reg.to_id(ba)
    assert len(reg) == 4
    assert list(reg.ids()) == [0, 1, 2, 3]


def test_unknown_id_raises_lookup_error():
    reg = StateRegistry([False])
    reg.to_id(empty_state())
    with pytest.raises(StateLookupError) as info:
        reg.to_state(5)
    assert info.value.state_id == 5
    with pytest.raises(LookupError):
        reg.to_state(-1)
    assert 0 in reg and np.int64(0) in reg
    assert 1 not in reg and "0" not in reg


def test_first_registration_wins():
    reg = StateRegistry([False], position_tolerance=0.02)
    first = reg.to_id(_state((0, 0.000, 0.0, 0.0)))
    second = reg.to_id(_state((0, 0.030, 0.0, 0.0)))
    assert first != second
    # 0.015 is within tolerance of both; the earlier id is returned
    assert reg.to_id(_state((0, 0.015, 0.0, 0.0))) == first


def test_find_with_exclude_and_replace():
    reg = StateRegistry([False])
    a = reg.to_id(_state((0, 0.0, 0.0, 0.0)))
    b = reg.to_id(_state((0, 0.1, 0.0, 0.0)))
    refined = _state((0, 0.005, 0.0, 0.0))
    assert reg.find(refined, exclude=b) == a
    assert reg.find(refined, exclude=a) is None

    reg.replace(b, _state((0, 0.2, 0.0, 0.0)))
    assert reg.to_state(b).last.pose.x == pytest.approx(0.2)
    assert reg.find(_state((0, 0.21, 0.0, 0.0))) == b
    with pytest.raises(StateLookupError):
        reg.replace(9, refined)
