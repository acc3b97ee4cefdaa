from __future__ import annotations

import logging
import operator
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence

from perch_search.errors import StateLookupError
from perch_search.state import PlacementState, states_equal

logger = logging.getLogger(__name__)

__all__ = ["StateRegistry"]


class StateRegistry:
    r"""
    Canonical two-way mapping between placement states and integer ids.

    Ids are issued sequentially from 0 on first registration and stay valid for
    the lifetime of the registry; states are never evicted. Two states map to
    the same id when they are equal under :func:`perch_search.state.states_equal`
    (unordered, tolerance based, yaw ignored for symmetric models).

    Lookup is a linear scan restricted to the states holding exactly the same set
    of model ids (equal states always do), scanned in id order so the earliest
    registration wins when the tolerance relation is ambiguous.

    Parameters
    ----------
    symmetric : sequence of bool
        Symmetry flag per model id.
    position_tolerance, yaw_tolerance : float
        Equality tolerances.
    """

    __slots__ = ("symmetric", "position_tolerance", "yaw_tolerance", "_states", "_buckets")

    def __init__(
        self,
        symmetric: Sequence[bool],
        *,
        position_tolerance: float = 0.02,
        yaw_tolerance: float = 0.1,
    ) -> None:
        self.symmetric = tuple(bool(s) for s in symmetric)
        self.position_tolerance = float(position_tolerance)
        self.yaw_tolerance = float(yaw_tolerance)
        self._states: List[PlacementState] = []
        self._buckets: Dict[FrozenSet[int], List[int]] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, state_id: object) -> bool:
        try:
            i = operator.index(state_id)
        except TypeError:
            return False
        return 0 <= i < len(self._states)

    def ids(self) -> Iterator[int]:
        return iter(range(len(self._states)))

    def equal(self, a: PlacementState, b: PlacementState) -> bool:
        return states_equal(
            a, b, self.symmetric,
            position_tolerance=self.position_tolerance,
            yaw_tolerance=self.yaw_tolerance,
        )

    def find(self, state: PlacementState, exclude: Optional[int] = None) -> Optional[int]:
        """Id of a registered state equal to ``state`` (ignoring ``exclude``), or ``None``."""
        for sid in self._buckets.get(frozenset(state.model_ids), ()):
            if sid != exclude and self.equal(self._states[sid], state):
                return sid
        return None

    def to_id(self, state: PlacementState) -> int:
        """Id of ``state``; registers it under the next id when no equal state exists."""
        sid = self.find(state)
        if sid is not None:
            return sid
        sid = len(self._states)
        self._states.append(state)
        self._buckets.setdefault(frozenset(state.model_ids), []).append(sid)
        return sid

    def to_state(self, state_id: int) -> PlacementState:
        """
        State registered under ``state_id``.

        Raises
        ------
        StateLookupError
            If the id was never issued. Unknown ids indicate a logic or
            protocol error and are never mapped to an empty state.
        """
        if state_id not in self:
            raise StateLookupError(state_id)
        return self._states[operator.index(state_id)]

    def replace(self, state_id: int, state: PlacementState) -> None:
        """Store ``state`` (e.g. a pose-refined child) under an existing id."""
        old = self.to_state(state_id)
        old_key, new_key = frozenset(old.model_ids), frozenset(state.model_ids)
        if old_key != new_key:
            self._buckets[old_key].remove(state_id)
            bucket = self._buckets.setdefault(new_key, [])
            bucket.append(state_id)
            bucket.sort()
        self._states[state_id] = state
