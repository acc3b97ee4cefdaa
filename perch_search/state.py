from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

__all__ = [
    "TWO_PI",
    "GOAL_MODEL_ID",
    "INVALID_COST",
    "NO_DEPTH",
    "ContinuousPose",
    "DiscretePose",
    "Placement",
    "PlacementState",
    "StateProperties",
    "CostResult",
    "wrap_angle",
    "angular_distance",
    "poses_equal",
    "states_equal",
    "states_equal_ordered",
    "goal_state",
    "empty_state",
]

TWO_PI = 2.0 * math.pi

#: Model id of the terminal sentinel placement.
GOAL_MODEL_ID = -1

#: Cost returned for rejected successors (pruning or occlusion failure).
INVALID_COST = -1

#: Depth value (millimetres) of a pixel with no return.
NO_DEPTH = 20000


def wrap_angle(theta: float) -> float:
    r"""Map an angle to :math:`[0, 2\pi)`."""
    t = math.fmod(float(theta), TWO_PI)
    if t < 0.0:
        t += TWO_PI
    # fmod of values just below 0 can round up to exactly 2*pi
    if t >= TWO_PI:
        t = 0.0
    return t


def angular_distance(a: float, b: float) -> float:
    r"""
    Shortest circular distance between two angles.

    .. math:: d(a, b) = \min\bigl(|w(a) - w(b)|,\; 2\pi - |w(a) - w(b)|\bigr)

    where :math:`w` wraps to :math:`[0, 2\pi)`.
    """
    d = abs(wrap_angle(a) - wrap_angle(b))
    return min(d, TWO_PI - d)


@dataclass(frozen=True, slots=True)
class ContinuousPose:
    """Planar pose on the support plane; ``yaw`` is wrapped to [0, 2π)."""
    x: float
    y: float
    yaw: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))
        object.__setattr__(self, "yaw", wrap_angle(self.yaw))

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.yaw], dtype=np.float64)

    def xy(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=np.float64)


@dataclass(frozen=True, slots=True)
class DiscretePose:
    """Grid indices of the sample a pose was generated from. Informational only."""
    x: int = 0
    y: int = 0
    theta: int = 0


@dataclass(frozen=True, slots=True)
class Placement:
    """One object model assigned to one pose."""
    model_id: int
    pose: ContinuousPose
    discrete: DiscretePose = field(default_factory=DiscretePose)

    def with_pose(self, pose: ContinuousPose) -> "Placement":
        return Placement(self.model_id, pose, self.discrete)


@dataclass(frozen=True, slots=True)
class PlacementState:
    r"""
    Immutable, append-only sequence of placements.

    A state is a partial assignment of models to poses. Search edges never
    mutate a state: :meth:`append` returns a new state holding the old
    placements followed by exactly one new one, so every child contains its
    parent as a prefix.

    Attributes
    ----------
    placements : tuple of Placement
        Placements in the order they were added. Model ids are unique.
    """
    placements: Tuple[Placement, ...] = ()

    def __post_init__(self) -> None:
        ids = [p.model_id for p in self.placements]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate model ids in state: {ids}")

    def __len__(self) -> int:
        return len(self.placements)

    def __iter__(self) -> Iterator[Placement]:
        return iter(self.placements)

    @property
    def model_ids(self) -> Tuple[int, ...]:
        return tuple(p.model_id for p in self.placements)

    @property
    def last(self) -> Optional[Placement]:
        return self.placements[-1] if self.placements else None

    def contains(self, model_id: int) -> bool:
        return any(p.model_id == model_id for p in self.placements)

    def append(self, placement: Placement) -> "PlacementState":
        return PlacementState(self.placements + (placement,))

    def with_last_pose(self, pose: ContinuousPose) -> "PlacementState":
        """Copy of the state with the most recent placement moved to ``pose``."""
        if not self.placements:
            raise ValueError("cannot adjust the last placement of an empty state")
        return PlacementState(self.placements[:-1] + (self.placements[-1].with_pose(pose),))

    def parent(self) -> "PlacementState":
        return PlacementState(self.placements[:-1])

    def is_goal_sentinel(self) -> bool:
        return len(self.placements) == 1 and self.placements[0].model_id == GOAL_MODEL_ID


@dataclass(slots=True)
class StateProperties:
    """Depth range (millimetres) over the pixels newly covered by the last placement."""
    min_depth: int = NO_DEPTH
    max_depth: int = 0


@dataclass(slots=True)
class CostResult:
    r"""
    Outcome of costing one candidate edge.

    ``cost`` is either a non-negative integer or exactly :data:`INVALID_COST`.
    For invalid results ``adjusted_state`` is the unrefined child.
    """
    cost: int
    adjusted_state: PlacementState
    properties: StateProperties = field(default_factory=StateProperties)

    @property
    def is_valid(self) -> bool:
        return self.cost != INVALID_COST

    @classmethod
    def invalid(cls, state: PlacementState) -> "CostResult":
        return cls(INVALID_COST, state, StateProperties())


def _is_symmetric(symmetric: Sequence[bool], model_id: int) -> bool:
    return 0 <= model_id < len(symmetric) and bool(symmetric[model_id])


def poses_equal(
    a: ContinuousPose,
    b: ContinuousPose,
    *,
    symmetric: bool = False,
    position_tolerance: float = 0.02,
    yaw_tolerance: float = 0.1,
) -> bool:
    """Tolerance test on x, y and (for asymmetric models) wrapped yaw."""
    if abs(a.x - b.x) > position_tolerance or abs(a.y - b.y) > position_tolerance:
        return False
    if symmetric:
        return True
    return angular_distance(a.yaw, b.yaw) <= yaw_tolerance


def states_equal(
    s1: PlacementState,
    s2: PlacementState,
    symmetric: Sequence[bool] = (),
    *,
    position_tolerance: float = 0.02,
    yaw_tolerance: float = 0.1,
) -> bool:
    r"""
    Unordered state equality.

    Two states are equal when they hold the same set of model ids and, for each
    id, the poses agree within ``position_tolerance`` on both axes and within
    ``yaw_tolerance`` radians on the circle. The yaw test is skipped for models
    flagged in ``symmetric``. The relation is reflexive and symmetric (it is not
    transitive, which is why the registry keeps the first match).
    """
    if len(s1) != len(s2):
        return False
    other = {p.model_id: p.pose for p in s2.placements}
    for p in s1.placements:
        q = other.get(p.model_id)
        if q is None:
            return False
        if not poses_equal(
            p.pose, q,
            symmetric=_is_symmetric(symmetric, p.model_id),
            position_tolerance=position_tolerance,
            yaw_tolerance=yaw_tolerance,
        ):
            return False
    return True


def states_equal_ordered(
    s1: PlacementState,
    s2: PlacementState,
    symmetric: Sequence[bool] = (),
    *,
    position_tolerance: float = 0.02,
    yaw_tolerance: float = 0.1,
) -> bool:
    """Like :func:`states_equal` but the placement sequences must also line up."""
    if s1.model_ids != s2.model_ids:
        return False
    return all(
        poses_equal(
            p.pose, q.pose,
            symmetric=_is_symmetric(symmetric, p.model_id),
            position_tolerance=position_tolerance,
            yaw_tolerance=yaw_tolerance,
        )
        for p, q in zip(s1.placements, s2.placements)
    )


def goal_state() -> PlacementState:
    return PlacementState((Placement(GOAL_MODEL_ID, ContinuousPose(0.0, 0.0, 0.0)),))


def empty_state() -> PlacementState:
    return PlacementState(())
