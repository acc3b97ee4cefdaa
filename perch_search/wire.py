r"""
Fixed-capacity wire records exchanged between coordinator and workers.

States travel as numpy structured records: a ``count`` field followed by
arrays of ``capacity`` slots for model ids, discrete poses and continuous
poses. Unused slots hold model id ``-1`` and zero poses. The explicit count
makes decoding length-aware; a state with more placements than slots raises
:class:`~perch_search.errors.WireCapacityError` instead of being truncated.

Request record (coordinator → worker)::

    parent_count, parent_model, parent_disc, parent_pose,
    child_count,  child_model,  child_disc,  child_pose,
    parent_id, child_id, valid

Result record (worker → coordinator)::

    count, model, disc, pose, min_depth, max_depth, cost, valid
"""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, List, Tuple

import numpy as np

from perch_search.errors import WireCapacityError
from perch_search.state import (
    ContinuousPose,
    CostResult,
    DiscretePose,
    INVALID_COST,
    Placement,
    PlacementState,
    StateProperties,
)

__all__ = [
    "request_dtype",
    "result_dtype",
    "encode_state",
    "decode_state",
    "pack_requests",
    "unpack_request",
    "pack_results",
    "unpack_result",
]


def _state_fields(prefix: str, capacity: int) -> List[tuple]:
    return [
        (f"{prefix}count", np.int32),
        (f"{prefix}model", np.int32, (capacity,)),
        (f"{prefix}disc", np.int32, (capacity, 3)),
        (f"{prefix}pose", np.float64, (capacity, 3)),
    ]


@lru_cache(maxsize=None)
def request_dtype(capacity: int) -> np.dtype:
    return np.dtype(
        _state_fields("parent_", capacity)
        + _state_fields("child_", capacity)
        + [("parent_id", np.int64), ("child_id", np.int64), ("valid", np.int8)]
    )


@lru_cache(maxsize=None)
def result_dtype(capacity: int) -> np.dtype:
    return np.dtype(
        _state_fields("", capacity)
        + [("min_depth", np.uint16), ("max_depth", np.uint16), ("cost", np.int64), ("valid", np.int8)]
    )


def encode_state(record: np.void, prefix: str, state: PlacementState) -> None:
    """Write ``state`` into the ``prefix``-named fields of one structured record."""
    capacity = record[f"{prefix}model"].shape[0]
    n = len(state)
    if n > capacity:
        raise WireCapacityError(f"state with {n} placements exceeds wire capacity {capacity}")
    model = np.full(capacity, -1, dtype=np.int32)
    disc = np.zeros((capacity, 3), dtype=np.int32)
    pose = np.zeros((capacity, 3), dtype=np.float64)
    for i, p in enumerate(state.placements):
        model[i] = p.model_id
        disc[i] = (p.discrete.x, p.discrete.y, p.discrete.theta)
        pose[i] = (p.pose.x, p.pose.y, p.pose.yaw)
    record[f"{prefix}count"] = n
    record[f"{prefix}model"] = model
    record[f"{prefix}disc"] = disc
    record[f"{prefix}pose"] = pose


def decode_state(record: np.void, prefix: str) -> PlacementState:
    n = int(record[f"{prefix}count"])
    capacity = record[f"{prefix}model"].shape[0]
    if not (0 <= n <= capacity):
        raise WireCapacityError(f"record count {n} outside [0, {capacity}]")
    model, disc, pose = record[f"{prefix}model"], record[f"{prefix}disc"], record[f"{prefix}pose"]
    return PlacementState(tuple(
        Placement(
            int(model[i]),
            ContinuousPose(float(pose[i, 0]), float(pose[i, 1]), float(pose[i, 2])),
            DiscretePose(int(disc[i, 0]), int(disc[i, 1]), int(disc[i, 2])),
        )
        for i in range(n)
    ))


def pack_requests(
    items: Iterable[Tuple[PlacementState, PlacementState, int, int]],
    padded_count: int,
    capacity: int,
) -> np.ndarray:
    r"""
    Pack ``(parent, child, parent_id, child_id)`` items into ``padded_count`` records.

    Records beyond the supplied items are padding with ``valid = 0``.
    """
    out = np.zeros(padded_count, dtype=request_dtype(capacity))
    out["parent_model"] = -1
    out["child_model"] = -1
    out["parent_id"] = -1
    out["child_id"] = -1
    for i, (parent, child, parent_id, child_id) in enumerate(items):
        if i >= padded_count:
            raise ValueError(f"more items than the padded count {padded_count}")
        rec = out[i]
        encode_state(rec, "parent_", parent)
        encode_state(rec, "child_", child)
        rec["parent_id"] = parent_id
        rec["child_id"] = child_id
        rec["valid"] = 1
    return out


def unpack_request(record: np.void) -> Tuple[PlacementState, PlacementState, int, int]:
    return (
        decode_state(record, "parent_"),
        decode_state(record, "child_"),
        int(record["parent_id"]),
        int(record["child_id"]),
    )


def pack_results(results: Iterable[CostResult | None], capacity: int) -> np.ndarray:
    """Pack per-request results; ``None`` marks a padding slot."""
    results = list(results)
    out = np.zeros(len(results), dtype=result_dtype(capacity))
    out["model"] = -1
    out["cost"] = INVALID_COST
    for i, res in enumerate(results):
        if res is None:
            continue
        rec = out[i]
        encode_state(rec, "", res.adjusted_state)
        rec["min_depth"] = res.properties.min_depth
        rec["max_depth"] = res.properties.max_depth
        rec["cost"] = res.cost
        rec["valid"] = 1 if res.is_valid else 0
    return out


def unpack_result(record: np.void) -> CostResult:
    if not int(record["valid"]):
        return CostResult.invalid(decode_state(record, ""))
    return CostResult(
        int(record["cost"]),
        decode_state(record, ""),
        StateProperties(int(record["min_depth"]), int(record["max_depth"])),
    )
