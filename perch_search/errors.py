from __future__ import annotations

__all__ = [
    "PerchError",
    "ConfigurationError",
    "StateLookupError",
    "RenderFailure",
    "WireCapacityError",
    "DistributedProtocolMismatch",
    "CollectiveTimeout",
    "WorkerFailure",
]


class PerchError(Exception):
    """Base class for all errors raised by :mod:`perch_search`."""


class ConfigurationError(PerchError, ValueError):
    """Invalid model list, camera, bounds or capacity; fatal before search starts."""


class StateLookupError(PerchError, LookupError):
    """A state id was requested that the registry never issued."""

    def __init__(self, state_id: int) -> None:
        super().__init__(f"unknown state id {state_id}")
        self.state_id = int(state_id)


class RenderFailure(PerchError, RuntimeError):
    """Renderer used before configuration, with an unknown model, or re-entrantly."""


class WireCapacityError(PerchError, ValueError):
    """A state does not fit into the fixed-capacity wire records."""


class DistributedProtocolMismatch(PerchError, RuntimeError):
    """A process left the common sequence of collective calls."""


class CollectiveTimeout(DistributedProtocolMismatch):
    """A collective receive did not complete before its deadline."""


class WorkerFailure(DistributedProtocolMismatch):
    r"""
    A worker raised while evaluating its partition.

    The worker still takes part in the gather; it sends a failure marker instead
    of its result block, and the coordinator raises this error carrying the
    worker rank and formatted traceback.
    """

    def __init__(self, rank: int, details: str) -> None:
        super().__init__(f"worker {rank} failed:\n{details}")
        self.rank = int(rank)
        self.details = details
