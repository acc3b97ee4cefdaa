r"""
Collective communication for the coordinator/worker pool.

Every process of a pool holds a communicator with a ``rank`` (0 is the
coordinator) and the pool ``size``. All collectives are blocking and must be
issued in the same order by every process:

- ``bcast(obj)``: root's ``obj`` is returned everywhere;
- ``scatter(chunks)``: root supplies ``size`` chunks, rank ``i`` receives chunk ``i``;
- ``gather(item)``: root receives the list of all items in rank order,
  other ranks receive ``None``;
- ``barrier()``.

:class:`SerialCommunicator` is the single-process pool. :class:`PipeCommunicator`
implements a star topology over :func:`multiprocessing.Pipe` connections with
a receive deadline, so a process that leaves the common call sequence surfaces
as :class:`~perch_search.errors.CollectiveTimeout` (or
:class:`~perch_search.errors.DistributedProtocolMismatch` on a closed pipe or
an unexpected message) instead of hanging forever. :class:`ProcessGroup` spawns
and tears down the worker processes.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
from multiprocessing.connection import Connection
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from perch_search.errors import CollectiveTimeout, DistributedProtocolMismatch

logger = logging.getLogger(__name__)

__all__ = ["Communicator", "SerialCommunicator", "PipeCommunicator", "ProcessGroup"]

_DEFAULT = object()

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
LOG_DATEFMT = "%H:%M:%S"


class Communicator(Protocol):
    rank: int
    size: int

    def bcast(self, obj: Any = None, *, timeout: Any = _DEFAULT) -> Any: ...

    def scatter(self, chunks: Optional[Sequence[Any]] = None) -> Any: ...

    def gather(self, item: Any) -> Optional[List[Any]]: ...

    def barrier(self) -> None: ...


class SerialCommunicator:
    """Pool of one: the coordinator is the only worker."""

    rank = 0
    size = 1

    def bcast(self, obj: Any = None, *, timeout: Any = _DEFAULT) -> Any:
        return obj

    def scatter(self, chunks: Optional[Sequence[Any]] = None) -> Any:
        if chunks is None or len(chunks) != 1:
            raise DistributedProtocolMismatch("serial scatter expects exactly one chunk")
        return chunks[0]

    def gather(self, item: Any) -> Optional[List[Any]]:
        return [item]

    def barrier(self) -> None:
        return None


class PipeCommunicator:
    r"""
    Star-topology collectives over duplex pipes.

    Parameters
    ----------
    rank : int
        0 for the coordinator, ``1..size-1`` for workers.
    size : int
        Number of processes in the pool.
    conns : sequence of Connection
        On rank 0 one connection per worker (worker ``i`` at index ``i-1``);
        on a worker the single connection to rank 0.
    timeout : float or None
        Default receive deadline in seconds (``None`` waits forever).

    Notes
    -----
    Messages are ``(tag, payload)`` pairs; a receive that finds a different tag
    than the collective in progress raises
    :class:`~perch_search.errors.DistributedProtocolMismatch`.
    """

    def __init__(self, rank: int, size: int, conns: Sequence[Connection], timeout: Optional[float] = None) -> None:
        expected = size - 1 if rank == 0 else 1
        if len(conns) != expected:
            raise ValueError(f"rank {rank} needs {expected} connections, got {len(conns)}")
        self.rank = int(rank)
        self.size = int(size)
        self.conns = list(conns)
        self.timeout = timeout

    def _send(self, conn: Connection, tag: str, payload: Any) -> None:
        try:
            conn.send((tag, payload))
        except (BrokenPipeError, EOFError, OSError) as e:
            raise DistributedProtocolMismatch(f"rank {self.rank}: peer closed during {tag}") from e

    def _recv(self, conn: Connection, tag: str, timeout: Any) -> Any:
        limit = self.timeout if timeout is _DEFAULT else timeout
        try:
            if limit is not None and not conn.poll(limit):
                raise CollectiveTimeout(f"rank {self.rank}: no {tag} message within {limit:.1f}s")
            got, payload = conn.recv()
        except (EOFError, OSError) as e:
            raise DistributedProtocolMismatch(f"rank {self.rank}: peer closed during {tag}") from e
        if got != tag:
            raise DistributedProtocolMismatch(f"rank {self.rank}: expected {tag}, received {got}")
        return payload

    def bcast(self, obj: Any = None, *, timeout: Any = _DEFAULT) -> Any:
        if self.rank == 0:
            for c in self.conns:
                self._send(c, "bcast", obj)
            return obj
        return self._recv(self.conns[0], "bcast", timeout)

    def scatter(self, chunks: Optional[Sequence[Any]] = None) -> Any:
        if self.rank == 0:
            if chunks is None or len(chunks) != self.size:
                raise DistributedProtocolMismatch(f"scatter needs {self.size} chunks")
            for c, chunk in zip(self.conns, chunks[1:]):
                self._send(c, "scatter", chunk)
            return chunks[0]
        return self._recv(self.conns[0], "scatter", _DEFAULT)

    def gather(self, item: Any) -> Optional[List[Any]]:
        if self.rank == 0:
            return [item] + [self._recv(c, "gather", _DEFAULT) for c in self.conns]
        self._send(self.conns[0], "gather", item)
        return None

    def barrier(self) -> None:
        if self.rank == 0:
            for c in self.conns:
                self._recv(c, "barrier", _DEFAULT)
            for c in self.conns:
                self._send(c, "barrier", None)
        else:
            self._send(self.conns[0], "barrier", None)
            self._recv(self.conns[0], "barrier", _DEFAULT)

    def close(self) -> None:
        for c in self.conns:
            c.close()


def _bootstrap(
    rank: int,
    size: int,
    conn: Connection,
    timeout: Optional[float],
    log_level: int,
    target: Callable[..., None],
    args: Tuple[Any, ...],
) -> None:
    logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    comm = PipeCommunicator(rank, size, [conn], timeout)
    try:
        target(comm, *args)
    finally:
        comm.close()


class ProcessGroup:
    r"""
    Spawns ``size - 1`` worker processes wired to a rank-0 communicator.

    ``target(comm, *args)`` runs in every worker; it must be importable (the
    ``spawn`` start method pickles it by reference). On exit the group
    broadcasts ``stop_message`` and joins the workers, terminating any that do
    not exit within ``join_timeout``.

    Examples
    --------
    >>> with ProcessGroup(4, run_worker, (spec,), timeout=60.0) as comm:  # doctest: +SKIP
    ...     scheduler = DistributedCostScheduler(comm, evaluator, ...)
    """

    def __init__(
        self,
        size: int,
        target: Callable[..., None],
        args: Tuple[Any, ...] = (),
        *,
        timeout: Optional[float] = 600.0,
        stop_message: Any = 0,
        join_timeout: float = 10.0,
    ) -> None:
        if size < 2:
            raise ValueError("a process group needs at least one worker (size >= 2)")
        self.size = int(size)
        self.target = target
        self.args = tuple(args)
        self.timeout = timeout
        self.stop_message = stop_message
        self.join_timeout = float(join_timeout)
        self.processes: List[mp.process.BaseProcess] = []
        self.comm: Optional[PipeCommunicator] = None

    def start(self) -> PipeCommunicator:
        ctx = mp.get_context("spawn")
        level = logging.getLogger().getEffectiveLevel()
        root_conns: List[Connection] = []
        for rank in range(1, self.size):
            parent_end, child_end = ctx.Pipe(duplex=True)
            p = ctx.Process(
                target=_bootstrap,
                args=(rank, self.size, child_end, self.timeout, level, self.target, self.args),
                name=f"perch-worker-{rank}",
                daemon=True,
            )
            p.start()
            child_end.close()
            root_conns.append(parent_end)
            self.processes.append(p)
        self.comm = PipeCommunicator(0, self.size, root_conns, self.timeout)
        logger.info("Started %d worker processes", self.size - 1)
        return self.comm

    def shutdown(self) -> None:
        if self.comm is not None:
            try:
                self.comm.bcast(self.stop_message)
            except DistributedProtocolMismatch:
                logger.warning("Could not deliver the stop message to every worker")
            self.comm.close()
            self.comm = None
        for p in self.processes:
            p.join(self.join_timeout)
            if p.is_alive():
                logger.warning("Terminating unresponsive worker %s", p.name)
                p.terminate()
                p.join()
        self.processes.clear()

    def __enter__(self) -> PipeCommunicator:
        comm = self.start()
        try:
            comm.barrier()
        except Exception:
            self.shutdown()
            raise
        return comm

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()
