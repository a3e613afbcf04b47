"""Worker pool used to fan voxel fits out over processes or threads.

The pool is created and sized outside the voxel loop; the loop only queries
how many workers are available and dispatches independent tasks to it. A
process-wide "active" pool can be registered with `start_pool`, which is what
the voxel loop falls back to when no pool is passed explicitly.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Iterable, List, Optional

import psutil
from joblib import Parallel, delayed

from mddmri.core.configuration import mio_opt


_ACTIVE_POOL: Optional["WorkerPool"] = None


def effective_worker_count() -> int:
    """Worker count (use scheduler hints when present)."""

    for key in ("SLURM_CPUS_PER_TASK", "SLURM_CPUS_ON_NODE", "OMP_NUM_THREADS"):
        v = os.environ.get(key, "").strip()
        if not v:
            continue
        try:
            n = int(v)
        except ValueError:
            continue
        if n > 0:
            return n
    return int(psutil.cpu_count(logical=False) or psutil.cpu_count() or 1)


class WorkerPool:
    """A fixed-size set of workers backed by a persistent joblib context.

    Results of `map` are returned in input order regardless of the order in
    which workers complete.
    """

    def __init__(self, n_workers: Optional[int] = None, backend: str = 'loky') -> None:
        if n_workers is None:
            n_workers = effective_worker_count()
        n_workers = int(n_workers)
        if n_workers < 1:
            raise ValueError(f"n_workers must be >= 1; got {n_workers}")

        self.backend = backend
        self._n_workers = n_workers
        self._parallel = Parallel(n_jobs=n_workers, backend=backend)
        self._parallel.__enter__()
        self._closed = False
        logging.debug(f"Worker pool started: workers={n_workers}, backend={backend}")

    @property
    def n_workers(self) -> int:
        if self._closed:
            raise RuntimeError("Worker pool has been closed")
        return self._n_workers

    @property
    def closed(self) -> bool:
        return self._closed

    def map(self, fn: Callable[[Any], Any], items: Iterable[Any]) -> List[Any]:
        """Apply `fn` to every item and block until all results are collected."""
        if self._closed:
            raise RuntimeError("Worker pool has been closed")
        return list(self._parallel(delayed(fn)(item) for item in items))

    def close(self) -> None:
        if self._closed:
            return
        self._parallel.__exit__(None, None, None)
        self._closed = True
        logging.debug("Worker pool closed")

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = 'closed' if self._closed else 'open'
        return f"WorkerPool(n_workers={self._n_workers}, backend={self.backend!r}, {state})"


def start_pool(n_workers: Optional[int] = None, backend: Optional[str] = None, opt: Any = None) -> WorkerPool:
    """Create a pool and register it as the process-wide active pool.

    Size and backend default to ``opt.n_workers`` / ``opt.backend``; explicit
    arguments take precedence.
    """
    global _ACTIVE_POOL
    opt = mio_opt(opt)
    if n_workers is None:
        n_workers = opt.n_workers
    if backend is None:
        backend = opt.backend

    if _ACTIVE_POOL is not None:
        _ACTIVE_POOL.close()
    _ACTIVE_POOL = WorkerPool(n_workers=n_workers, backend=backend)
    return _ACTIVE_POOL


def current_pool() -> Optional[WorkerPool]:
    """Return the active pool without creating one."""
    if _ACTIVE_POOL is not None and _ACTIVE_POOL.closed:
        return None
    return _ACTIVE_POOL


def shutdown_pool() -> None:
    global _ACTIVE_POOL
    if _ACTIVE_POOL is not None:
        _ACTIVE_POOL.close()
    _ACTIVE_POOL = None


def resolve_worker_count(pool: Optional[Any], no_parfor: bool = False) -> int:
    """Number of workers to dispatch to; 1 means run sequentially in-process.

    A missing, closed or unqueryable pool is not an error: the loop simply
    runs with a single worker.
    """
    if no_parfor or pool is None:
        return 1
    try:
        n = int(pool.n_workers)
    except (AttributeError, RuntimeError, TypeError, ValueError) as e:
        logging.debug(f"Worker pool unavailable ({e}); running sequentially")
        return 1
    return max(1, n)
