# src/adaptive_trials/core/batch.py
"""
Module: core.batch
Purpose: Run many independent replicates of a specification, sequentially or on
         a caller-owned process pool, reproducibly.

Replicate i always uses the stream SeedSequence([base_seed, STREAM_REPLICATE, i]),
so results do not depend on worker count, chunking or completion order. Results
are re-ordered by replicate index before being returned. A failing replicate
aborts the batch; nothing is retried.
"""
from __future__ import annotations

import logging
import math
import os
import time
from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..io.seeds import replicate_rng, resolve_entropy
from .engine import run_trial
from .models import BatchResult, ReplicateResult
from .spec import TrialSpecification

LOG = logging.getLogger(__name__)

CHUNKS_PER_WORKER = 4


def _run_chunk(spec: TrialSpecification, base_seed: int, sparse: bool, indices: Sequence[int]) -> List[ReplicateResult]:
    """Top-level worker so it can be pickled by ProcessPoolExecutor."""
    out = []
    for i in indices:
        try:
            out.append(run_trial(spec, replicate_rng(base_seed, i), seed=base_seed, sparse=sparse, sim=i))
        except Exception:
            LOG.error("replicate %d failed (base_seed=%d)", i, base_seed)
            raise
    return out


def _chunks(n: int, size: int) -> List[range]:
    return [range(start, min(start + size, n)) for start in range(0, n, size)]


class WorkerPool:
    """
    Explicitly owned process pool.

    `cores=1` runs every task inline in the calling process. Use as a context manager
    or call open()/close(); the pool can be shared by several batches and bootstraps.
    """

    def __init__(self, cores: Optional[int] = None) -> None:
        if cores is None:
            cores = os.cpu_count() or 1
        if isinstance(cores, bool) or not isinstance(cores, int) or cores < 1:
            raise ValueError(f"cores must be a positive int, got {cores!r}")
        self.cores = cores
        self._executor: Optional[ProcessPoolExecutor] = None

    @property
    def is_open(self) -> bool:
        return self.cores == 1 or self._executor is not None

    def open(self) -> "WorkerPool":
        if self.cores > 1 and self._executor is None:
            LOG.debug("starting process pool with %d workers", self.cores)
            self._executor = ProcessPoolExecutor(max_workers=self.cores)
        return self

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def chunk_size(self, n_tasks: int) -> int:
        return max(1, math.ceil(n_tasks / (self.cores * CHUNKS_PER_WORKER)))

    def map_chunks(self, fn: Callable[..., List[Any]], chunks: Sequence[Any], *args: Any) -> List[List[Any]]:
        """Call fn(*args, chunk) for every chunk; results come back in chunk order."""
        if not self.is_open:
            raise RuntimeError("WorkerPool is not open; use it as a context manager or call open()")
        if self._executor is None:
            return [fn(*args, chunk) for chunk in chunks]

        futs: Dict[Future, int] = {self._executor.submit(fn, *args, chunk): k for k, chunk in enumerate(chunks)}
        out: List[Optional[List[Any]]] = [None] * len(chunks)
        try:
            for fut in as_completed(futs):
                out[futs[fut]] = fut.result()
        except Exception:
            for fut in futs:
                fut.cancel()
            raise
        return out  # type: ignore[return-value]


class BatchRunner:
    """Runs replicates of one specification, optionally on a shared WorkerPool."""

    def __init__(
        self,
        spec: TrialSpecification,
        *,
        sparse: bool = True,
        pool: Optional[WorkerPool] = None,
    ) -> None:
        if not isinstance(spec, TrialSpecification):
            raise TypeError("spec must be a TrialSpecification")
        self.spec = spec
        self.sparse = bool(sparse)
        self.pool = pool

    def run(self, n_rep: int, base_seed: Optional[int] = None) -> BatchResult:
        if isinstance(n_rep, bool) or not isinstance(n_rep, int) or n_rep < 1:
            raise ValueError(f"n_rep must be a positive int, got {n_rep!r}")
        seed = resolve_entropy(base_seed)
        LOG.info("running %d replicates (base_seed=%d, sparse=%s)", n_rep, seed, self.sparse)
        t0 = time.perf_counter()

        if self.pool is None or self.pool.cores == 1:
            results = _run_chunk(self.spec, seed, self.sparse, range(n_rep))
        else:
            chunks = _chunks(n_rep, self.pool.chunk_size(n_rep))
            try:
                parts = self.pool.map_chunks(_run_chunk, chunks, self.spec, seed, self.sparse)
            except Exception:
                LOG.error("batch aborted: a replicate failed (base_seed=%d)", seed)
                raise
            results = [r for part in parts for r in part]
            results.sort(key=lambda r: r.sim)

        elapsed = time.perf_counter() - t0
        LOG.info("finished %d replicates in %.2fs", n_rep, elapsed)
        return BatchResult(
            spec=self.spec,
            results=results,
            n_rep=n_rep,
            base_seed=seed,
            elapsed_seconds=elapsed,
            sparse=self.sparse,
        )


def run_trials(
    spec: TrialSpecification,
    n_rep: int,
    base_seed: Optional[int] = None,
    sparse: bool = True,
    cores: Optional[int] = None,
    pool: Optional[WorkerPool] = None,
) -> BatchResult:
    """
    Simulate `n_rep` replicates of `spec`.

    `cores=None` without a `pool` runs sequentially. With `cores > 1` and no pool, a
    pool is created for this call only and closed afterwards.
    """
    if pool is not None:
        return BatchRunner(spec, sparse=sparse, pool=pool).run(n_rep, base_seed)
    if cores is None or cores == 1:
        return BatchRunner(spec, sparse=sparse).run(n_rep, base_seed)
    with WorkerPool(cores) as scoped:
        return BatchRunner(spec, sparse=sparse, pool=scoped).run(n_rep, base_seed)


__all__ = [
    "WorkerPool",
    "BatchRunner",
    "run_trials",
]
