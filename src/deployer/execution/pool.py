"""
Bounded worker pool for pipeline runs.

Manifesto:
    Every accepted deploy request used to get its own task, so a burst of
    messages meant an unbounded number of concurrent deploys. The pool caps
    concurrency at ``max_workers``, queues at most ``max_pending`` accepted
    requests, and gives the dispatcher one explicit admission point:
    ``try_submit`` either admits or raises :class:`PoolSaturatedError`.

Architecture:
    ::

        Dispatcher ──try_submit()──► asyncio.Queue(max_pending)
                   └─submit()  (waits for room: backpressure)
                                         │
                      ┌──────────────────┼──────────────────┐
                      ▼                  ▼                  ▼
                  worker-0           worker-1   ...    worker-N-1
                      │  executor.run(pipeline, data)
                      ▼
                  PipelineRun (logged, counted)

        shutdown(timeout):
            1. close admission
            2. wait up to *timeout* for queued + running jobs
            3. cancel whatever is left (children are killed)

Tags:
    deployer, execution, worker-pool, backpressure, asyncio
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from deployer.config.models import DeployablePipeline
from deployer.core.errors import PoolClosedError, PoolSaturatedError
from deployer.core.logging import get_logger
from deployer.execution.executor import PipelineRun

logger = get_logger(__name__)


class PipelineRunner(Protocol):
    async def run(self, pipeline: DeployablePipeline, data: Mapping[str, str]) -> PipelineRun: ...


@dataclass(frozen=True)
class DeployJob:
    """An accepted request waiting for a worker."""

    pipeline: DeployablePipeline
    data: Mapping[str, str]
    delivery_id: int | None = None


@dataclass
class PoolStats:
    """Counters for the lifetime of the pool."""

    admitted: int = 0
    completed: int = 0
    failed: int = 0
    crashed: int = 0
    saturated: int = 0
    abandoned: int = 0
    active: int = 0
    pending: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "completed": self.completed,
            "failed": self.failed,
            "crashed": self.crashed,
            "saturated": self.saturated,
            "abandoned": self.abandoned,
            "active": self.active,
            "pending": self.pending,
        }


class PipelinePool:
    """Runs :class:`DeployJob` items on a fixed number of asyncio workers.

    Parameters
    ----------
    runner : PipelineRunner
        Usually an :class:`~deployer.execution.executor.ActionExecutor`.
    max_workers : int
        Pipelines running at the same time.
    max_pending : int
        Admitted jobs waiting for a free worker.
    """

    def __init__(self, runner: PipelineRunner, *, max_workers: int = 4, max_pending: int = 64) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self._runner = runner
        self._max_workers = max_workers
        self._max_pending = max_pending
        self._queue: asyncio.Queue[DeployJob] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False
        self._stats = PoolStats()

    # ── Properties ───────────────────────────────────────────────────

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def max_pending(self) -> int:
        return self._max_pending

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def started(self) -> bool:
        return bool(self._workers)

    def stats(self) -> PoolStats:
        self._stats.pending = self.pending
        return self._stats

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the worker tasks on the running event loop."""
        if self._workers:
            logger.warning("pool_already_started")
            return
        self._queue = asyncio.Queue(maxsize=self._max_pending)
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"pipeline-worker-{n}")
            for n in range(self._max_workers)
        ]
        logger.info("pool_started", max_workers=self._max_workers, max_pending=self._max_pending)

    async def shutdown(self, timeout: float | None = 30.0) -> bool:
        """Stop admission, wait for outstanding work, cancel the rest.

        Returns:
            ``True`` when every admitted job finished before the deadline.
        """
        self._closed = True
        if not self._workers or self._queue is None:
            return True

        outstanding = self.pending + self._stats.active
        logger.info("pool_draining", outstanding=outstanding, timeout=timeout)

        drained = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            drained = False

        if not drained:
            abandoned = self._discard_queued() + self._stats.active
            self._stats.abandoned += abandoned
            logger.warning("pool_abandoning_jobs", abandoned=abandoned)

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        logger.info("pool_stopped", drained=drained, **self._stats.to_dict())
        return drained

    # ── Admission ────────────────────────────────────────────────────

    def try_submit(self, job: DeployJob) -> None:
        """Admit *job* if there is room.

        Raises:
            PoolClosedError: the pool is shutting down or was never started.
            PoolSaturatedError: ``max_pending`` jobs are already waiting.
        """
        queue = self._require_open()
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            self._stats.saturated += 1
            raise PoolSaturatedError(queue.qsize()).with_context(
                tag=job.pipeline.tag, delivery_id=job.delivery_id
            ) from None
        self._stats.admitted += 1

    async def submit(self, job: DeployJob) -> None:
        """Admit *job*, waiting for room in the pending queue."""
        queue = self._require_open()
        await queue.put(job)
        self._stats.admitted += 1

    def _require_open(self) -> asyncio.Queue[DeployJob]:
        if self._closed:
            raise PoolClosedError("worker pool is shut down")
        if self._queue is None:
            raise PoolClosedError("worker pool is not started")
        return self._queue

    # ── Workers ──────────────────────────────────────────────────────

    async def _worker(self, number: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            self._stats.active += 1
            try:
                run = await self._runner.run(job.pipeline, job.data)
                if run.succeeded:
                    self._stats.completed += 1
                else:
                    self._stats.failed += 1
            except Exception:
                self._stats.crashed += 1
                logger.exception(
                    "pipeline_crashed",
                    worker=number,
                    tag=job.pipeline.tag,
                    delivery_id=job.delivery_id,
                )
            finally:
                self._stats.active -= 1
                self._queue.task_done()

    def _discard_queued(self) -> int:
        assert self._queue is not None
        discarded = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return discarded
            logger.warning("deploy_abandoned", tag=job.pipeline.tag, delivery_id=job.delivery_id)
            self._queue.task_done()
            discarded += 1
