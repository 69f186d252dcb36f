"""Bounded task executor: a fixed set of asyncio workers draining a task queue.

One executor is built per batch (domain, tournament or team granularity). Each
task runs in its own asyncio task raced against the per-task timeout, the
shutdown event and the deadline of the job that built the executor. A task
that loses the race is cancelled cooperatively and abandoned; the worker emits
a timeout or cancelled result and moves on. Cancelling ``run()`` itself tears
down the producer and every worker before re-raising.

Usage::

    executor = BoundedTaskExecutor("teams", worker_count=8, process=parse_team,
                                   task_timeout=60, key=lambda team: team.name)
    results = await executor.run(teams)

or, when producing and consuming incrementally::

    executor.start()
    producer = asyncio.create_task(feed(executor))  # add_task(...), close(), wait()
    async for result in executor.results():
        ...
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    Optional,
    TypeVar,
)

from statcrawl.main.exceptions import TaskCancelledError, TaskTimeoutError
from statcrawl.main.logging import get_logger
from statcrawl.main.run_context import current_deadline

if TYPE_CHECKING:
    from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics

logger = get_logger(__name__)

P = TypeVar("P")
R = TypeVar("R")

_STOP = object()
_DONE = object()


@dataclass(frozen=True)
class Task(Generic[P]):
    payload: P
    index: int
    total: Optional[int] = None


@dataclass
class Result(Generic[P, R]):
    key: str
    payload: P
    index: int
    output: Optional[R] = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, TaskTimeoutError)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, TaskCancelledError)


class BoundedTaskExecutor(Generic[P, R]):
    """Run ``process(payload)`` for every submitted payload on ``worker_count`` workers.

    Args:
        name: Pool name used in logs and metrics.
        worker_count: Number of concurrent workers.
        process: Async callable applied to each payload.
        task_timeout: Seconds a single task may run, ``None`` for no limit.
        key: Derives a result key from a payload (defaults to ``str``).
        shutdown: Process-wide cancellation signal, checked between tasks and
            raced against every running task. A job deadline bound with
            ``job_deadline()`` when the executor is built is honoured the same way.
        metrics: Optional metrics sink for per-task outcomes.
        queue_size: Capacity of the task and result queues (``worker_count * 2``).
    """

    def __init__(
        self,
        name: str,
        worker_count: int,
        process: Callable[[P], Awaitable[R]],
        *,
        task_timeout: Optional[float] = None,
        key: Callable[[P], str] = str,
        shutdown: Optional[asyncio.Event] = None,
        metrics: Optional["SchedulerMetrics"] = None,
        queue_size: Optional[int] = None,
    ) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if task_timeout is not None and task_timeout <= 0:
            raise ValueError("task_timeout must be positive when set")

        self.name = name
        self.worker_count = worker_count
        self.task_timeout = task_timeout
        self._process = process
        self._key = key
        self._shutdown = shutdown
        self._stop_signals = [s for s in (shutdown, current_deadline()) if s is not None]
        self._metrics = metrics

        capacity = queue_size or worker_count * 2
        self._tasks: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._results: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._workers: list[asyncio.Task] = []
        self._abandoned: set[asyncio.Task] = set()
        self._submitted = 0
        self._closed = False
        self._finished = False

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def abandoned(self) -> int:
        """Timed-out tasks that have not yet unwound."""
        return len(self._abandoned)

    @property
    def live_workers(self) -> int:
        return sum(not worker.done() for worker in self._workers)

    def _shutting_down(self) -> bool:
        return any(signal.is_set() for signal in self._stop_signals)

    def start(self) -> None:
        if self._workers:
            raise RuntimeError(f"executor {self.name} already started")
        self._workers = [
            asyncio.create_task(self._worker(worker_id), name=f"{self.name}-worker-{worker_id}")
            for worker_id in range(self.worker_count)
        ]
        logger.debug(
            "Executor started",
            extra={"pool": self.name, "workers": self.worker_count},
        )

    async def add_task(self, payload: P, total: Optional[int] = None) -> None:
        """Queue a payload. Blocks while the task queue is full."""
        if self._closed:
            raise RuntimeError(f"executor {self.name} is closed")
        task = Task(payload=payload, index=self._submitted, total=total)
        self._submitted += 1
        await self._tasks.put(task)

    async def close(self) -> None:
        """Signal that no more tasks will be added."""
        if self._closed:
            return
        self._closed = True
        for worker in self._workers:
            if not worker.done():
                await self._tasks.put(_STOP)

    async def wait(self) -> None:
        """Wait for every worker to exit, then end the result stream.

        Must run concurrently with ``results()`` consumption: the result queue
        is bounded and workers block on it when nobody reads.
        """
        if self._finished:
            return
        if self._workers:
            await asyncio.gather(*self._workers)
        self._finished = True
        await self._results.put(_DONE)
        logger.debug(
            "Executor finished",
            extra={
                "pool": self.name,
                "submitted": self._submitted,
                "abandoned": len(self._abandoned),
            },
        )

    async def results(self) -> AsyncIterator[Result[P, R]]:
        while True:
            item = await self._results.get()
            if item is _DONE:
                return
            yield item

    async def run(self, payloads: Iterable[P]) -> list[Result[P, R]]:
        """Start, feed every payload, and collect all results."""
        items = list(payloads)
        total = len(items)
        self.start()

        async def produce() -> None:
            for payload in items:
                await self.add_task(payload, total=total)
            await self.close()
            await self.wait()

        producer = asyncio.create_task(produce(), name=f"{self.name}-producer")
        try:
            collected = [result async for result in self.results()]
            await producer
        except BaseException:
            await self._abort(producer)
            raise
        return collected

    async def _abort(self, producer: asyncio.Task) -> None:
        pending = [task for task in (producer, *self._workers) if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._closed = True
        self._finished = True
        logger.debug(
            "Executor aborted",
            extra={"pool": self.name, "submitted": self._submitted, "cancelled": len(pending)},
        )

    async def _worker(self, worker_id: int) -> None:
        while True:
            item = await self._tasks.get()
            if item is _STOP:
                return

            if self._shutting_down():
                result = Result(
                    key=self._key_for(item),
                    payload=item.payload,
                    index=item.index,
                    error=TaskCancelledError(self._key_for(item)),
                )
            else:
                result = await self._execute(item)

            self._record(result)
            await self._results.put(result)

    async def _execute(self, task: Task[P]) -> Result[P, R]:
        key = self._key_for(task)
        loop = asyncio.get_running_loop()
        started = loop.time()

        job = asyncio.ensure_future(self._invoke(task.payload))
        signal_waiters = [asyncio.create_task(signal.wait()) for signal in self._stop_signals]

        try:
            done, _ = await asyncio.wait(
                {job, *signal_waiters},
                timeout=self.task_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            job.cancel()
            raise
        finally:
            for waiter in signal_waiters:
                waiter.cancel()

        duration = loop.time() - started
        result: Result[P, R] = Result(
            key=key, payload=task.payload, index=task.index, duration=duration
        )

        if job in done:
            if job.cancelled():
                result.error = TaskCancelledError(key)
            elif job.exception() is not None:
                result.error = job.exception()
            else:
                result.output = job.result()
            return result

        self._abandon(job)
        if self._shutting_down():
            result.error = TaskCancelledError(key)
        else:
            result.error = TaskTimeoutError(key, self.task_timeout or 0)
            logger.warning(
                "Task timed out",
                extra={
                    "pool": self.name,
                    "key": key,
                    "index": task.index,
                    "total": task.total,
                    "timeout": self.task_timeout,
                },
            )
        return result

    async def _invoke(self, payload: P) -> R:
        return await self._process(payload)

    def _abandon(self, job: asyncio.Future) -> None:
        job.cancel()
        self._abandoned.add(job)
        job.add_done_callback(self._forget)

    def _forget(self, job: asyncio.Future) -> None:
        self._abandoned.discard(job)
        if not job.cancelled():
            # Retrieve so asyncio does not report an unhandled exception.
            job.exception()

    def _key_for(self, task: Task[P]) -> str:
        try:
            return self._key(task.payload)
        except Exception:
            return f"{self.name}#{task.index}"

    def _record(self, result: Result[P, R]) -> None:
        if result.ok:
            outcome = "success"
        elif result.timed_out:
            outcome = "timeout"
        elif result.cancelled:
            outcome = "cancelled"
        else:
            outcome = "error"
            logger.debug(
                "Task failed",
                extra={"pool": self.name, "key": result.key, "error": str(result.error)},
            )
        if self._metrics is not None:
            self._metrics.record_task_outcome(self.name, outcome)
