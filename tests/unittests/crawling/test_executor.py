import asyncio
import time

import pytest

from statcrawl.crawling.application.executor import BoundedTaskExecutor
from statcrawl.main.exceptions import TaskCancelledError, TaskTimeoutError
from statcrawl.main.run_context import job_deadline
from statcrawl.scheduler.infrastructure.metrics import TASK_OUTCOMES


async def _double(value: int) -> int:
    await asyncio.sleep(0)
    return value * 2


class TestCompleteness:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 1, 3, 10_000])
    async def test_one_result_per_task(self, count):
        executor = BoundedTaskExecutor("double", 3, _double)

        results = await executor.run(range(count))

        assert len(results) == count
        assert sorted(r.index for r in results) == list(range(count))
        assert all(r.ok and r.output == r.payload * 2 for r in results)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def track(_):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await BoundedTaskExecutor("bounded", 3, track).run(range(20))

        assert peak == 3


class TestFailures:
    @pytest.mark.asyncio
    async def test_hanging_task_times_out_and_others_finish(self, metrics):
        async def process(value: int) -> int:
            await asyncio.sleep(60 if value == 5 else 0.01)
            return value

        executor = BoundedTaskExecutor(
            "hang", 3, process, task_timeout=0.2, key=lambda v: f"item-{v}", metrics=metrics
        )

        started = time.monotonic()
        results = await executor.run(range(10))
        elapsed = time.monotonic() - started

        assert elapsed < 0.2 + 1.0
        assert len(results) == 10
        timed_out = [r for r in results if r.timed_out]
        assert [r.key for r in timed_out] == ["item-5"]
        assert isinstance(timed_out[0].error, TaskTimeoutError)
        assert sum(r.ok for r in results) == 9
        assert metrics.counter(TASK_OUTCOMES, pool="hang", outcome="timeout") == 1
        assert metrics.counter(TASK_OUTCOMES, pool="hang", outcome="success") == 9

    @pytest.mark.asyncio
    async def test_exception_is_captured_in_result(self, metrics):
        async def process(value: int) -> int:
            if value == 3:
                raise ValueError("bad markup")
            return value

        results = await BoundedTaskExecutor("errors", 2, process, metrics=metrics).run(range(6))

        failed = [r for r in results if not r.ok]
        assert len(results) == 6
        assert len(failed) == 1
        assert failed[0].payload == 3
        assert isinstance(failed[0].error, ValueError)
        assert metrics.counter(TASK_OUTCOMES, pool="errors", outcome="error") == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_and_queued(self, metrics):
        shutdown = asyncio.Event()

        async def process(value: int) -> int:
            await asyncio.sleep(10)
            return value

        executor = BoundedTaskExecutor(
            "shutdown", 2, process, shutdown=shutdown, metrics=metrics
        )
        asyncio.get_running_loop().call_later(0.05, shutdown.set)

        results = await asyncio.wait_for(executor.run(range(6)), timeout=2)

        assert len(results) == 6
        assert all(r.cancelled for r in results)
        assert all(isinstance(r.error, TaskCancelledError) for r in results)
        assert metrics.counter(TASK_OUTCOMES, pool="shutdown", outcome="cancelled") == 6

    @pytest.mark.asyncio
    async def test_deadline_stops_remaining_work(self):
        started = []

        async def process(value: int) -> int:
            started.append(value)
            await asyncio.sleep(10)
            return value

        with job_deadline(0.05):
            executor = BoundedTaskExecutor("deadline", 2, process)
            results = await asyncio.wait_for(executor.run(range(6)), timeout=2)

        assert len(results) == 6
        assert all(r.cancelled for r in results)
        assert sorted(started) == [0, 1]


class TestCallerCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_run_leaves_no_workers_behind(self):
        started = 0

        async def process(value: int) -> int:
            nonlocal started
            started += 1
            await asyncio.sleep(0.05)
            return value

        executor = BoundedTaskExecutor("abandoned-run", 2, process)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(executor.run(range(100)), timeout=0.12)
        started_at_cancel = started
        await asyncio.sleep(0.3)

        assert started == started_at_cancel
        assert started_at_cancel < 100
        assert executor.live_workers == 0

    @pytest.mark.asyncio
    async def test_close_after_workers_are_gone_does_not_block(self):
        executor = BoundedTaskExecutor("gone", 3, _double, queue_size=1)
        executor.start()
        for worker in executor._workers:
            worker.cancel()
        await asyncio.gather(*executor._workers, return_exceptions=True)

        await asyncio.wait_for(executor.close(), timeout=1)

        assert executor.live_workers == 0


class TestIncremental:
    @pytest.mark.asyncio
    async def test_produce_and_consume_concurrently(self):
        executor = BoundedTaskExecutor("incremental", 2, _double, queue_size=1)
        executor.start()

        async def feed():
            for value in range(50):
                await executor.add_task(value)
            await executor.close()
            await executor.wait()

        producer = asyncio.create_task(feed())
        outputs = [result.output async for result in executor.results()]
        await producer

        assert sorted(outputs) == [v * 2 for v in range(50)]
        assert executor.submitted == 50

    @pytest.mark.asyncio
    async def test_add_after_close_is_rejected(self):
        executor = BoundedTaskExecutor("closed", 1, _double)
        executor.start()
        await executor.close()

        with pytest.raises(RuntimeError):
            await executor.add_task(1)
        await executor.wait()

    @pytest.mark.asyncio
    async def test_double_start_is_rejected(self):
        executor = BoundedTaskExecutor("twice", 1, _double)
        executor.start()

        with pytest.raises(RuntimeError):
            executor.start()
        await executor.close()
        await executor.wait()


class TestValidation:
    def test_worker_count_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedTaskExecutor("bad", 0, _double)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedTaskExecutor("bad", 1, _double, task_timeout=0)

    @pytest.mark.asyncio
    async def test_key_errors_fall_back_to_index(self):
        def broken_key(_):
            raise KeyError("no key")

        results = await BoundedTaskExecutor("keys", 1, _double, key=broken_key).run([7])

        assert results[0].key == "keys#0"
