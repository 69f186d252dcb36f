import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from statcrawl.crawling.application.dedup import Deduplicator


def test_first_writer_wins():
    dedup = Deduplicator()

    assert dedup.check_and_mark("t-1") is False
    assert dedup.check_and_mark("t-1") is True
    assert "t-1" in dedup
    assert len(dedup) == 1


def test_concurrent_threads_only_one_unseen():
    dedup = Deduplicator()
    workers = 64

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: dedup.check_and_mark("same-id"), range(workers)))

    assert results.count(False) == 1
    assert results.count(True) == workers - 1


@pytest.mark.asyncio
async def test_concurrent_tasks_only_one_unseen():
    dedup = Deduplicator()

    async def mark():
        await asyncio.sleep(0)
        return dedup.check_and_mark("same-id")

    results = await asyncio.gather(*(mark() for _ in range(100)))

    assert results.count(False) == 1


def test_instances_are_isolated():
    first, second = Deduplicator(), Deduplicator()
    first.check_and_mark("x")

    assert second.check_and_mark("x") is False


class TestDuplicateDomain:
    def _dedup_with(self, seen: int) -> Deduplicator:
        dedup = Deduplicator()
        for i in range(seen):
            dedup.check_and_mark(f"t-{i}")
        return dedup

    def test_all_seen_is_duplicate(self):
        dedup = self._dedup_with(100)

        assert dedup.is_duplicate_domain([f"t-{i}" for i in range(100)]) is True

    def test_ninety_nine_percent_is_not_duplicate(self):
        dedup = self._dedup_with(99)

        assert dedup.duplicate_ratio([f"t-{i}" for i in range(100)]) == pytest.approx(0.99)
        assert dedup.is_duplicate_domain([f"t-{i}" for i in range(100)]) is False

    def test_empty_sample_is_not_duplicate(self):
        assert self._dedup_with(5).is_duplicate_domain([]) is False

    def test_sampling_does_not_mark(self):
        dedup = Deduplicator()

        dedup.is_duplicate_domain(["a", "b"])

        assert len(dedup) == 0
