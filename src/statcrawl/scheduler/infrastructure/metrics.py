"""Scheduler metric events.

Metrics are emitted as log records carrying ``metric_name``/``metric_value``
extras for the log pipeline to aggregate. Running totals are also kept in
memory so the process can report them and tests can assert on them.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque

from statcrawl.main.logging import get_logger

logger = get_logger(__name__)

JOB_DURATION = "scheduler.job.duration_seconds"
JOB_TOTAL = "scheduler.job.total"
ENTITIES_PROCESSED = "scheduler.entities.processed_total"
RECORDS_SAVED = "scheduler.records.saved_total"
ERRORS = "scheduler.errors_total"
TASK_OUTCOMES = "scheduler.executor.tasks_total"
DEAD_LETTERS = "scheduler.failed_jobs.dead"

# Most recent job durations kept per label set.
DURATION_WINDOW = 100

LabelKey = tuple[tuple[str, str], ...]


def _labels(**labels: str) -> LabelKey:
    return tuple(sorted(labels.items()))


class SchedulerMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._durations: dict[str, dict[LabelKey, deque[float]]] = defaultdict(
            lambda: defaultdict(lambda: deque(maxlen=DURATION_WINDOW))
        )

    def _emit(self, name: str, value: float, labels: LabelKey) -> None:
        logger.info(
            "metric",
            extra={"metric_name": name, "metric_value": value, **dict(labels)},
        )

    def _inc(self, name: str, value: float = 1, **labels: str) -> None:
        key = _labels(**labels)
        with self._lock:
            self._counters[name][key] += value
        self._emit(name, value, key)

    def record_job(self, job_name: str, status: str, duration_seconds: float) -> None:
        key = _labels(job_name=job_name, status=status)
        with self._lock:
            self._durations[JOB_DURATION][key].append(duration_seconds)
        self._emit(JOB_DURATION, round(duration_seconds, 3), key)
        self._inc(JOB_TOTAL, job_name=job_name, status=status)

    def record_error(self, job_name: str, error_type: str) -> None:
        self._inc(ERRORS, job_name=job_name, error_type=error_type)

    def record_entities_processed(self, source: str, count: int = 1) -> None:
        if count > 0:
            self._inc(ENTITIES_PROCESSED, count, source=source)

    def record_records_saved(self, record_type: str, count: int = 1) -> None:
        if count > 0:
            self._inc(RECORDS_SAVED, count, record_type=record_type)

    def record_task_outcome(self, pool: str, outcome: str) -> None:
        self._inc(TASK_OUTCOMES, pool=pool, outcome=outcome)

    def set_dead_letters(self, count: int) -> None:
        key = _labels()
        with self._lock:
            self._gauges[DEAD_LETTERS][key] = count
        self._emit(DEAD_LETTERS, count, key)

    def counter(self, name: str, **labels: str) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_labels(**labels), 0.0)

    def gauge(self, name: str, **labels: str) -> float | None:
        with self._lock:
            return self._gauges.get(name, {}).get(_labels(**labels))

    def durations(self, job_name: str, status: str) -> list[float]:
        """The last ``DURATION_WINDOW`` durations recorded for this job and status, oldest first."""
        with self._lock:
            return list(
                self._durations.get(JOB_DURATION, {}).get(
                    _labels(job_name=job_name, status=status), []
                )
            )

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Flatten counters and gauges into ``{metric: {"k=v,...": value}}``."""
        with self._lock:
            result: dict[str, dict[str, float]] = {}
            for source in (self._counters, self._gauges):
                for name, series in source.items():
                    flat = result.setdefault(name, {})
                    for key, value in series.items():
                        flat[",".join(f"{k}={v}" for k, v in key)] = value
            return result
