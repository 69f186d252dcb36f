"""Scheduler job definitions loaded from YAML.

Example::

    scheduler:
      bootstrap_mode: false
      run_immediately: false
      jobs:
        junior_stats:
          cron: "0 */4 * * *"
          enabled: true
          timeout: 2h
          max_batch_size: 50
          order: 3
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from statcrawl.main.exceptions import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> timedelta:
    """Parse ``90``, ``"90s"``, ``"30m"``, ``"2h"`` or ``"1h30m"`` into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    if text.isdigit():
        return timedelta(seconds=int(text))

    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=seconds)


class JobConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    cron: str
    timeout: timedelta
    enabled: bool = True
    max_batch_size: int | None = None
    order: int = 0

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("cron")
    @classmethod
    def _require_cron(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("cron expression is required")
        return value

    @field_validator("timeout")
    @classmethod
    def _require_positive_timeout(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("timeout must be positive")
        return value

    @field_validator("max_batch_size")
    @classmethod
    def _positive_batch(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("max_batch_size must be positive when set")
        return value


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    bootstrap_mode: bool = False
    run_immediately: bool = False
    jobs: dict[str, JobConfig]

    @model_validator(mode="before")
    @classmethod
    def _inject_job_names(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("jobs"), dict):
            jobs = {}
            for name, job in data["jobs"].items():
                if isinstance(job, dict):
                    job = {**job, "name": name}
                jobs[name] = job
            data = {**data, "jobs": jobs}
        return data

    @field_validator("jobs")
    @classmethod
    def _require_jobs(cls, value: dict[str, JobConfig]) -> dict[str, JobConfig]:
        if not value:
            raise ValueError("no jobs configured")
        return value

    def enabled_jobs(self) -> list[JobConfig]:
        return [job for job in self.jobs.values() if job.enabled]

    def enabled_jobs_ordered(self) -> list[JobConfig]:
        return sorted(self.enabled_jobs(), key=lambda job: (job.order, job.name))

    def get_job(self, name: str) -> JobConfig | None:
        return self.jobs.get(name)

    @classmethod
    def from_mapping(cls, data: Any) -> "SchedulerConfig":
        if not isinstance(data, dict) or not isinstance(data.get("scheduler"), dict):
            raise ConfigurationError("job configuration must have a 'scheduler' mapping")
        try:
            return cls.model_validate(data["scheduler"])
        except ValidationError as exc:
            raise ConfigurationError(f"invalid job configuration: {exc}") from exc

    @classmethod
    def load(cls, path: str | Path) -> "SchedulerConfig":
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except OSError as exc:
            raise ConfigurationError(f"cannot read job configuration {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"cannot parse job configuration {path}: {exc}") from exc
        return cls.from_mapping(data)
