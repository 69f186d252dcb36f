"""Per-run contextvars: logging fields (job, run, instance id) and the job deadline."""

from __future__ import annotations

import asyncio
import contextlib
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional


_run_context: ContextVar[Dict[str, Any]] = ContextVar("run_context", default={})


def get_run_context() -> Dict[str, Any]:
    """Return a copy of the current run context."""
    context = _run_context.get()
    return dict(context) if context else {}


def set_run_context(**values: Any) -> Dict[str, Any]:
    """Merge provided values into the stored context.

    Passing ``None`` clears the value for that key.
    """

    current = get_run_context()
    for key, value in values.items():
        if value is None:
            current.pop(key, None)
        else:
            current[key] = value
    _run_context.set(current)
    return current


def clear_run_context() -> None:
    _run_context.set({})


@contextlib.contextmanager
def run_context(**values: Any) -> Iterator[Dict[str, Any]]:
    """Temporarily bind values to the run context for the enclosed block."""
    token = _run_context.set({**get_run_context(), **{k: v for k, v in values.items() if v is not None}})
    try:
        yield get_run_context()
    finally:
        _run_context.reset(token)


_job_deadline: ContextVar[Optional[asyncio.Event]] = ContextVar("job_deadline", default=None)


def current_deadline() -> Optional[asyncio.Event]:
    """The deadline event of the job running in this context, if any."""
    return _job_deadline.get()


def deadline_passed() -> bool:
    deadline = _job_deadline.get()
    return deadline is not None and deadline.is_set()


@contextlib.contextmanager
def job_deadline(timeout: Optional[float]) -> Iterator[asyncio.Event]:
    """Bind an event that is set once ``timeout`` seconds have elapsed.

    Work started inside the block sees the event through ``current_deadline()``
    and is expected to wind down when it fires. Nothing is cancelled here.
    """
    event = asyncio.Event()
    handle = None
    if timeout is not None:
        handle = asyncio.get_running_loop().call_later(timeout, event.set)
    token = _job_deadline.set(event)
    try:
        yield event
    finally:
        if handle is not None:
            handle.cancel()
        _job_deadline.reset(token)
