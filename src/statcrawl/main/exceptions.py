class StatcrawlException(Exception):
    pass


class ConfigurationError(StatcrawlException):
    """Raised when the scheduler job configuration cannot be loaded or is invalid."""


class LockStoreError(StatcrawlException):
    """Raised when the lock backend itself fails (not on contention)."""

    def __init__(self, operation: str, job_name: str | None, cause: BaseException):
        self.operation = operation
        self.job_name = job_name
        self.cause = cause
        target = f" for {job_name}" if job_name else ""
        super().__init__(f"Lock {operation}{target} failed: {cause}")


class TaskTimeoutError(StatcrawlException):
    """Raised into a Result when a task exceeds its per-task timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Task {key} timed out after {timeout:g}s")


class TaskCancelledError(StatcrawlException):
    """Raised into a Result when shutdown interrupts a running task."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Task {key} cancelled by shutdown")


class TransientFetchError(StatcrawlException):
    """A fetch failure worth retrying inline (timeouts, connection resets)."""
