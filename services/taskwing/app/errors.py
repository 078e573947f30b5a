"""Error taxonomy shared by the pipeline, HTTP handlers and CLI."""
from __future__ import annotations


class TaskWingError(Exception):
    """Base error; subclasses carry their HTTP status and CLI exit code."""

    status_code = 500
    exit_code = 2

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def __str__(self) -> str:
        return self.message


class UserError(TaskWingError):
    status_code = 400
    exit_code = 1


class ConfigError(TaskWingError):
    status_code = 503
    exit_code = 1


class NotFound(TaskWingError):
    status_code = 404
    exit_code = 1


class Conflict(TaskWingError):
    pass


class StorageError(TaskWingError):
    pass


class Timeout(TaskWingError):
    status_code = 504

    def __init__(self, operation: str, seconds: float) -> None:
        super().__init__(f"{operation} timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


class Cancelled(TaskWingError):
    status_code = 499
    exit_code = 130

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class SchemaValidationError(TaskWingError):
    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class UpstreamError(TaskWingError):
    def __init__(self, status: int, body: str = "", message: str | None = None) -> None:
        super().__init__(message or f"upstream returned {status}: {body[:200]}")
        self.status = status
        self.body = body

    @property
    def transient(self) -> bool:
        # 0 marks a transport failure (connection refused, reset, DNS)
        return self.status == 0 or self.status >= 500


class AuthFailure(UpstreamError):
    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(status, body, message="API authentication failed")


class RateLimited(UpstreamError):
    def __init__(self, status: int = 429, body: str = "", retry_after: float | None = None) -> None:
        super().__init__(status, body, message="rate limited by upstream provider")
        self.retry_after = retry_after


__all__ = [
    "AuthFailure",
    "Cancelled",
    "ConfigError",
    "Conflict",
    "NotFound",
    "RateLimited",
    "SchemaValidationError",
    "StorageError",
    "TaskWingError",
    "Timeout",
    "UpstreamError",
    "UserError",
]
