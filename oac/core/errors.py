"""Error taxonomy shared by the execution engine, worker and agent providers.

Every failure that crosses a component boundary is an OacError carrying a
stable code, a severity and a context dict. The original exception is kept
as __cause__ so tracebacks stay intact.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes."""

    AGENT_NOT_AVAILABLE = "AGENT_NOT_AVAILABLE"
    AGENT_EXECUTION_FAILED = "AGENT_EXECUTION_FAILED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    AGENT_OOM = "AGENT_OOM"
    AGENT_TOKEN_LIMIT = "AGENT_TOKEN_LIMIT"
    AGENT_RATE_LIMITED = "AGENT_RATE_LIMITED"
    VALIDATION_LINT_FAILED = "VALIDATION_LINT_FAILED"
    VALIDATION_TEST_FAILED = "VALIDATION_TEST_FAILED"
    VALIDATION_DIFF_TOO_LARGE = "VALIDATION_DIFF_TOO_LARGE"
    VALIDATION_FORBIDDEN_PATTERN = "VALIDATION_FORBIDDEN_PATTERN"
    CONFIG_INVALID = "CONFIG_INVALID"
    NETWORK_ERROR = "NETWORK_ERROR"
    GIT_LOCK_FAILED = "GIT_LOCK_FAILED"


class ErrorSeverity(str, Enum):
    """How bad an error is for the current run."""

    FATAL = "fatal"
    RECOVERABLE = "recoverable"
    WARNING = "warning"


class OacError(Exception):
    """Base error for everything raised by oac."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for event payloads."""
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}: {self.message!r})"


class ConfigError(OacError):
    """Configuration file is missing fields or has invalid values."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.CONFIG_INVALID, ErrorSeverity.FATAL, context)


def execution_error(
    code: ErrorCode,
    message: str,
    context: dict[str, Any] | None = None,
    cause: BaseException | None = None,
    severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
) -> OacError:
    """Build an execution-stage OacError (recoverable unless told otherwise)."""
    return OacError(message, code, severity, context, cause)


def to_error_message(error: BaseException | object) -> str:
    if isinstance(error, OacError):
        return error.message
    return str(error)


# Patterns are checked in order; first match wins.
_TIMEOUT_RE = re.compile(r"timed out|timeout|etimedout", re.IGNORECASE)
_OOM_RE = re.compile(r"out of memory|enomem|heap", re.IGNORECASE)
_RATE_LIMIT_RE = re.compile(r"rate.?limit|too many requests|\b429\b", re.IGNORECASE)
_NETWORK_RE = re.compile(r"network|econn|enotfound|eai_again|unreachable", re.IGNORECASE)
_GIT_LOCK_RE = re.compile(
    r"index\.lock|cannot lock ref|unable to create '.+?\.git/.*\.lock'", re.IGNORECASE
)


def normalize_execution_error(
    error: BaseException,
    *,
    task_id: str,
    job_id: str | None = None,
    execution_id: str | None = None,
    attempt: int | None = None,
) -> OacError:
    """Convert any exception raised during execution into an OacError.

    OacErrors pass through untouched so that a failure is normalized once,
    at the point closest to where it happened. The code picked here drives
    the engine's retry decision.
    """
    if isinstance(error, OacError):
        return error

    message = to_error_message(error)
    context: dict[str, Any] = {"taskId": task_id}
    if job_id:
        context["jobId"] = job_id
    if execution_id:
        context["executionId"] = execution_id
    if attempt is not None:
        context["attempt"] = attempt
    context["message"] = message

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or _TIMEOUT_RE.search(message):
        return execution_error(
            ErrorCode.AGENT_TIMEOUT,
            f"Task {task_id} timed out during execution.",
            context,
            error,
        )

    if isinstance(error, MemoryError) or _OOM_RE.search(message):
        return execution_error(
            ErrorCode.AGENT_OOM, f"Task {task_id} ran out of memory.", context, error
        )

    if _RATE_LIMIT_RE.search(message):
        return execution_error(
            ErrorCode.AGENT_RATE_LIMITED,
            f"Task {task_id} was rate limited by the agent backend.",
            context,
            error,
        )

    if isinstance(error, ConnectionError) or _NETWORK_RE.search(message):
        return execution_error(
            ErrorCode.NETWORK_ERROR,
            f"Task {task_id} failed due to a network error.",
            context,
            error,
        )

    if _GIT_LOCK_RE.search(message):
        return execution_error(
            ErrorCode.GIT_LOCK_FAILED,
            f"Task {task_id} failed due to a git lock conflict.",
            context,
            error,
        )

    if isinstance(error, asyncio.CancelledError):
        return execution_error(
            ErrorCode.AGENT_EXECUTION_FAILED, f"Task {task_id} was aborted.", context, error
        )

    return execution_error(
        ErrorCode.AGENT_EXECUTION_FAILED,
        f"Task {task_id} failed during execution.",
        context,
        error,
    )
