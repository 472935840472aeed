"""Retry and circuit-breaking helpers for the execution engine.

- calculate_backoff: bounded exponential backoff with jitter
- is_transient_error: decides whether a failed attempt is worth retrying
- CircuitBreaker: closed/open/half-open failure gate
"""

from __future__ import annotations

import random
import re
import time
from collections.abc import Callable
from enum import Enum

from oac.core.errors import ErrorCode, ErrorSeverity, OacError

BACKOFF_BASE_MS = 1_000
BACKOFF_MAX_MS = 30_000
BACKOFF_JITTER_MAX_MS = 500


def calculate_backoff(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Delay in seconds before retry number ``attempt``.

    min(1000 * 2^attempt, 30000) + U[0, 500) milliseconds.
    """
    attempt = max(0, attempt)
    # Cap the exponent so huge attempt numbers don't build giant ints
    exponential = min(BACKOFF_BASE_MS * 2 ** min(attempt, 32), BACKOFF_MAX_MS)
    jitter = rng() * BACKOFF_JITTER_MAX_MS
    return (exponential + jitter) / 1000.0


TRANSIENT_CODES = frozenset(
    {
        ErrorCode.AGENT_TIMEOUT,
        ErrorCode.AGENT_OOM,
        ErrorCode.AGENT_RATE_LIMITED,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.GIT_LOCK_FAILED,
    }
)

# All patterns are matched case-insensitively
TRANSIENT_PATTERNS = [
    re.compile(r"timeout|timed?\s*out|etimedout", re.IGNORECASE),
    re.compile(r"econnreset", re.IGNORECASE),
    re.compile(r"rate.?limit|too many requests|\b429\b", re.IGNORECASE),
    re.compile(r"\b503\b|service unavailable", re.IGNORECASE),
]


def _matches_transient(message: str) -> bool:
    return any(pattern.search(message) for pattern in TRANSIENT_PATTERNS)


def is_transient_error(error: BaseException | object) -> bool:
    """Classify an error as transient (retry) or fatal (give up)."""
    if isinstance(error, OacError):
        if error.code in TRANSIENT_CODES:
            return True
        if error.severity == ErrorSeverity.FATAL:
            return False
        if error.code != ErrorCode.AGENT_EXECUTION_FAILED:
            return False
        # Unclassified agent failure: look at what actually went wrong
        candidates = [error.message, str(error.context.get("message", ""))]
        if error.cause is not None:
            candidates.append(str(error.cause))
        return any(_matches_transient(text) for text in candidates if text)

    return _matches_transient(str(error or ""))


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(OacError):
    """Every candidate provider has an open circuit."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, ErrorCode.AGENT_NOT_AVAILABLE, ErrorSeverity.FATAL, context)


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    - Opens after ``failure_threshold`` consecutive failures.
    - ``cooldown`` seconds after opening, is_open() returns False exactly
      once (a trial call) and reports HALF_OPEN. Further calls stay refused
      until the trial call's outcome is recorded.
    - A success closes the circuit; a failure while half-open re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_failure_time: float | None = None
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None

    def record_failure(self) -> None:
        now = self._clock()
        self.consecutive_failures += 1
        self.last_failure_time = now
        if self._state == CircuitState.HALF_OPEN:
            # Trial call failed
            self._state = CircuitState.OPEN
            self._opened_at = now
        elif (
            self._state == CircuitState.CLOSED
            and self.consecutive_failures >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = now

    def is_open(self) -> bool:
        """True while calls should be refused.

        Transitions OPEN -> HALF_OPEN once the cooldown has elapsed and
        returns False for that call so one trial call can run.
        """
        if self._state == CircuitState.CLOSED:
            return False
        if self._state == CircuitState.OPEN:
            opened_at = self._opened_at if self._opened_at is not None else 0.0
            if self._clock() - opened_at >= self.cooldown:
                self._state = CircuitState.HALF_OPEN
                return False
        return True

    def reset(self) -> None:
        """Force the circuit closed."""
        self.consecutive_failures = 0
        self.last_failure_time = None
        self._opened_at = None
        self._state = CircuitState.CLOSED
