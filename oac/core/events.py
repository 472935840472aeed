"""Publish/subscribe notifications for one engine run.

The bus is an ordinary object owned by whoever constructs the engine and
injected into it; there is no process-wide emitter. Delivery is synchronous
and in publish order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of notifications emitted by the execution engine."""

    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_RETRYING = "job.retrying"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_ABORTED = "job.aborted"
    RUN_COMPLETED = "run.completed"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Event(BaseModel):
    """Immutable notification."""

    event_type: EventType
    job_id: str | None = None
    task_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


Handler = Callable[[Event], None]


class EventBus:
    """Typed publish/subscribe channel.

    Handlers subscribe to one EventType or, with event_type=None, to all of
    them. A handler that raises is logged and skipped; the remaining
    handlers still receive the event.
    """

    def __init__(self, keep_history: bool = False) -> None:
        self._handlers: dict[EventType | None, list[Handler]] = {}
        self.keep_history = keep_history
        self.history: list[Event] = []

    def subscribe(self, event_type: EventType | None, handler: Handler) -> Callable[[], None]:
        """Register handler; returns a callable that unsubscribes it."""
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        if self.keep_history:
            self.history.append(event)
        # Copy so handlers may unsubscribe while being called
        targets = list(self._handlers.get(event.event_type, [])) + list(
            self._handlers.get(None, [])
        )
        for handler in targets:
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    f"Event handler {handler!r} failed on {event.event_type.value}: {e}"
                )

    def emit(
        self,
        event_type: EventType,
        *,
        job_id: str | None = None,
        task_id: str | None = None,
        **payload: Any,
    ) -> Event:
        """Build and publish an Event in one call."""
        event = Event(event_type=event_type, job_id=job_id, task_id=task_id, payload=payload)
        self.publish(event)
        return event
