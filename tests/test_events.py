"""Tests for the in-process EventBus."""

from __future__ import annotations

from oac.core.events import Event, EventBus, EventType


class TestEventBus:
    """Subscription and delivery."""

    def test_typed_subscription(self):
        """Handlers only see their event type."""
        bus = EventBus()
        seen: list[Event] = []
        bus.subscribe(EventType.JOB_COMPLETED, seen.append)

        bus.emit(EventType.JOB_STARTED, job_id="j1", task_id="t1")
        bus.emit(EventType.JOB_COMPLETED, job_id="j1", task_id="t1", attempts=1)

        assert [e.event_type for e in seen] == [EventType.JOB_COMPLETED]
        assert seen[0].payload == {"attempts": 1}
        assert seen[0].job_id == "j1"
        assert seen[0].task_id == "t1"

    def test_wildcard_sees_everything_in_order(self):
        bus = EventBus()
        seen: list[EventType] = []
        bus.subscribe(None, lambda e: seen.append(e.event_type))

        bus.emit(EventType.JOB_STARTED)
        bus.emit(EventType.JOB_PROGRESS)
        bus.emit(EventType.JOB_FAILED)

        assert seen == [EventType.JOB_STARTED, EventType.JOB_PROGRESS, EventType.JOB_FAILED]

    def test_typed_handlers_run_before_wildcard(self):
        bus = EventBus()
        order: list[str] = []
        bus.subscribe(None, lambda e: order.append("all"))
        bus.subscribe(EventType.JOB_STARTED, lambda e: order.append("typed"))

        bus.emit(EventType.JOB_STARTED)

        assert order == ["typed", "all"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen: list[Event] = []
        unsubscribe = bus.subscribe(EventType.JOB_STARTED, seen.append)

        bus.emit(EventType.JOB_STARTED)
        unsubscribe()
        unsubscribe()  # second call is a no-op
        bus.emit(EventType.JOB_STARTED)

        assert len(seen) == 1

    def test_failing_handler_is_isolated(self, caplog):
        """A raising handler is logged and the next handler still runs."""
        bus = EventBus()
        seen: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(EventType.JOB_FAILED, broken)
        bus.subscribe(EventType.JOB_FAILED, seen.append)

        bus.emit(EventType.JOB_FAILED, job_id="j1")

        assert len(seen) == 1
        assert "handler bug" in caplog.text

    def test_history_only_when_enabled(self):
        quiet = EventBus()
        quiet.emit(EventType.RUN_COMPLETED)
        assert quiet.history == []

        recording = EventBus(keep_history=True)
        event = recording.emit(EventType.RUN_COMPLETED, completed=2)
        assert recording.history == [event]
