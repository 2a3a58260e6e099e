"""Tests for pairloop.workflow.events module."""

import pytest

from pairloop.workflow.events import EventBus, EventRecorder, EventType, PairEvent


class TestEventBus:
    """Tests for subscribe/emit delivery."""

    def test_delivers_in_subscription_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("first", e.type)))
        bus.subscribe(lambda e: seen.append(("second", e.type)))
        bus.emit(EventType.PAUSED, reason="r")
        assert seen == [("first", EventType.PAUSED), ("second", EventType.PAUSED)]

    def test_payload_accessible_by_key(self):
        bus = EventBus()
        event = bus.emit(EventType.REVIEWER_COMPLETED, step_id="US-001", has_findings=True)
        assert isinstance(event, PairEvent)
        assert event["step_id"] == "US-001"
        assert event.data["has_findings"] is True

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        assert len(bus) == 1
        unsubscribe()
        bus.emit(EventType.RESUMED)
        assert seen == []
        assert len(bus) == 0

    def test_failing_listener_does_not_stop_delivery(self, caplog):
        """A listener that raises is logged; later listeners still get the event."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.emit(EventType.ERROR, error="x")
        assert len(seen) == 1
        assert "Event listener failed on error" in caplog.text

    def test_listener_may_unsubscribe_itself(self):
        bus = EventBus()
        seen = []

        def once(event):
            seen.append(event)
            bus.unsubscribe(once)

        bus.subscribe(once)
        bus.emit(EventType.RESUMED)
        bus.emit(EventType.RESUMED)
        assert len(seen) == 1


class TestEventType:
    """Tests for the event vocabulary."""

    def test_wire_names(self):
        assert EventType.PHASE_CHANGE.value == "phase-change"
        assert EventType.CONSENSUS_TIMEOUT.value == "consensus-timeout"
        assert EventType.CIRCUIT_HALF_OPEN.value == "circuit-half-open"

    def test_compares_to_string(self):
        assert EventType.COST_UPDATE == "cost-update"


class TestEventRecorder:
    """Tests for EventRecorder."""

    def test_records_and_filters(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        bus.emit(EventType.PAUSED, reason="a")
        bus.emit(EventType.RESUMED)
        bus.emit(EventType.PAUSED, reason="b")
        assert recorder.types() == [EventType.PAUSED, EventType.RESUMED, EventType.PAUSED]
        assert [e["reason"] for e in recorder.of_type(EventType.PAUSED)] == ["a", "b"]
