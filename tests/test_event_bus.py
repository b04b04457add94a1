import json

from ticketloom.audit_logger import AuditLogger
from ticketloom.event_bus import EventBus, PipelineEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[PipelineEvent] = []

    def dummy_subscriber(event: PipelineEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="step",
        run_id="run_1",
        payload={"key": "value"},
        step="agent",
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "step"
    assert event.run_id == "run_1"
    assert event.step == "agent"
    assert event.payload == {"key": "value"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_break_emit():
    test_bus = EventBus()
    received = []

    def broken(event):
        raise OSError("disk full")

    test_bus.subscribe(broken)
    test_bus.subscribe(received.append)
    test_bus.emit("progress", "run_1")
    assert len(received) == 1


def test_audit_logger_filters_by_run(tmp_path):
    test_bus = EventBus()
    path = tmp_path / "logs" / "run_1.jsonl"
    audit = AuditLogger(str(path), test_bus, run_id="run_1")

    test_bus.emit("run_started", "run_1", {"ticket_id": "T-1"})
    test_bus.emit("run_started", "run_2", {"ticket_id": "T-2"})
    audit.close()
    test_bus.emit("run_finished", "run_1")

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [(e["event_type"], e["run_id"]) for e in lines] == [("run_started", "run_1")]
