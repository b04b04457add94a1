import os

from ticketloom.event_bus import EventBus, PipelineEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes events
    for one run to an append-only JSONL file.
    """
    def __init__(self, file_path: str, event_bus: EventBus, run_id: str | None = None):
        self.file_path = file_path
        self.event_bus = event_bus
        self.run_id = run_id

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: PipelineEvent) -> None:
        """Append the event as one JSON line, ignoring events from other runs."""
        if self.run_id is not None and event.run_id != self.run_id:
            return
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def close(self) -> None:
        self.event_bus.unsubscribe(self.log_event)
