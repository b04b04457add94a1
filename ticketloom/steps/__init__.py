"""
Pipeline steps.

Each step module exposes `run(ctx) -> StepOutcome`. A step records its own
StepRecords through the context; when it decides the Run is over it skips
the remaining steps and hands back the terminal result. Steps must not keep
a reference to the context after returning.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from ticketloom.artifacts import ArtifactWriter
from ticketloom.backends import AgentResult, ExecutionBackend
from ticketloom.config_loader import TicketloomConfig
from ticketloom.event_bus import EventBus
from ticketloom.spindle import SpindleMonitor
from ticketloom.state import STEP_ORDER, RunTicketResult, StepRecord, Ticket, utc_now
from ticketloom.store import RunStore
from ticketloom.workspace import Workspace

CLI_NAME = "ticketloom"


@dataclass
class RunOptions:
    backend: ExecutionBackend | None = None
    backend_name: str | None = None
    timeout_s: float | None = None
    skip_qa: bool = False
    create_pr: bool = True
    draft_pr: bool = False
    skip_push: bool = False
    skip_pr: bool = False
    base_branch: str | None = None
    qa_retry_with_fix: bool = True
    run_id: str | None = None
    on_progress: Callable[[str], None] | None = None


@dataclass
class StepOutcome:
    proceed: bool
    result: RunTicketResult | None = None

    @classmethod
    def next(cls) -> "StepOutcome":
        return cls(proceed=True)

    @classmethod
    def stop(cls, result: RunTicketResult) -> "StepOutcome":
        return cls(proceed=False, result=result)


@dataclass
class RunContext:
    """Mutable state of one Run, owned by the Controller for the Run's lifetime."""
    run_id: str
    ticket: Ticket
    repo_path: Path
    config: TicketloomConfig
    options: RunOptions
    store: RunStore
    artifacts: ArtifactWriter
    bus: EventBus
    backend: ExecutionBackend
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started: float = field(default_factory=time.monotonic)

    workspace: Workspace | None = None
    base_branch: str | None = None
    monitor: SpindleMonitor | None = None
    agent_result: AgentResult | None = None
    baseline_files: set[str] = field(default_factory=set)
    qa_baseline: set[str] = field(default_factory=set)
    changed_files: list[str] = field(default_factory=list)
    commit_sha: str | None = None
    pushed: bool = False
    pr_url: str | None = None
    artifact_paths: dict[str, str] = field(default_factory=dict)
    step_status: dict[str, str] = field(default_factory=dict)
    current_step: str | None = None

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def progress(self, message: str) -> None:
        logger.info(f"[PIPELINE] {self.ticket.id}: {message}")
        self.bus.emit("progress", self.run_id, {"message": message}, step=self.current_step)
        if self.options.on_progress is not None:
            self.options.on_progress(message)

    def mark_step(
        self,
        step: str,
        status: str,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        record = StepRecord(
            run_id=self.run_id,
            step=step,
            status=status,
            finished_at=None if status == "started" else utc_now(),
            error=error,
            metadata=metadata or {},
        )
        self.store.append_step(record)
        self.step_status[step] = status
        self.current_step = step
        self.bus.emit("step", self.run_id, {"status": status, "error": error, **(metadata or {})}, step=step)
        logger.debug(f"[PIPELINE] {self.run_id} {step} -> {status}" + (f" ({error})" if error else ""))

    def skip_remaining(self, reason: str) -> None:
        """Record every not-yet-reached step except cleanup as skipped."""
        for step in STEP_ORDER:
            if step == "cleanup":
                continue
            if step not in self.step_status:
                self.mark_step(step, "skipped", error=reason)

    def write_artifact(self, key: str, artifact_type: str, data: Any) -> str:
        path = self.artifacts.write(artifact_type, self.run_id, data)
        self.artifact_paths[key] = path
        return path

    def finish(self, success: bool, **fields: Any) -> RunTicketResult:
        return RunTicketResult(
            run_id=self.run_id,
            ticket_id=self.ticket.id,
            success=success,
            branch_name=self.workspace.branch_name if self.workspace and self.workspace.created else None,
            pr_url=self.pr_url,
            duration_ms=int((time.monotonic() - self.started) * 1000),
            artifacts=dict(self.artifact_paths),
            **fields,
        )

    def retry_hint(self) -> str:
        return f"To fix: {CLI_NAME} retry {self.ticket.id}"
