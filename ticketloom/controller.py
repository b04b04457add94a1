"""
TICKETLOOM Controller: the Ticket Execution Pipeline.

Pipeline: worktree → agent → scope → commit → push → qa → pr → cleanup

Every step is recorded, executed or skipped. Cleanup runs on every exit
path, and the Run is closed with exactly one terminal result.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

from loguru import logger

from ticketloom.artifacts import ArtifactWriter
from ticketloom.audit_logger import AuditLogger
from ticketloom.backends import get_backend
from ticketloom.config_loader import TicketloomConfig, load_config
from ticketloom.event_bus import EventBus
from ticketloom.event_bus import bus as default_bus
from ticketloom.state import RunTicketResult, Ticket, TicketStatus, new_run_id, utc_now
from ticketloom.steps import RunContext, RunOptions, StepOutcome
from ticketloom.steps import agent, cleanup, commit, pr, push, qa, scope, worktree
from ticketloom.store import RunStore

__all__ = ["Controller", "RunOptions"]

_STEPS: tuple[tuple[str, Callable[[RunContext], StepOutcome]], ...] = (
    ("worktree", worktree.run),
    ("agent", agent.run),
    ("scope", scope.run),
    ("commit", commit.run),
    ("push", push.run),
    ("qa", qa.run),
    ("pr", pr.run),
)

# Failure reason for an unexpected exception escaping a step; None means non-fatal
_FAILURE_REASONS: dict[str, str | None] = {
    "worktree": "git_error",
    "agent": "agent_error",
    "scope": "git_error",
    "commit": "git_error",
    "push": "git_error",
    "qa": "qa_failed",
    "pr": None,
}


def final_ticket_status(result: RunTicketResult) -> TicketStatus:
    if result.success:
        return "done"
    if result.scope_expanded is not None or result.failure_reason == "cancelled":
        return "ready"
    if result.spindle is not None and result.spindle.should_block:
        return "blocked"
    return "failed"


class Controller:
    """Runs one Ticket at a time through the pipeline. Safe to share across threads."""

    def __init__(
        self,
        repo_path: Path,
        config: TicketloomConfig | None = None,
        store: RunStore | None = None,
        bus: EventBus | None = None,
    ):
        self.repo_path = repo_path.resolve()
        self.config = config or load_config(self.repo_path)
        ws_cfg = self.config.workspace
        self.store = store or RunStore.for_repo(self.repo_path, ws_cfg.ticket_dir, ws_cfg.run_dir)
        self.artifacts = ArtifactWriter(self.repo_path / ws_cfg.artifact_dir)
        self.bus = bus or default_bus

    def execute(
        self,
        ticket: Ticket,
        options: RunOptions | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunTicketResult:
        """Execute the full pipeline for a ticket and return its terminal result."""
        options = options or RunOptions()
        cfg = self.config
        backend = options.backend or get_backend(
            options.backend_name or cfg.execution.backend,
            model=cfg.execution.model,
            kill_grace_s=cfg.limits.kill_grace_s,
        )
        run_id = options.run_id or new_run_id()

        self.store.create_run(ticket.id, run_id)
        ticket = ticket.model_copy(update={"status": "running", "updated_at": utc_now()})
        self.store.save_ticket(ticket)

        audit = AuditLogger(
            str(self.repo_path / cfg.workspace.log_dir / f"{run_id}.jsonl"), self.bus, run_id=run_id,
        )
        ctx = RunContext(
            run_id=run_id,
            ticket=ticket,
            repo_path=self.repo_path,
            config=cfg,
            options=options,
            store=self.store,
            artifacts=self.artifacts,
            bus=self.bus,
            backend=backend,
            cancel_event=cancel_event or threading.Event(),
        )
        logger.info(f"[PIPELINE] Run {run_id} started for {ticket.id} (backend: {backend.name})")
        self.bus.emit("run_started", run_id, {"ticket_id": ticket.id, "backend": backend.name})

        try:
            try:
                result = self._run_steps(ctx)
            except KeyboardInterrupt:
                ctx.cancel_event.set()
                result = self._abort(ctx, "cancelled", "Interrupted by operator")
            finally:
                self._cleanup(ctx)

            result = self._close(ctx, result)
        finally:
            audit.close()
        return result

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _run_steps(self, ctx: RunContext) -> RunTicketResult:
        for name, step in _STEPS:
            if ctx.cancelled():
                return self._abort(ctx, "cancelled", "Run cancelled by operator")
            try:
                outcome = step(ctx)
            except Exception as e:
                logger.exception(f"[PIPELINE] {name} step raised")
                reason = _FAILURE_REASONS[name]
                if reason is None:
                    ctx.progress(f"{name} failed (non-fatal): {e}")
                    ctx.mark_step(name, "failed", error=str(e))
                    continue
                return self._abort(ctx, reason, f"{name} step failed: {e}")
            if not outcome.proceed:
                return outcome.result
        return ctx.finish(True)

    @staticmethod
    def _abort(ctx: RunContext, reason: str, error: str) -> RunTicketResult:
        """Fail the in-flight step, if any, and skip everything not yet reached."""
        current = ctx.current_step
        if current is not None and ctx.step_status.get(current) == "started":
            ctx.mark_step(current, "failed", error=error)
        ctx.skip_remaining(error)
        return ctx.finish(False, failure_reason=reason, error=error)

    @staticmethod
    def _cleanup(ctx: RunContext) -> None:
        try:
            cleanup.run(ctx)
        except Exception as e:
            logger.error(f"[PIPELINE] Could not record cleanup for {ctx.run_id}: {e}")

    def _close(self, ctx: RunContext, result: RunTicketResult) -> RunTicketResult:
        summary = self.artifacts.write("runs", ctx.run_id, {
            "result": result,
            "steps": self.store.get_steps(ctx.run_id),
        })
        result = result.model_copy(update={"artifacts": {**result.artifacts, "run": summary}})
        self.store.close_run(ctx.run_id, result)

        status = final_ticket_status(result)
        self.store.update_ticket(ctx.ticket.id, status=status)

        self.bus.emit("run_finished", ctx.run_id, {
            "ticket_id": ctx.ticket.id,
            "success": result.success,
            "failure_reason": result.failure_reason,
            "completion_outcome": result.completion_outcome,
            "ticket_status": status,
        })
        if result.success:
            logger.info(f"[PIPELINE] Run {ctx.run_id} succeeded ({result.completion_outcome or 'committed'})")
        else:
            logger.warning(f"[PIPELINE] Run {ctx.run_id} failed: {result.failure_reason}")
        return result
