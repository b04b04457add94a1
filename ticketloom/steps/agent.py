"""Step 2: run the agent with live loop detection."""

from __future__ import annotations

from typing import Any

from ticketloom.backends import AgentRequest
from ticketloom.prompt import build_ticket_prompt
from ticketloom.scope import check_violations, parse_changed_files
from ticketloom.spindle import SpindleMonitor, format_verdict
from ticketloom.spindle.feed import AgentOutputFeed
from ticketloom.state import SpindleAbortDetails
from ticketloom.steps import RunContext, StepOutcome
from ticketloom.workspace import WorkspaceError


def run(ctx: RunContext) -> StepOutcome:
    ws = ctx.workspace
    ctx.mark_step("agent", "started", metadata={"backend": ctx.backend.name})

    monitor = SpindleMonitor(ctx.config.spindle)
    ctx.monitor = monitor
    feed = AgentOutputFeed(monitor, diff_provider=ws.diff_head, on_progress=ctx.progress)

    request = AgentRequest(
        workspace_path=ws.path,
        prompt=build_ticket_prompt(ctx.ticket),
        timeout_s=ctx.options.timeout_s or ctx.config.limits.agent_timeout_s,
        on_progress=ctx.progress,
        on_output=feed.on_output,
        on_tick=feed.on_tick,
        should_stop=lambda: feed.should_stop() or ctx.cancelled(),
    )
    result = ctx.backend.run(request)
    ctx.agent_result = result

    ctx.write_artifact("execution", "executions", {
        "run_id": ctx.run_id,
        "ticket_id": ctx.ticket.id,
        "backend": ctx.backend.name,
        **result.model_dump(),
    })

    verdict = feed.verdict
    if verdict is None and result.success:
        verdict = feed.finish()
    if verdict is not None:
        return spindle_abort(ctx, "agent", verdict)

    if result.cancelled or ctx.cancelled():
        return _fail(ctx, "cancelled", "Run cancelled by operator")
    if result.timed_out:
        return _fail(ctx, "timeout", result.error or "Agent timed out")
    if not result.success:
        return _fail(ctx, "agent_error", result.error or "Agent failed")

    ctx.mark_step("agent", "success", metadata={
        "duration_ms": result.duration_ms,
        "spindle_iterations": monitor.iteration,
        "estimated_tokens": monitor.estimated_tokens,
    })
    return StepOutcome.next()


def _fail(ctx: RunContext, reason: str, error: str) -> StepOutcome:
    ctx.mark_step("agent", "failed", error=error)
    ctx.skip_remaining(f"Agent step failed: {reason}")
    return StepOutcome.stop(ctx.finish(False, failure_reason=reason, error=error))


def _discarded_violations(ctx: RunContext) -> list[str]:
    try:
        status = ctx.workspace.status_porcelain()
    except WorkspaceError:
        return []
    changed = [f for f in parse_changed_files(status) if f not in ctx.baseline_files]
    violations = check_violations(changed, ctx.ticket.allowed_paths, ctx.ticket.forbidden_paths)
    return [v.file for v in violations]


def spindle_abort(ctx: RunContext, step: str, verdict: SpindleAbortDetails) -> StepOutcome:
    """Persist the verdict, mark `step` failed and end the Run as spindle_abort."""
    monitor = ctx.monitor
    formatted = format_verdict(verdict)
    discarded = _discarded_violations(ctx)

    data: dict[str, Any] = {
        "run_id": ctx.run_id,
        "ticket_id": ctx.ticket.id,
        "verdict": verdict,
        "state": monitor.snapshot(),
        "formatted": formatted,
        "pointers": {"execution": ctx.artifact_paths.get("execution")},
    }
    if discarded:
        data["scope_violations"] = discarded
    path = ctx.write_artifact("spindle", "spindle", data)
    verdict = verdict.model_copy(update={"artifact_path": path})

    for line in formatted.splitlines():
        ctx.progress(line)
    if discarded:
        ctx.progress(f"Scope violations (discarded): {', '.join(discarded)}")

    label = "Spindle blocked" if verdict.should_block else "Spindle loop detected"
    error = f"{label}: {verdict.trigger} (confidence: {verdict.confidence * 100:.0f}%)"
    if verdict.should_block:
        error += " - needs human intervention"

    ctx.mark_step(step, "failed", error=error, metadata={
        "trigger": verdict.trigger,
        "iteration": verdict.iteration,
        "should_abort": verdict.should_abort,
        "should_block": verdict.should_block,
        "artifact": path,
    })
    ctx.skip_remaining(f"Spindle: {verdict.trigger}")
    return StepOutcome.stop(ctx.finish(False, failure_reason="spindle_abort", error=error, spindle=verdict))
