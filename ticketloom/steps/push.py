"""Step 5: push the ticket branch after the push-safety check."""

from __future__ import annotations

from ticketloom.remote import PushSafetyError, assert_push_safe
from ticketloom.steps import RunContext, StepOutcome
from ticketloom.workspace import WorkspaceError


def push_branch(ctx: RunContext) -> None:
    """Raises PushSafetyError or WorkspaceError."""
    cfg = ctx.config
    assert_push_safe(ctx.workspace.path, cfg.allowed_remote, timeout=cfg.limits.git_timeout_s)
    ctx.workspace.push()
    ctx.pushed = True


def run(ctx: RunContext) -> StepOutcome:
    if ctx.options.skip_push:
        ctx.mark_step("push", "skipped", error="Skipped (milestone mode)")
        return StepOutcome.next()

    ctx.mark_step("push", "started")
    try:
        push_branch(ctx)
    except PushSafetyError as e:
        error = str(e)
    except WorkspaceError as e:
        error = f"Push failed: {e}"
    else:
        ctx.mark_step("push", "success", metadata={"branch": ctx.workspace.branch_name})
        return StepOutcome.next()

    ctx.mark_step("push", "failed", error=error)
    ctx.skip_remaining("Push failed")
    return StepOutcome.stop(ctx.finish(False, failure_reason="git_error", error=error))
