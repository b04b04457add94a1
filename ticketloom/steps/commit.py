"""Step 4: stage and commit, capturing the diff artifact first."""

from __future__ import annotations

from ticketloom.steps import RunContext, StepOutcome
from ticketloom.workspace import WorkspaceError


def run(ctx: RunContext) -> StepOutcome:
    ws = ctx.workspace
    ctx.mark_step("commit", "started")
    try:
        diff = ws.diff_staged()
        ctx.write_artifact("diff", "diffs", {
            "run_id": ctx.run_id,
            "ticket_id": ctx.ticket.id,
            "files": ctx.changed_files,
            "diff": diff,
        })
        sha = ws.commit(ctx.ticket.title)
        if sha is None:
            raise WorkspaceError("Nothing to commit")
    except WorkspaceError as e:
        error = f"Commit failed: {e}"
        ctx.mark_step("commit", "failed", error=error)
        ctx.skip_remaining("Commit failed")
        return StepOutcome.stop(ctx.finish(False, failure_reason="git_error", error=error))

    ctx.commit_sha = sha
    ctx.mark_step("commit", "success", metadata={"sha": sha, "files": len(ctx.changed_files)})
    return StepOutcome.next()
