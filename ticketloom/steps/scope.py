"""Step 3: gate the agent's changes on the ticket's path scope."""

from __future__ import annotations

from ticketloom.scope import analyze_expansion, check_violations, parse_changed_files
from ticketloom.state import ScopeExpansion, ScopeViolation
from ticketloom.steps import RunContext, StepOutcome


def changed_files(ctx: RunContext) -> list[str]:
    """Files changed in the workspace, minus whatever was dirty before the agent ran."""
    status = ctx.workspace.status_porcelain()
    return [f for f in parse_changed_files(status) if f not in ctx.baseline_files]


def format_violations(violations: list[ScopeViolation]) -> str:
    lines = []
    for v in violations:
        if v.violation == "in_forbidden":
            lines.append(f"  - {v.file} (forbidden: {v.pattern})")
        elif v.pattern:
            lines.append(f"  - {v.file} ({v.pattern})")
        else:
            lines.append(f"  - {v.file} (not in allowed paths)")
    return "\n".join(lines)


def run(ctx: RunContext) -> StepOutcome:
    ticket = ctx.ticket
    ctx.mark_step("scope", "started")

    changed = changed_files(ctx)
    if not changed:
        ctx.progress("No changes detected; nothing to commit")
        ctx.mark_step("scope", "success", metadata={"completion_outcome": "no_changes_needed"})
        ctx.skip_remaining("No changes needed")
        return StepOutcome.stop(ctx.finish(True, completion_outcome="no_changes_needed"))

    violations = check_violations(changed, ticket.allowed_paths, ticket.forbidden_paths)
    if not violations:
        ctx.changed_files = changed
        ctx.mark_step("scope", "success", metadata={"changed_files": changed})
        return StepOutcome.next()

    ctx.write_artifact("violations", "violations", {
        "run_id": ctx.run_id,
        "ticket_id": ticket.id,
        "changed_files": changed,
        "allowed_paths": ticket.allowed_paths,
        "forbidden_paths": ticket.forbidden_paths,
        "violations": violations,
    })

    expansion = analyze_expansion(
        violations,
        ticket.allowed_paths,
        retry_count=ticket.retry_count,
        max_retries=ticket.max_retries,
    )

    if expansion.can_expand:
        new_retry = ticket.retry_count + 1
        ctx.store.update_ticket(
            ticket.id,
            allowed_paths=expansion.expanded_paths,
            retry_count=new_retry,
            status="ready",
        )
        step_error = f"Scope expanded: +{len(expansion.added_paths)} paths, retry {new_retry}/{ticket.max_retries}"
        ctx.progress(step_error)
        ctx.mark_step("scope", "failed", error=step_error, metadata={
            "added_paths": expansion.added_paths,
            "expanded_paths": expansion.expanded_paths,
            "new_retry_count": new_retry,
        })
        ctx.skip_remaining("Scope expanded; ticket re-queued")
        return StepOutcome.stop(ctx.finish(
            False,
            failure_reason="scope_violation",
            error=f"Scope auto-expanded: added {', '.join(expansion.added_paths)}. Re-run the ticket to continue.",
            scope_expanded=ScopeExpansion(
                added_paths=expansion.added_paths,
                expanded_paths=expansion.expanded_paths,
                new_retry_count=new_retry,
            ),
        ))

    error = (
        "Scope violation: Changes outside allowed paths\n"
        f"{format_violations(violations)}\n"
        f"Note: {expansion.reason}\n"
        f"{ctx.retry_hint()}"
    )
    ctx.mark_step("scope", "failed", error=error, metadata={
        "violations": [v.model_dump() for v in violations],
        "expansion_refused": expansion.reason,
    })
    ctx.skip_remaining("Scope violation")
    return StepOutcome.stop(ctx.finish(False, failure_reason="scope_violation", error=error))
