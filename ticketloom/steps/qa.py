"""
Step 6: quality gate, with an optional bounded retry-with-fix loop.

A failing test command hands its output back to the agent, which may also
touch the test files named in that output. Every QA failure is recorded in
the Spindle Monitor so an A,B,A,B ping-pong or a repeated identical failure
ends the loop before the retry budget does.
"""

from __future__ import annotations

from loguru import logger

from ticketloom.backends import AgentRequest
from ticketloom.prompt import build_ticket_prompt
from ticketloom.qa import QaCommandResult, QaResult, extract_test_files, is_test_failure, run_qa
from ticketloom.remote import PushSafetyError
from ticketloom.scope import check_violations
from ticketloom.spindle import SpindleMonitor
from ticketloom.steps import CLI_NAME, RunContext, StepOutcome
from ticketloom.steps.agent import spindle_abort
from ticketloom.steps.push import push_branch
from ticketloom.steps.scope import changed_files, format_violations
from ticketloom.workspace import WorkspaceError

FIX_INSTRUCTION = "Your changes broke these tests. Fix the tests to match the new behavior. Do NOT revert your changes."


def _fix_prompt(ctx: RunContext, failed: QaCommandResult, test_files: list[str]) -> str:
    extra = [
        "## QA failure",
        FIX_INSTRUCTION,
        "",
        f"Failing command: `{failed.cmd}`",
        "",
        "```",
        failed.output_tail.strip(),
        "```",
    ]
    if test_files:
        extra += ["", "You may also modify these test files:"]
        extra += [f"- {f}" for f in test_files]
    return build_ticket_prompt(ctx.ticket, extra="\n".join(extra))


def _stop(ctx: RunContext, reason: str, error: str, attempts: list[QaResult]) -> StepOutcome:
    _write_artifact(ctx, attempts)
    ctx.mark_step("qa", "failed", error=error)
    ctx.skip_remaining(f"QA step failed: {reason}")
    return StepOutcome.stop(ctx.finish(False, failure_reason=reason, error=error))


def _write_artifact(ctx: RunContext, attempts: list[QaResult]) -> None:
    ctx.write_artifact("qa", "qa", {
        "run_id": ctx.run_id,
        "ticket_id": ctx.ticket.id,
        "baseline_failures": ctx.qa_baseline,
        "attempts": attempts,
    })


def _fix_attempt(ctx: RunContext, failed: QaCommandResult, attempt: int,
                 attempts: list[QaResult]) -> StepOutcome | None:
    """Re-invoke the agent against the failure. Returns a terminal outcome, or None to re-run QA."""
    ws = ctx.workspace
    ticket = ctx.ticket
    test_files = extract_test_files(failed.output_tail)
    ctx.progress(f"QA fix attempt {attempt}/{ticket.max_retries} for {failed.name}")

    result = ctx.backend.run(AgentRequest(
        workspace_path=ws.path,
        prompt=_fix_prompt(ctx, failed, test_files),
        timeout_s=ctx.options.timeout_s or ctx.config.limits.agent_timeout_s,
        on_progress=ctx.progress,
        should_stop=ctx.cancelled,
    ))
    if result.cancelled or ctx.cancelled():
        return _stop(ctx, "cancelled", "Run cancelled by operator", attempts)
    if not result.success:
        return _stop(ctx, "qa_failed", f"QA fix attempt failed: {result.error}", attempts)

    changed = changed_files(ctx)
    violations = check_violations(changed, [*ticket.allowed_paths, *test_files], ticket.forbidden_paths)
    if violations:
        error = f"Scope violation during QA fix\n{format_violations(violations)}\n{ctx.retry_hint()}"
        return _stop(ctx, "scope_violation", error, attempts)

    try:
        sha = ws.commit(f"fix: update tests for {ticket.title}")
        if sha is None:
            ctx.progress("Fix attempt made no changes")
            return None
        ctx.commit_sha = sha
        if ctx.pushed:
            push_branch(ctx)
    except PushSafetyError as e:
        return _stop(ctx, "git_error", str(e), attempts)
    except WorkspaceError as e:
        return _stop(ctx, "git_error", f"Failed to record QA fix: {e}", attempts)
    return None


def run(ctx: RunContext) -> StepOutcome:
    cfg = ctx.config
    if ctx.options.skip_qa:
        ctx.mark_step("qa", "skipped", error="Skipped by flag")
        return StepOutcome.next()
    if not cfg.qa.commands:
        ctx.mark_step("qa", "skipped", error="No QA configured")
        return StepOutcome.next()

    ctx.mark_step("qa", "started")
    if ctx.monitor is None:
        ctx.monitor = SpindleMonitor(cfg.spindle)

    skip = set() if cfg.qa.disable_baseline else ctx.qa_baseline
    retry_enabled = ctx.options.qa_retry_with_fix and cfg.qa.retry_with_fix
    attempts: list[QaResult] = []
    fixes = 0

    while True:
        result = run_qa(cfg.qa.commands, ctx.workspace.path, cfg.limits.qa_timeout_s, skip=skip)
        attempts.append(result)
        if result.passed:
            break

        failed = result.failed
        ctx.monitor.record_command_failure(failed.cmd, failed.output_tail)
        verdict = ctx.monitor.check()
        if verdict is not None:
            _write_artifact(ctx, attempts)
            return spindle_abort(ctx, "qa", verdict)

        if not retry_enabled or not is_test_failure(failed) or fixes >= ctx.ticket.max_retries:
            break
        fixes += 1
        outcome = _fix_attempt(ctx, failed, fixes, attempts)
        if outcome is not None:
            return outcome

    if result.passed:
        _write_artifact(ctx, attempts)
        ctx.mark_step("qa", "success", metadata={
            "commands": [r.name for r in result.results],
            "skipped": result.skipped,
            "fix_attempts": fixes,
        })
        return StepOutcome.next()

    failed = result.failed
    logger.warning(f"[QA] {ctx.ticket.id}: {failed.name} still failing after {fixes} fix attempt(s)")
    error = (
        f"QA failed at: {failed.name}\n"
        f"{failed.output_tail[-1500:].strip()}\n"
        f"To retry: {CLI_NAME} run {ctx.ticket.id}"
    )
    return _stop(ctx, "qa_failed", error, attempts)
