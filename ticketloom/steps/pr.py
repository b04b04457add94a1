"""Step 7: open the pull request. Failure here never fails the Run."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ticketloom.remote import PushSafetyError, assert_push_safe
from ticketloom.steps import CLI_NAME, RunContext, StepOutcome

_PR_URL = re.compile(r"https://github\.com/[^\s]+")


class PullRequestError(Exception):
    pass


def build_pr_body(description: str, title: str) -> str:
    return f"## Summary\n\n{description.strip() or title}\n\n---\n_Created by {CLI_NAME}_\n"


@retry(
    retry=retry_if_exception_type(PullRequestError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    reraise=True,
)
def create_pull_request(
    cwd: Path,
    title: str,
    body: str,
    head: str,
    base: str | None = None,
    draft: bool = False,
    timeout: float = 60,
) -> str:
    """Create a GitHub PR via gh CLI and return its URL."""
    cmd = ["gh", "pr", "create", "--title", title, "--body", body, "--head", head]
    if base:
        cmd += ["--base", base]
    if draft:
        cmd.append("--draft")

    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise PullRequestError(f"gh pr create timed out after {timeout}s") from e
    if result.returncode != 0:
        raise PullRequestError(f"PR creation failed: {result.stderr.strip()}")

    match = _PR_URL.search(result.stdout)
    return match.group(0) if match else result.stdout.strip()


def run(ctx: RunContext) -> StepOutcome:
    opts = ctx.options
    if opts.skip_pr or not opts.create_pr:
        ctx.mark_step("pr", "skipped", error="Not requested")
        return StepOutcome.next()
    if not ctx.pushed:
        ctx.mark_step("pr", "skipped", error="Branch not pushed")
        return StepOutcome.next()

    cfg = ctx.config
    ws = ctx.workspace
    ctx.mark_step("pr", "started")
    try:
        assert_push_safe(ws.path, cfg.allowed_remote, timeout=cfg.limits.git_timeout_s)
        url = create_pull_request(
            ws.path,
            title=ctx.ticket.title,
            body=build_pr_body(ctx.ticket.description, ctx.ticket.title),
            head=ws.branch_name,
            base=(ctx.base_branch or "").removeprefix("origin/") or None,
            draft=opts.draft_pr or cfg.pull_request.draft,
            timeout=cfg.limits.git_timeout_s,
        )
    except (PushSafetyError, PullRequestError, FileNotFoundError) as e:
        ctx.progress(f"PR creation failed (branch is pushed): {e}")
        ctx.mark_step("pr", "failed", error=str(e))
        return StepOutcome.next()

    ctx.pr_url = url
    ctx.progress(f"PR created: {url}")
    ctx.mark_step("pr", "success", metadata={"pr_url": url})
    return StepOutcome.next()
