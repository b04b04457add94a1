"""Step 1: create the isolated worktree and snapshot its baseline."""

from __future__ import annotations

from ticketloom.qa import capture_baseline
from ticketloom.scope import parse_changed_files
from ticketloom.steps import RunContext, StepOutcome
from ticketloom.workspace import Workspace


def run(ctx: RunContext) -> StepOutcome:
    cfg = ctx.config
    ctx.mark_step("worktree", "started")

    ws = Workspace(
        ctx.repo_path,
        ctx.ticket.id,
        cfg.workspace.worktree_dir,
        timeout=cfg.limits.git_timeout_s,
    )
    ctx.workspace = ws
    ctx.base_branch = ctx.options.base_branch or ws.detect_base_branch()
    ws.create(ctx.base_branch)

    if cfg.setup:
        ctx.progress(f"Running setup: {cfg.setup}")
        ws.run_setup(cfg.setup, timeout=cfg.limits.qa_timeout_s)

    if cfg.qa.commands and not ctx.options.skip_qa and not cfg.qa.disable_baseline:
        ctx.progress("Capturing QA baseline...")
        ctx.qa_baseline = capture_baseline(cfg.qa.commands, ws.path, cfg.limits.qa_timeout_s)

    # Anything dirty before the agent runs (setup output, build files) is not the agent's doing
    ctx.baseline_files = set(parse_changed_files(ws.status_porcelain()))

    ctx.mark_step("worktree", "success", metadata={
        "path": str(ws.path),
        "branch": ws.branch_name,
        "base_branch": ctx.base_branch,
        "baseline_files": sorted(ctx.baseline_files),
        "qa_baseline_failures": sorted(ctx.qa_baseline),
    })
    return StepOutcome.next()
