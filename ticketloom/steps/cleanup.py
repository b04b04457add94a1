"""Step 8: remove the disposable workspace. Never raises."""

from __future__ import annotations

from loguru import logger

from ticketloom.steps import RunContext


def run(ctx: RunContext) -> None:
    ws = ctx.workspace
    if ws is None:
        ctx.mark_step("cleanup", "skipped", error="No workspace created")
        return
    try:
        ws.cleanup()
    except Exception as e:
        logger.error(f"[PIPELINE] Cleanup failed for {ctx.ticket.id}: {e}")
        ctx.mark_step("cleanup", "failed", error=str(e))
        return
    ctx.mark_step("cleanup", "success")
