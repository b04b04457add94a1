"""
TICKETLOOM State: tickets, runs, step records and terminal results.

These are the structures that flow between the pipeline, the store and the
artifact writer. Everything is a pydantic model so it can be persisted as
JSON/YAML without hand-written serializers.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


StepName = Literal["worktree", "agent", "scope", "commit", "push", "qa", "pr", "cleanup"]
StepStatus = Literal["started", "success", "failed", "skipped"]
TicketStatus = Literal["ready", "running", "done", "failed", "blocked"]

FailureReason = Literal[
    "agent_error",
    "scope_violation",
    "spindle_abort",
    "qa_failed",
    "git_error",
    "pr_error",
    "timeout",
    "cancelled",
]
CompletionOutcome = Literal["no_changes_needed"]

SpindleTrigger = Literal[
    "oscillation",
    "spinning",
    "stalling",
    "repetition",
    "token_budget",
    "qa_ping_pong",
    "command_failure",
]

STEP_ORDER: tuple[str, ...] = ("worktree", "agent", "scope", "commit", "push", "qa", "pr", "cleanup")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SPINDLE = 2
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
# Ticket
# ---------------------------------------------------------------------------

class Ticket(BaseModel):
    """One authorized unit of work with a path-scoped change budget."""
    id: str
    title: str
    description: str = ""
    allowed_paths: list[str] = Field(default_factory=list)
    forbidden_paths: list[str] = Field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    status: TicketStatus = "ready"
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def branch_name(self) -> str:
        return f"ticketloom/{self.id}"


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

class ScopeViolation(BaseModel):
    file: str
    violation: Literal["in_forbidden", "not_in_allowed"]
    pattern: str | None = None


class ScopeExpansion(BaseModel):
    added_paths: list[str]
    expanded_paths: list[str]
    new_retry_count: int


# ---------------------------------------------------------------------------
# Spindle verdict
# ---------------------------------------------------------------------------

class SpindleAbortDetails(BaseModel):
    """Immutable loop-detection verdict."""
    model_config = ConfigDict(frozen=True)

    trigger: SpindleTrigger
    confidence: float = Field(ge=0.0, le=1.0)
    iteration: int
    reason: str
    should_abort: bool = True
    should_block: bool = False
    thresholds: dict[str, Any] = Field(default_factory=dict)
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)
    artifact_path: str | None = None


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------

class StepRecord(BaseModel):
    run_id: str
    step: StepName
    status: StepStatus
    started_at: str = Field(default_factory=utc_now)
    finished_at: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunTicketResult(BaseModel):
    """Terminal outcome of one Run."""
    run_id: str
    ticket_id: str
    success: bool
    branch_name: str | None = None
    pr_url: str | None = None
    duration_ms: int = 0
    failure_reason: FailureReason | None = None
    completion_outcome: CompletionOutcome | None = None
    error: str | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    scope_expanded: ScopeExpansion | None = None
    spindle: SpindleAbortDetails | None = None

    @property
    def exit_code(self) -> int:
        if self.success:
            return EXIT_SUCCESS
        if self.failure_reason == "spindle_abort":
            return EXIT_SPINDLE
        if self.failure_reason == "cancelled":
            return EXIT_INTERRUPTED
        return EXIT_FAILURE


class RunRecord(BaseModel):
    id: str
    ticket_id: str
    started_at: str = Field(default_factory=utc_now)
    finished_at: str | None = None
    result: RunTicketResult | None = None

    @property
    def closed(self) -> bool:
        return self.result is not None
