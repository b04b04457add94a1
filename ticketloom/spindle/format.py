"""Human-readable rendering of Spindle verdicts."""

from __future__ import annotations

from ticketloom.config_loader import SpindleConfig
from ticketloom.state import SpindleAbortDetails

_RECOMMENDATIONS: dict[str, list[str]] = {
    "token_budget": [
        "Increase token limit: spindle.token_budget_abort (current: {token_budget_abort})",
        "Break ticket into smaller, focused tasks",
        "Narrow scope with more specific allowed_paths",
    ],
    "stalling": [
        "Agent may be stuck - check if requirements are clear",
        "Review ticket description for ambiguity",
        "Adjust stall threshold: spindle.max_stall_iterations (current: {max_stall_iterations})",
        "Adjust wall-clock stall limit: spindle.max_stall_minutes (current: {max_stall_minutes:g})",
    ],
    "oscillation": [
        "Agent is flip-flopping between approaches",
        "Clarify the desired solution in ticket description",
        "Add constraints to narrow valid solutions",
    ],
    "repetition": [
        "Agent is repeating similar outputs",
        "Check if the task is achievable with current context",
        "Adjust similarity threshold: spindle.similarity_threshold (current: {similarity_threshold})",
    ],
    "spinning": [
        "Agent has high activity but no progress",
        "Simplify the task requirements",
        "Check for circular dependencies in the codebase",
    ],
    "qa_ping_pong": [
        "QA failures are alternating between two error types",
        "Fix one issue fully before addressing the next",
        "Check if fixes for one issue are causing the other",
    ],
    "command_failure": [
        "Same command keeps failing with the same error",
        "Manual intervention needed - the issue may be environmental",
        "Check test/lint config for issues outside the ticket scope",
    ],
}


def build_recommendations(trigger: str, config: SpindleConfig) -> list[str]:
    values = config.model_dump()
    recs = [line.format(**values) for line in _RECOMMENDATIONS.get(trigger, [])]
    recs.append("View full diagnostics: .ticketloom/artifacts/spindle/")
    recs.append("Disable Spindle (not recommended): spindle.enabled = false")
    return recs


def format_verdict(details: SpindleAbortDetails | None) -> str:
    if details is None:
        return "No spindle loop detected"

    diag = details.diagnostics
    label = "Spindle blocked (needs human)" if details.should_block else "Spindle loop detected"
    parts = [
        f"{label}: {details.trigger}",
        f"Reason: {details.reason}",
        f"Confidence: {details.confidence * 100:.0f}%",
        f"Iteration: {details.iteration}",
    ]
    if diag.get("estimated_tokens"):
        parts.append(f"Tokens: ~{diag['estimated_tokens']:,}")
    if diag.get("iterations_without_change"):
        parts.append(f"Iterations without change: {diag['iterations_without_change']}")
    if diag.get("minutes_since_change"):
        parts.append(f"Minutes without change: {diag['minutes_since_change']}")
    if diag.get("similarity_score"):
        parts.append(f"Similarity: {diag['similarity_score']:.2f}")
    if diag.get("oscillation_pattern"):
        parts.append(f"Pattern: {diag['oscillation_pattern']}")
    if diag.get("ping_pong_pattern"):
        parts.append(f"Pattern: {diag['ping_pong_pattern']}")
    if diag.get("repeated_patterns"):
        parts.append(f"Repeated: {', '.join(diag['repeated_patterns'])}")
    if diag.get("command_signature"):
        parts.append(f"Command signature: {diag['command_signature']}")
    if diag.get("verbosity_ratio"):
        parts.append(f"Verbosity: {diag['verbosity_ratio']}x output vs net change")
    if diag.get("file_edit_warnings"):
        parts.append(f"File churn: {', '.join(diag['file_edit_warnings'])}")
    if diag.get("other_triggers"):
        parts.append(f"Also fired: {', '.join(diag['other_triggers'])}")
    return "\n".join(parts)
