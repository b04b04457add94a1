"""
Spindle detectors.

Each function is pure: it looks at the accumulated signal history handed to
it and returns a finding (or None). The monitor owns the history.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ticketloom.spindle.similarity import STUCK_PHRASES, compute_similarity, find_repeated_phrases

SIGNATURE_WINDOW = 20
SPINNING_MIN_OUTPUT_CHARS = 5000

_DIFF_HEADER = re.compile(r"^diff --git a/(.+?) b/(.+)$", re.MULTILINE)


@dataclass
class Finding:
    trigger: str
    confidence: float
    reason: str
    should_abort: bool = True
    should_block: bool = False
    diagnostics: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def short_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


def failure_signature(command: str, error: str) -> str:
    return short_hash(f"{command}::{error[:200]}")


def split_diff_by_file(diff: str) -> dict[str, str]:
    """Map each file in a unified diff to its own section."""
    sections: dict[str, str] = {}
    matches = list(_DIFF_HEADER.finditer(diff))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(diff)
        sections[match.group(2)] = diff[match.start():end]
    return sections


# ---------------------------------------------------------------------------
# Failure-signature detectors
# ---------------------------------------------------------------------------

def detect_command_failure(signatures: Sequence[str], threshold: int) -> str | None:
    """Return the first signature seen at least `threshold` times, else None."""
    if len(signatures) < threshold:
        return None
    counts: dict[str, int] = {}
    for sig in signatures:
        counts[sig] = counts.get(sig, 0) + 1
    for sig in signatures:
        if counts[sig] >= threshold:
            return sig
    return None


def detect_qa_ping_pong(signatures: Sequence[str], cycles: int) -> str | None:
    """Non-None iff the last 2*cycles signatures strictly alternate A,B,A,B with A != B."""
    window = 2 * cycles
    if cycles < 1 or len(signatures) < window:
        return None
    recent = list(signatures)[-window:]
    a, b = recent[0], recent[1]
    if a == b:
        return None
    for i, sig in enumerate(recent):
        if sig != (a if i % 2 == 0 else b):
            return None
    return f"Alternating failures: {a} ↔ {b} ({cycles} cycles)"


# ---------------------------------------------------------------------------
# Output / diff detectors
# ---------------------------------------------------------------------------

def detect_repetition(
    previous: Sequence[str],
    latest: str,
    similarity_threshold: float,
    max_similar_outputs: int,
) -> Finding | None:
    """Fires when the latest output matches at least `max_similar_outputs` earlier ones."""
    if not latest.strip():
        return None

    patterns: list[str] = []
    similar = 0
    best = 0.0
    for prev in list(previous)[-max_similar_outputs:]:
        sim = compute_similarity(latest, prev)
        if sim >= similarity_threshold:
            similar += 1
            best = max(best, sim)
            patterns.extend(find_repeated_phrases(latest, prev))

    stuck = False
    lowered = latest.lower()
    for phrase in STUCK_PHRASES:
        if phrase not in lowered:
            continue
        occurrences = sum(1 for p in previous if phrase in p.lower())
        if occurrences >= 2:
            stuck = True
            patterns.append(f'Repeated phrase: "{phrase}" ({occurrences + 1} times)')
            best = max(best, 0.85)

    if similar < max_similar_outputs and not stuck:
        return None
    if best < similarity_threshold:
        return None

    unique = list(dict.fromkeys(patterns))[:5]
    return Finding(
        trigger="repetition",
        confidence=round(best, 4),
        reason=f"Output repeated across {similar + 1} iterations",
        diagnostics={"similarity_score": round(best, 4), "repeated_patterns": unique},
    )


def detect_oscillation(digests: Sequence[str]) -> Finding | None:
    """
    Workspace states (consecutive duplicates already collapsed) that return to an
    earlier state: A,B,A or A,B,C,A. The shortest cycle ending at the latest
    state is reported.
    """
    seq = list(digests)
    if len(seq) < 3:
        return None
    latest = seq[-1]
    for period in range(2, len(seq)):
        if seq[-1 - period] == latest:
            cycle = seq[-1 - period:]
            labels = _label_states(cycle)
            return Finding(
                trigger="oscillation",
                confidence=0.85,
                reason=f"Workspace returned to an earlier state after {period} changes",
                diagnostics={"oscillation_pattern": " → ".join(labels), "period": period},
            )
    return None


def _label_states(cycle: Sequence[str]) -> list[str]:
    names: dict[str, str] = {}
    for digest in cycle:
        if digest not in names:
            names[digest] = chr(ord("A") + len(names) % 26)
    return [names[d] for d in cycle]


def detect_spinning(
    window: Sequence[tuple[int, int, str]],
    min_iterations: int,
    verbosity_threshold: float,
) -> Finding | None:
    """
    window holds (output_chars, diff_chars, diff_digest) per iteration.
    Fires when the workspace keeps moving but the net diff barely grows
    relative to how much the agent is saying.
    """
    if len(window) <= min_iterations:
        return None
    recent = list(window)[-(min_iterations + 1):]
    output_chars = sum(o for o, _, _ in recent[1:])
    if output_chars <= SPINNING_MIN_OUTPUT_CHARS:
        return None
    digests = {d for _, _, d in recent}
    if len(digests) < 2:
        return None
    net_change = abs(recent[-1][1] - recent[0][1])
    ratio = output_chars / max(net_change, 1)
    if ratio < verbosity_threshold:
        return None
    return Finding(
        trigger="spinning",
        confidence=0.7,
        reason=f"{len(recent) - 1} iterations of activity with little net change",
        diagnostics={"verbosity_ratio": round(ratio, 1), "net_change_chars": net_change},
    )
