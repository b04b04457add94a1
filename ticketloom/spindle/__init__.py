"""
TICKETLOOM Spindle: loop detection for agent sessions.

Named after the spinning-wheel part: when the spindle jams, the wheel keeps
turning without producing thread. The monitor is fed one iteration at a time
(agent output since the last check + the current workspace diff) and, on
every iteration, runs all detectors:

  token_budget     estimated tokens past the abort threshold
  stalling         no workspace change and no output for N iterations,
                   or no workspace change for max_stall_minutes
  qa_ping_pong     failure signatures alternating A,B,A,B
  oscillation      workspace returning to an earlier state
  command_failure  the same failure signature N times
  repetition       near-duplicate output across iterations
  spinning         lots of output, little net change

The highest-confidence finding becomes the verdict; the rest are kept in
diagnostics. Once a verdict fires it is latched for the rest of the session.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from loguru import logger

from ticketloom.config_loader import SpindleConfig
from ticketloom.spindle.detectors import (
    SIGNATURE_WINDOW,
    Finding,
    detect_command_failure,
    detect_oscillation,
    detect_qa_ping_pong,
    detect_repetition,
    detect_spinning,
    estimate_tokens,
    failure_signature,
    short_hash,
    split_diff_by_file,
)
from ticketloom.spindle.format import build_recommendations, format_verdict
from ticketloom.spindle.similarity import compute_similarity, find_repeated_phrases
from ticketloom.state import SpindleAbortDetails

__all__ = [
    "SpindleMonitor",
    "build_recommendations",
    "compute_similarity",
    "detect_command_failure",
    "detect_qa_ping_pong",
    "estimate_tokens",
    "failure_signature",
    "find_repeated_phrases",
    "format_verdict",
    "short_hash",
]

_EMPTY_DIGEST = short_hash("")


class SpindleMonitor:
    """Per-run accumulator of loop signals. Lives for the agent step only."""

    def __init__(self, config: SpindleConfig | None = None):
        self.config = config or SpindleConfig()
        self.iteration = 0
        self.estimated_tokens = 0
        self.iterations_since_change = 0
        self.signatures: deque[str] = deque(maxlen=SIGNATURE_WINDOW)
        self.file_edit_counts: dict[str, int] = {}
        self.verdict: SpindleAbortDetails | None = None

        self._outputs: deque[str] = deque(maxlen=self.config.max_similar_outputs)
        self._states: deque[str] = deque(maxlen=12)
        self._window: deque[tuple[int, int, str]] = deque(maxlen=self.config.max_stall_iterations + 1)
        self._last_digest = _EMPTY_DIGEST
        self._file_digests: dict[str, str] = {}
        self._warnings_seen: set[str] = set()
        self._pending_warnings: list[str] = []
        self._lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Feeding
    # -----------------------------------------------------------------------

    def record_command_failure(self, command: str, error: str) -> str:
        """Push a failure signature into the bounded window (oldest evicted)."""
        sig = failure_signature(command, error)
        with self._lock:
            self.signatures.append(sig)
        logger.debug(f"[SPINDLE] Command failure recorded: {command[:60]} -> {sig}")
        return sig

    def observe(
        self,
        output: str,
        diff: str | None = None,
        *,
        output_is_progress: bool = False,
        final: bool = False,
    ) -> SpindleAbortDetails | None:
        """
        Account one agent iteration and return the verdict, if any.

        With output_is_progress, an iteration that produced output does not
        count toward stalling even when the diff is unchanged. A final
        iteration (the flush after the agent exited) never counts as a stall.
        """
        if not self.config.enabled:
            return None

        with self._lock:
            if self.verdict is not None:
                return self.verdict

            self.iteration += 1
            diff = diff or ""
            digest = short_hash(diff) if diff.strip() else _EMPTY_DIGEST
            changed = digest != self._last_digest

            self.estimated_tokens += estimate_tokens(output)
            if changed:
                self.estimated_tokens += estimate_tokens(diff)
                self.iterations_since_change = 0
                self._track_file_churn(diff)
                if digest != _EMPTY_DIGEST and (not self._states or self._states[-1] != digest):
                    self._states.append(digest)
            elif output_is_progress and output.strip():
                self.iterations_since_change = 0
            elif not final:
                self.iterations_since_change += 1
            self._last_digest = digest

            previous = list(self._outputs)
            self._window.append((len(output), len(diff), digest))
            self._collect_warnings()

            findings = self._run_detectors(previous, output, final)
            if output.strip():
                self._outputs.append(output)
            return self._decide(findings)

    def check(self) -> SpindleAbortDetails | None:
        """Re-evaluate signature-based detectors without counting a new iteration."""
        if not self.config.enabled:
            return None
        with self._lock:
            if self.verdict is not None:
                return self.verdict
            return self._decide(self._failure_findings())

    def check_time_stall(self, minutes_since_change: float) -> SpindleAbortDetails | None:
        """Wall-clock stall: fires once the workspace has not changed for max_stall_minutes."""
        cfg = self.config
        if not cfg.enabled or cfg.max_stall_minutes <= 0:
            return None
        with self._lock:
            if self.verdict is not None:
                return self.verdict
            if minutes_since_change < cfg.max_stall_minutes:
                return None
            return self._decide([Finding(
                trigger="stalling",
                confidence=0.95,
                reason=f"No workspace change for {minutes_since_change:.0f} minutes",
                diagnostics={
                    "minutes_since_change": round(minutes_since_change),
                    "max_stall_minutes": cfg.max_stall_minutes,
                },
            )])

    def pop_warnings(self) -> list[str]:
        with self._lock:
            pending, self._pending_warnings = self._pending_warnings, []
        return pending

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _track_file_churn(self, diff: str) -> None:
        sections = split_diff_by_file(diff)
        current = {path: short_hash(body) for path, body in sections.items()}
        for path in set(current) | set(self._file_digests):
            if current.get(path) != self._file_digests.get(path):
                self.file_edit_counts[path] = self.file_edit_counts.get(path, 0) + 1
        self._file_digests = current

    def _warn(self, message: str) -> None:
        if message not in self._warnings_seen:
            self._warnings_seen.add(message)
            self._pending_warnings.append(message)
            logger.warning(f"[SPINDLE] {message}")

    def _collect_warnings(self) -> None:
        cfg = self.config
        if cfg.token_budget_warning <= self.estimated_tokens < cfg.token_budget_abort:
            self._warn(f"Approaching token budget: ~{cfg.token_budget_warning:,}+ tokens")
        total_output = sum(o for o, _, _ in self._window)
        latest_diff = self._window[-1][1] if self._window else 0
        if total_output > 5000 and latest_diff > 0:
            ratio = total_output / latest_diff
            if ratio >= cfg.verbosity_threshold:
                self._warn(f"High verbosity ratio: output is {cfg.verbosity_threshold:g}x+ the size of the changes")
        for path in self._churned_files():
            self._warn(f"File churn: {path} edited {self.file_edit_counts[path]} times")

    def _churned_files(self) -> list[str]:
        return sorted(p for p, n in self.file_edit_counts.items() if n >= self.config.max_file_edits)

    def _failure_findings(self) -> list[Finding]:
        cfg = self.config
        findings: list[Finding] = []
        pattern = detect_qa_ping_pong(self.signatures, cfg.max_qa_ping_pong)
        if pattern:
            findings.append(Finding(
                trigger="qa_ping_pong",
                confidence=0.9,
                reason=pattern,
                should_block=True,
                diagnostics={"ping_pong_pattern": pattern},
            ))
        sig = detect_command_failure(self.signatures, cfg.max_command_failures)
        if sig:
            findings.append(Finding(
                trigger="command_failure",
                confidence=0.8,
                reason=f"Same command failed {cfg.max_command_failures}+ times the same way",
                should_abort=False,
                should_block=True,
                diagnostics={
                    "command_signature": sig,
                    "command_failure_threshold": cfg.max_command_failures,
                },
            ))
        return findings

    def _run_detectors(self, previous: list[str], output: str, final: bool = False) -> list[Finding]:
        cfg = self.config
        findings: list[Finding] = []

        if self.estimated_tokens >= cfg.token_budget_abort:
            findings.append(Finding(
                trigger="token_budget",
                confidence=1.0,
                reason=f"Estimated tokens {self.estimated_tokens:,} >= {cfg.token_budget_abort:,}",
            ))

        if not final and self.iterations_since_change >= cfg.max_stall_iterations:
            findings.append(Finding(
                trigger="stalling",
                confidence=0.9,
                reason=f"No workspace change for {self.iterations_since_change} iterations",
            ))

        findings.extend(self._failure_findings())

        oscillation = detect_oscillation(self._states)
        if oscillation:
            findings.append(oscillation)

        repetition = detect_repetition(previous, output, cfg.similarity_threshold, cfg.max_similar_outputs)
        if repetition:
            findings.append(repetition)

        spinning = detect_spinning(self._window, cfg.max_stall_iterations, cfg.verbosity_threshold)
        if spinning:
            findings.append(spinning)

        return findings

    def _decide(self, findings: list[Finding]) -> SpindleAbortDetails | None:
        if not findings:
            return None

        # max() keeps the first of equal confidences, so detector order breaks ties
        winner = max(findings, key=lambda f: f.confidence)
        diagnostics: dict[str, Any] = {
            "estimated_tokens": self.estimated_tokens,
            "iterations_without_change": self.iterations_since_change,
            **winner.diagnostics,
        }
        others = [f.trigger for f in findings if f is not winner]
        if others:
            diagnostics["other_triggers"] = others
        churn = [f"{p} edited {self.file_edit_counts[p]} times" for p in self._churned_files()]
        if churn:
            diagnostics["file_edit_warnings"] = churn

        self.verdict = SpindleAbortDetails(
            trigger=winner.trigger,
            confidence=winner.confidence,
            iteration=self.iteration,
            reason=winner.reason,
            should_abort=winner.should_abort,
            should_block=winner.should_block,
            thresholds=self.config.model_dump(),
            diagnostics=diagnostics,
            recommendations=build_recommendations(winner.trigger, self.config),
        )
        logger.warning(
            f"[SPINDLE] {winner.trigger} fired at iteration {self.iteration} "
            f"(confidence {winner.confidence:.0%})"
        )
        return self.verdict

    def snapshot(self) -> dict[str, Any]:
        """Serializable view of the accumulated state, for the spindle artifact."""
        with self._lock:
            return {
                "iteration": self.iteration,
                "estimated_tokens": self.estimated_tokens,
                "iterations_since_change": self.iterations_since_change,
                "signatures": list(self.signatures),
                "file_edit_counts": dict(self.file_edit_counts),
                "recent_outputs": [o[-2000:] for o in self._outputs],
            }
