"""
Live bridge between a running agent process and the SpindleMonitor.

Output lines are buffered as they stream in; every `check_interval_s` the
buffer plus the current workspace diff are handed to the monitor as one
iteration. A window that produced output is not a stall; a workspace that
has not changed for `max_stall_minutes` is, however noisy the agent is.
Tool-call failures visible in the structured output (Claude stream-json,
Codex --json) are recorded as command failures. When a verdict
fires, the feed raises its stop flag so the process runner terminates the
agent.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable

from loguru import logger

from ticketloom.spindle import SpindleMonitor
from ticketloom.state import SpindleAbortDetails


class AgentOutputFeed:
    def __init__(
        self,
        monitor: SpindleMonitor,
        diff_provider: Callable[[], str | None],
        on_progress: Callable[[str], None] | None = None,
        check_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.monitor = monitor
        self.diff_provider = diff_provider
        self.on_progress = on_progress or (lambda msg: None)
        self.check_interval_s = (
            monitor.config.check_interval_s if check_interval_s is None else check_interval_s
        )
        self._clock = clock
        self._last_check = clock()
        self._last_diff: str | None = None
        self._last_change_at = self._last_check
        self._buffer: list[str] = []
        self._tool_commands: dict[str, str] = {}
        self._lock = threading.Lock()
        self._check_lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def verdict(self) -> SpindleAbortDetails | None:
        return self.monitor.verdict

    def should_stop(self) -> bool:
        return self._stop.is_set()

    def on_output(self, line: str) -> None:
        with self._lock:
            self._buffer.append(line)
        self._scan_for_failures(line)
        self.on_tick()

    def on_tick(self) -> None:
        if self._stop.is_set():
            return
        # Output callbacks and the wait loop tick from different threads
        if not self._check_lock.acquire(blocking=False):
            return
        try:
            if self._clock() - self._last_check >= self.check_interval_s:
                self._check()
        finally:
            self._check_lock.release()

    def check_now(self) -> SpindleAbortDetails | None:
        with self._check_lock:
            return self._check()

    def _check(self, final: bool = False) -> SpindleAbortDetails | None:
        now = self._clock()
        with self._lock:
            output = "".join(self._buffer)
            self._buffer.clear()
            self._last_check = now

        try:
            diff = self.diff_provider()
        except Exception as e:
            logger.debug(f"[SPINDLE] Diff unavailable for check: {e}")
            diff = None

        if diff is not None and diff != self._last_diff:
            self._last_diff = diff
            self._last_change_at = now

        verdict = self.monitor.observe(output, diff, output_is_progress=True, final=final)
        if verdict is None and not final:
            verdict = self.monitor.check_time_stall((now - self._last_change_at) / 60)
        for warning in self.monitor.pop_warnings():
            self.on_progress(f"⚠ {warning}")
        if verdict is not None:
            self._stop.set()
        return verdict

    def finish(self) -> SpindleAbortDetails | None:
        """Flush whatever is buffered as a final iteration. A final flush never reports a stall."""
        if self.monitor.verdict is not None:
            return self.monitor.verdict
        with self._lock:
            pending = bool(self._buffer)
        if pending or self.monitor.iteration == 0:
            with self._check_lock:
                return self._check(final=True)
        return None

    # -----------------------------------------------------------------------
    # Structured output parsing
    # -----------------------------------------------------------------------

    def _scan_for_failures(self, line: str) -> None:
        line = line.strip()
        if not line.startswith("{"):
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type", "")
        if event_type == "assistant":
            for block in _content_blocks(event):
                if block.get("type") == "tool_use":
                    tool_input = block.get("input") or {}
                    command = tool_input.get("command") or block.get("name", "tool")
                    self._tool_commands[block.get("id", "")] = str(command)
        elif event_type == "user":
            for block in _content_blocks(event):
                if block.get("type") == "tool_result" and block.get("is_error"):
                    command = self._tool_commands.get(block.get("tool_use_id", ""), "tool")
                    self.monitor.record_command_failure(command, _text_of(block.get("content")))
        elif event_type == "item.completed":
            item = event.get("item") or {}
            if item.get("type") == "command_execution" and item.get("exit_code") not in (0, None):
                self.monitor.record_command_failure(
                    str(item.get("command", "")), str(item.get("aggregated_output", ""))
                )


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    content = (event.get("message") or {}).get("content") or []
    return [b for b in content if isinstance(b, dict)] if isinstance(content, list) else []


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(str(c.get("text", "")) for c in content if isinstance(c, dict))
    return str(content or "")
