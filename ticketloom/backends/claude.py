"""Claude Code CLI backend (`claude -p`, stream-json output)."""

from __future__ import annotations

import json
import os
import time

from loguru import logger

from ticketloom.backends import AgentRequest, AgentResult, BackendError, ExecutionBackend, register_backend

_PHASES = (
    (("reading", "read file", "let me read"), "Reading files"),
    (("writing", "write file", "creating file"), "Writing files"),
    (("editing", "edit file", "updating"), "Editing files"),
    (("running", "execute", "bash", "npm "), "Running command"),
    (("searching", "grep", "looking for"), "Searching"),
    (("analyzing", "examining", "reviewing"), "Analyzing"),
    (("test",), "Testing"),
)


def detect_phase(text: str) -> str | None:
    lower = text.lower()
    for needles, phase in _PHASES:
        if any(n in lower for n in needles):
            return phase
    return None


def stream_text(line: str) -> str:
    """Assistant text and tool names carried by one stream-json line, or the raw line."""
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return line
    if not isinstance(event, dict):
        return line
    parts: list[str] = []
    for block in (event.get("message") or {}).get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            parts.append(f"{block.get('name', '')} {json.dumps(block.get('input', {}))[:200]}")
    if event.get("type") == "result":
        parts.append(str(event.get("result", "")))
    return "\n".join(parts)


@register_backend
class ClaudeBackend(ExecutionBackend):
    name = "claude"

    def command(self) -> list[str]:
        cmd = ["claude", "-p", "--dangerously-skip-permissions", "--output-format", "stream-json", "--verbose"]
        if self.model:
            cmd += ["--model", self.model]
        return cmd

    def run(self, request: AgentRequest) -> AgentResult:
        if not os.environ.get("ANTHROPIC_API_KEY"):
            raise BackendError("Running Claude Code in automation requires ANTHROPIC_API_KEY.")

        started = time.monotonic()
        last_phase = ["Starting"]
        downstream = request.on_output

        def on_output(line: str) -> None:
            phase = detect_phase(stream_text(line))
            if phase and phase != last_phase[0]:
                last_phase[0] = phase
                request.on_progress(f"{phase}... ({time.monotonic() - started:.0f}s)")
            if downstream is not None:
                downstream(line)

        logger.info(f"[BACKEND] claude starting in {request.workspace_path}")
        outcome = self._execute(
            self.command(),
            _with_output(request, on_output),
            stdin_text=request.prompt,
            env={"CLAUDE_CODE_NON_INTERACTIVE": "1"},
        )
        return self._result(outcome)


def _with_output(request: AgentRequest, on_output) -> AgentRequest:
    return AgentRequest(
        workspace_path=request.workspace_path,
        prompt=request.prompt,
        timeout_s=request.timeout_s,
        on_progress=request.on_progress,
        on_output=on_output,
        on_tick=request.on_tick,
        should_stop=request.should_stop,
    )
