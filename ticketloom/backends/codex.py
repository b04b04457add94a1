"""OpenAI Codex CLI backend (`codex exec --json`)."""

from __future__ import annotations

import tempfile
from pathlib import Path

from loguru import logger

from ticketloom.backends import AgentRequest, AgentResult, ExecutionBackend, register_backend

DEFAULT_MODEL = "gpt-5.2-codex"


@register_backend
class CodexBackend(ExecutionBackend):
    name = "codex"

    def command(self, workspace_path: Path, output_file: Path) -> list[str]:
        return [
            "codex", "exec",
            "--json",
            "--output-last-message", str(output_file),
            "--sandbox", "workspace-write",
            "--model", self.model or DEFAULT_MODEL,
            "--cd", str(workspace_path),
            "-",
        ]

    def run(self, request: AgentRequest) -> AgentResult:
        with tempfile.TemporaryDirectory(prefix="ticketloom-codex-") as tmp:
            output_file = Path(tmp) / "last-message.txt"
            logger.info(f"[BACKEND] codex starting in {request.workspace_path}")
            outcome = self._execute(
                self.command(request.workspace_path, output_file),
                request,
                stdin_text=request.prompt,
            )
            last_message = output_file.read_text() if output_file.exists() else None

        result = self._result(outcome, stdout=last_message or outcome.stdout)
        if last_message is None and result.success:
            logger.warning("[BACKEND] codex finished without writing a last message")
        return result
