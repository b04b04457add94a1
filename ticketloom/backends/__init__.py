"""
TICKETLOOM Execution Backends

A backend knows how to invoke one external coding agent CLI inside a
workspace. The pipeline only sees ExecutionBackend.run(); concrete
backends are looked up by provider name.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from pydantic import BaseModel

from ticketloom.backends.process import ProcessOutcome, run_process


class BackendError(Exception):
    pass


@dataclass
class AgentRequest:
    workspace_path: Path
    prompt: str
    timeout_s: float | None = None
    on_progress: Callable[[str], None] = field(default=lambda msg: None)
    on_output: Callable[[str], None] | None = None
    on_tick: Callable[[], None] | None = None
    should_stop: Callable[[], bool] | None = None


class AgentResult(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0
    error: str | None = None


class ExecutionBackend(ABC):
    name: str = ""

    def __init__(self, model: str | None = None, kill_grace_s: float = 5):
        self.model = model
        self.kill_grace_s = kill_grace_s

    @abstractmethod
    def run(self, request: AgentRequest) -> AgentResult:
        ...

    def _execute(
        self,
        cmd: list[str],
        request: AgentRequest,
        stdin_text: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessOutcome:
        try:
            return run_process(
                cmd,
                request.workspace_path,
                stdin_text=stdin_text,
                env={**os.environ, **(env or {})},
                timeout_s=request.timeout_s,
                kill_grace_s=self.kill_grace_s,
                on_output=request.on_output,
                on_tick=request.on_tick,
                should_stop=request.should_stop,
            )
        except FileNotFoundError as e:
            raise BackendError(f"{self.name} CLI not found: {cmd[0]}") from e

    @staticmethod
    def _result(outcome: ProcessOutcome, stdout: str | None = None) -> AgentResult:
        error = None
        if outcome.timed_out:
            error = f"Agent timed out after {outcome.duration_ms / 1000:.0f}s"
        elif outcome.cancelled:
            error = "Agent cancelled"
        elif outcome.exit_code != 0:
            tail = (outcome.stderr or outcome.stdout).strip()[-500:]
            error = f"Agent exited with code {outcome.exit_code}" + (f": {tail}" if tail else "")
        return AgentResult(
            success=error is None,
            stdout=outcome.stdout if stdout is None else stdout,
            stderr=outcome.stderr,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
            duration_ms=outcome.duration_ms,
            error=error,
        )


_REGISTRY: dict[str, type[ExecutionBackend]] = {}


def register_backend(cls: type[ExecutionBackend]) -> type[ExecutionBackend]:
    _REGISTRY[cls.name] = cls
    return cls


def available_backends() -> list[str]:
    return sorted(_REGISTRY)


def get_backend(name: str, **kwargs) -> ExecutionBackend:
    try:
        cls = _REGISTRY[name]
    except KeyError:
        raise BackendError(
            f"Unknown execution backend '{name}'. Available: {', '.join(available_backends())}"
        ) from None
    return cls(**kwargs)


# Concrete backends register themselves on import
from ticketloom.backends import claude, codex  # noqa: E402,F401
