"""
Quality gate runner.

QA commands come from config (qa.commands). A baseline run in the fresh
workspace, before the agent touches it, records which commands already
fail; those are skipped afterwards so the agent is not blamed for them.
"""

from __future__ import annotations

import re
import subprocess
import time
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from ticketloom.config_loader import QaCommand

_TEST_COMMAND = re.compile(r"test|vitest|jest|pytest|mocha|karma")
_TEST_FILE_PATTERNS = (
    re.compile(r"(?:FAIL|❌|✗)\s+([^\s]+\.(?:test|spec)\.[jt]sx?)", re.IGNORECASE),
    re.compile(r"([a-zA-Z0-9_/.\\-]+\.(?:test|spec)\.[jt]sx?)"),
    re.compile(r"([a-zA-Z0-9_/.\\-]*test_[a-zA-Z0-9_]+\.py)"),
    re.compile(r"([a-zA-Z0-9_/.\\-]+/__tests__/[^\s:]+\.[jt]sx?)"),
)
_TAIL_CHARS = 4000


class QaCommandResult(BaseModel):
    name: str
    cmd: str
    passed: bool
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0
    output_tail: str = ""


class QaResult(BaseModel):
    passed: bool
    results: list[QaCommandResult] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    @property
    def failed(self) -> QaCommandResult | None:
        return next((r for r in self.results if not r.passed), None)


def run_qa_command(command: QaCommand, cwd: Path, timeout_s: float) -> QaCommandResult:
    started = time.monotonic()
    timeout = command.timeout_s or timeout_s
    try:
        proc = subprocess.run(
            command.cmd, shell=True, cwd=cwd,
            capture_output=True, text=True, timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        output = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return QaCommandResult(
            name=command.name, cmd=command.cmd, passed=False, timed_out=True,
            duration_ms=int((time.monotonic() - started) * 1000),
            output_tail=(output + f"\n[timed out after {timeout}s]")[-_TAIL_CHARS:],
        )
    output = (proc.stdout or "") + (proc.stderr or "")
    return QaCommandResult(
        name=command.name,
        cmd=command.cmd,
        passed=proc.returncode == 0,
        exit_code=proc.returncode,
        duration_ms=int((time.monotonic() - started) * 1000),
        output_tail=output[-_TAIL_CHARS:],
    )


def capture_baseline(commands: list[QaCommand], cwd: Path, timeout_s: float) -> set[str]:
    """Names of QA commands that already fail before any change."""
    failing = set()
    for command in commands:
        if not run_qa_command(command, cwd, timeout_s).passed:
            failing.add(command.name)
    if failing:
        logger.info(f"[QA] Pre-existing failures: {', '.join(sorted(failing))}")
    return failing


def run_qa(
    commands: list[QaCommand],
    cwd: Path,
    timeout_s: float,
    skip: set[str] | None = None,
) -> QaResult:
    """Run commands in order, stopping at the first failure."""
    skip = skip or set()
    results: list[QaCommandResult] = []
    skipped = [c.name for c in commands if c.name in skip]
    for command in commands:
        if command.name in skip:
            continue
        logger.info(f"[QA] Running {command.name}: {command.cmd}")
        result = run_qa_command(command, cwd, timeout_s)
        results.append(result)
        if not result.passed:
            logger.warning(f"[QA] {command.name} failed (exit {result.exit_code})")
            return QaResult(passed=False, results=results, skipped=skipped)
    return QaResult(passed=True, results=results, skipped=skipped)


def is_test_failure(result: QaCommandResult | None) -> bool:
    if result is None:
        return False
    return bool(_TEST_COMMAND.search(f"{result.name} {result.cmd}".lower()))


def extract_test_files(output: str) -> list[str]:
    files: dict[str, None] = {}
    for pattern in _TEST_FILE_PATTERNS:
        for match in pattern.finditer(output):
            path = match.group(1)
            files[path[2:] if path.startswith("./") else path] = None
    return list(files)
