"""
TICKETLOOM persistence store (file-backed).

  <ticket_dir>/<ticket_id>.yaml          one Ticket per file
  <run_dir>/<run_id>/run.json            RunRecord, closed exactly once
  <run_dir>/<run_id>/steps.jsonl         append-only StepRecords
  <run_dir>/history.jsonl                one line per closed run

Writes are serialized per ticket/run key; different keys never contend.
"""

from __future__ import annotations

import json
import re
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from ticketloom.state import RunRecord, RunTicketResult, StepRecord, Ticket, TicketStatus, utc_now

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StoreError(Exception):
    pass


class RunClosedError(StoreError):
    pass


class RunStore:
    def __init__(self, ticket_dir: Path, run_dir: Path):
        self.ticket_dir = ticket_dir
        self.run_dir = run_dir
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    @classmethod
    def for_repo(cls, repo_path: Path, ticket_dir: str, run_dir: str) -> "RunStore":
        return cls(repo_path / ticket_dir, repo_path / run_dir)

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[key]

    @staticmethod
    def _key(value: str) -> str:
        if not _SAFE_KEY.match(value or "") or ".." in value:
            raise StoreError(f"Invalid identifier: {value!r}")
        return value

    # -----------------------------------------------------------------------
    # Tickets
    # -----------------------------------------------------------------------

    def _ticket_path(self, ticket_id: str) -> Path:
        return self.ticket_dir / f"{self._key(ticket_id)}.yaml"

    def save_ticket(self, ticket: Ticket) -> Ticket:
        with self._lock(f"ticket:{ticket.id}"):
            self._write_ticket(ticket)
        return ticket

    def _write_ticket(self, ticket: Ticket) -> None:
        path = self._ticket_path(ticket.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".yaml.tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(ticket.model_dump(), f, sort_keys=False)
        tmp.replace(path)

    def get_ticket(self, ticket_id: str) -> Ticket:
        path = self._ticket_path(ticket_id)
        if not path.exists():
            raise StoreError(f"Ticket not found: {ticket_id}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data.setdefault("id", ticket_id)
        try:
            return Ticket(**data)
        except ValidationError as e:
            raise StoreError(f"Invalid ticket file {path}: {e}") from e

    def list_tickets(self) -> list[Ticket]:
        if not self.ticket_dir.exists():
            return []
        return [self.get_ticket(p.stem) for p in sorted(self.ticket_dir.glob("*.yaml"))]

    def update_ticket(
        self,
        ticket_id: str,
        *,
        allowed_paths: list[str] | None = None,
        retry_count: int | None = None,
        status: TicketStatus | None = None,
    ) -> Ticket:
        with self._lock(f"ticket:{ticket_id}"):
            ticket = self.get_ticket(ticket_id)
            changes: dict[str, Any] = {"updated_at": utc_now()}
            if allowed_paths is not None:
                changes["allowed_paths"] = list(allowed_paths)
            if retry_count is not None:
                changes["retry_count"] = retry_count
            if status is not None:
                changes["status"] = status
            ticket = ticket.model_copy(update=changes)
            self._write_ticket(ticket)
        logger.debug(f"[STORE] Ticket {ticket_id} updated: {sorted(changes)}")
        return ticket

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------

    def _run_path(self, run_id: str) -> Path:
        return self.run_dir / self._key(run_id)

    def create_run(self, ticket_id: str, run_id: str) -> RunRecord:
        record = RunRecord(id=run_id, ticket_id=ticket_id)
        with self._lock(f"run:{run_id}"):
            run_path = self._run_path(run_id)
            if (run_path / "run.json").exists():
                raise StoreError(f"Run already exists: {run_id}")
            run_path.mkdir(parents=True, exist_ok=True)
            (run_path / "run.json").write_text(record.model_dump_json(indent=2))
        return record

    def append_step(self, record: StepRecord) -> None:
        with self._lock(f"run:{record.run_id}"):
            run_path = self._run_path(record.run_id)
            if self._load_run(record.run_id).closed:
                raise RunClosedError(f"Run {record.run_id} is closed; cannot record step {record.step}")
            with open(run_path / "steps.jsonl", "a", encoding="utf-8") as f:
                f.write(record.model_dump_json() + "\n")

    def get_steps(self, run_id: str) -> list[StepRecord]:
        path = self._run_path(run_id) / "steps.jsonl"
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return [StepRecord.model_validate_json(line) for line in f if line.strip()]

    def _load_run(self, run_id: str) -> RunRecord:
        path = self._run_path(run_id) / "run.json"
        if not path.exists():
            raise StoreError(f"Run not found: {run_id}")
        return RunRecord.model_validate_json(path.read_text())

    def get_run(self, run_id: str) -> RunRecord:
        return self._load_run(run_id)

    def close_run(self, run_id: str, result: RunTicketResult) -> RunRecord:
        """Write the terminal result. A run can be closed exactly once."""
        with self._lock(f"run:{run_id}"):
            record = self._load_run(run_id)
            if record.closed:
                raise RunClosedError(f"Run {run_id} already has a terminal result")
            record = record.model_copy(update={"finished_at": utc_now(), "result": result})
            (self._run_path(run_id) / "run.json").write_text(record.model_dump_json(indent=2))

        with self._lock("history"):
            self.run_dir.mkdir(parents=True, exist_ok=True)
            with open(self.run_dir / "history.jsonl", "a", encoding="utf-8") as f:
                f.write(json.dumps(self._history_entry(record)) + "\n")
        return record

    @staticmethod
    def _history_entry(record: RunRecord) -> dict[str, Any]:
        result = record.result
        return {
            "timestamp": record.finished_at,
            "run_id": record.id,
            "ticket_id": record.ticket_id,
            "success": result.success,
            "failure_reason": result.failure_reason,
            "completion_outcome": result.completion_outcome,
            "duration_ms": result.duration_ms,
            "pr_url": result.pr_url,
            "error": (result.error or "")[:200] or None,
        }

    def get_recent(self, count: int = 10) -> list[dict[str, Any]]:
        path = self.run_dir / "history.jsonl"
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            lines = [line for line in f if line.strip()]
        return [json.loads(line) for line in lines[-count:]]
