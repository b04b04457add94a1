"""
Artifact writer: structured JSON documents for postmortems.

Layout: <base>/<type>/<run_id>-<epoch_ms>.json
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel

ARTIFACT_TYPES = ("executions", "diffs", "violations", "spindle", "qa", "runs")


class ArtifactError(Exception):
    pass


def _check_segment(value: str, label: str) -> str:
    if not value or any(bad in value for bad in ("/", "\\", "\0", "..")):
        raise ArtifactError(f"Unsafe artifact {label}: {value!r}")
    return value


def _default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class ArtifactWriter:
    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def write(self, artifact_type: str, artifact_id: str, data: Any) -> str:
        """Write one artifact and return its path."""
        _check_segment(artifact_type, "type")
        _check_segment(artifact_id, "id")
        if artifact_type not in ARTIFACT_TYPES:
            raise ArtifactError(f"Unknown artifact type: {artifact_type}")

        target_dir = self.base_dir / artifact_type
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{artifact_id}-{int(time.time() * 1000)}.json"
        path.write_text(json.dumps(data, indent=2, default=_default))
        logger.debug(f"[ARTIFACT] {artifact_type} -> {path}")
        return str(path)

    def list(self, artifact_type: str, artifact_id: str | None = None) -> list[Path]:
        _check_segment(artifact_type, "type")
        target_dir = self.base_dir / artifact_type
        if not target_dir.exists():
            return []
        prefix = f"{_check_segment(artifact_id, 'id')}-" if artifact_id else ""
        return sorted(p for p in target_dir.glob(f"{prefix}*.json"))

    @staticmethod
    def read(path: str | Path) -> Any:
        return json.loads(Path(path).read_text())
