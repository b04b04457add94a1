"""
Configuration loader for TICKETLOOM.
Merges defaults with per-repo .ticketloom/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigError(Exception):
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ExecutionConfig(BaseModel):
    backend: str = "claude"
    model: str | None = None


class LimitsConfig(BaseModel):
    agent_timeout_s: float = 1800
    git_timeout_s: float = 60
    qa_timeout_s: float = 600
    kill_grace_s: float = 5
    max_retries: int = 3


class SpindleConfig(BaseModel):
    """Loop-detection thresholds. Token figures are estimates (chars / 4)."""
    enabled: bool = True
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_similar_outputs: int = Field(default=3, ge=1)
    max_stall_iterations: int = Field(default=5, ge=1)
    verbosity_threshold: float = 10
    token_budget_warning: int = 100_000
    token_budget_abort: int = 140_000
    max_command_failures: int = Field(default=3, ge=1)
    max_qa_ping_pong: int = Field(default=3, ge=1)
    max_file_edits: int = Field(default=3, ge=1)
    max_stall_minutes: float = Field(default=30, ge=0)
    check_interval_s: float = 60

    @model_validator(mode="after")
    def check_budgets(self) -> "SpindleConfig":
        if self.token_budget_warning > self.token_budget_abort:
            raise ValueError("token_budget_warning must not exceed token_budget_abort")
        return self


class QaCommand(BaseModel):
    name: str
    cmd: str
    timeout_s: float | None = None


class QaConfig(BaseModel):
    commands: list[QaCommand] = Field(default_factory=list)
    disable_baseline: bool = False
    retry_with_fix: bool = True


class PullRequestConfig(BaseModel):
    create: bool = True
    draft: bool = False


class WorkspaceConfig(BaseModel):
    worktree_dir: str = ".ticketloom/worktrees"
    ticket_dir: str = ".ticketloom/tickets"
    run_dir: str = ".ticketloom/runs"
    artifact_dir: str = ".ticketloom/artifacts"
    log_dir: str = ".ticketloom/logs"


class TicketloomConfig(BaseModel):
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    spindle: SpindleConfig = Field(default_factory=SpindleConfig)
    qa: QaConfig = Field(default_factory=QaConfig)
    pull_request: PullRequestConfig = Field(default_factory=PullRequestConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    allowed_remote: str | None = None
    setup: str | None = None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_OVERRIDES = {
    "TICKETLOOM_BACKEND": ("execution", "backend"),
    "TICKETLOOM_MODEL": ("execution", "model"),
    "TICKETLOOM_ALLOWED_REMOTE": (None, "allowed_remote"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


def repo_config_path(repo_path: Path) -> Path:
    return repo_path / ".ticketloom" / "config.yaml"


def load_config(repo_path: Path | None = None) -> TicketloomConfig:
    """
    Load config by merging:
      1. Built-in defaults (ticketloom/config.yaml)
      2. Repo-level overrides (<repo>/.ticketloom/config.yaml)
      3. Environment variable overrides (TICKETLOOM_*)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if repo_path:
        repo_config = repo_config_path(repo_path)
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    for env_key, (section, field) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if not value:
            continue
        if section is None:
            base[field] = value
        else:
            base.setdefault(section, {})[field] = value

    try:
        return TicketloomConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_repo_overrides(repo_path: Path, overrides: dict[str, Any]) -> Path:
    """Merge overrides into the repo-level config file, creating it if needed."""
    path = repo_config_path(repo_path)
    current = _read_yaml(path) if path.exists() else {}
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(_deep_merge(current, overrides), f, sort_keys=False)
    return path


def validate_api_keys() -> dict[str, bool]:
    """Check which agent CLI credentials are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GITHUB_TOKEN":      bool(os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")),
    }
