"""
TICKETLOOM Push-Safety Guard

Every push and PR goes through assert_push_safe(), which compares the
workspace's origin against the remote recorded by `ticketloom init`.
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

from loguru import logger

_SSH_RE = re.compile(r"^[\w.-]+@([^:/]+):(.+)$")
_URL_RE = re.compile(r"^(?:https?|ssh|git)://(?:[^@/]+@)?([^/]+)(/.*)?$")


class PushSafetyError(Exception):
    pass


def normalize_remote_url(url: str) -> str:
    """
    Reduce a remote URL to 'host/org/repo' so SSH and HTTPS forms compare equal.

    git@github.com:Org/Repo.git and https://github.com/org/repo both become
    github.com/org/repo.
    """
    url = url.strip()
    ssh = _SSH_RE.match(url)
    if ssh:
        canonical = f"{ssh.group(1)}/{ssh.group(2)}"
    else:
        web = _URL_RE.match(url)
        if web:
            host = web.group(1).split(":")[0]
            canonical = f"{host}{web.group(2) or ''}"
        else:
            canonical = url
    canonical = canonical.rstrip("/")
    if canonical.endswith(".git"):
        canonical = canonical[: -len(".git")]
    canonical = re.sub(r"/+", "/", canonical.rstrip("/"))
    return canonical.lower()


def get_origin_url(repo_path: Path, timeout: float = 60) -> str | None:
    result = subprocess.run(
        ["git", "remote", "get-url", "origin"],
        cwd=repo_path,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def assert_push_safe(workspace_path: Path, allowed_remote: str | None, timeout: float = 60) -> None:
    """Raise PushSafetyError unless origin matches allowed_remote. Unconfigured projects only warn."""
    if not allowed_remote:
        logger.warning(
            "[PUSH] No allowed_remote configured; skipping push-safety check. "
            "Run `ticketloom init` to record one."
        )
        return

    origin = get_origin_url(workspace_path, timeout=timeout)
    if origin is None:
        raise PushSafetyError(
            f'Push blocked: no origin remote configured (allowed remote "{allowed_remote}").'
        )

    current = normalize_remote_url(origin)
    allowed = normalize_remote_url(allowed_remote)
    if current != allowed:
        raise PushSafetyError(
            f'Push blocked: origin "{origin}" (normalized: {current}) does not match '
            f'allowed remote "{allowed_remote}" (normalized: {allowed}).'
        )
    logger.debug(f"[PUSH] Origin verified: {current}")
