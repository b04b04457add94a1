"""
TICKETLOOM Workspace Isolation

Each Run gets its own 'git worktree' on a fresh ticketloom/<ticket> branch,
so concurrent Runs never see each other's uncommitted state and the main
working copy is never touched.

Operations on the main repository (worktree add/remove, branch deletion)
are serialized through a process-wide lock; operations inside a worktree
run freely.
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from pathlib import Path

from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

_GIT_LOCK = threading.Lock()

# Untracked files larger than this are represented by size only in live diffs
_UNTRACKED_DIFF_LIMIT = 256 * 1024


class WorkspaceError(Exception):
    pass


class Workspace:
    """
    Manages an isolated git worktree for a single ticket.
    """

    def __init__(
        self,
        repo_path: Path,
        ticket_id: str,
        worktree_base: str = ".ticketloom/worktrees",
        timeout: float = 60,
    ):
        self.repo_path = repo_path.resolve()
        self.ticket_id = ticket_id
        self.branch_name = f"ticketloom/{ticket_id}"
        self.worktree_path = self.repo_path / worktree_base / ticket_id
        self.timeout = timeout
        self._created = False

    @property
    def path(self) -> Path:
        return self.worktree_path

    @property
    def created(self) -> bool:
        return self._created

    def detect_base_branch(self) -> str:
        """origin/HEAD when the remote advertises one, otherwise the current local branch."""
        self._git("fetch", "--quiet", "origin", check=False)
        ref = self._git("symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD",
                        check=False, capture=True).strip()
        if ref:
            return ref
        current = self._git("rev-parse", "--abbrev-ref", "HEAD", capture=True).strip()
        return current or "main"

    def create(self, base_branch: str | None = None) -> Path:
        """
        Creates the sandbox on a fresh branch.
        Stale state from a crashed previous run is reset first.
        """
        start_point = base_branch or self.detect_base_branch()

        with _GIT_LOCK:
            if self.worktree_path.exists() or self._branch_exists(self.branch_name):
                logger.warning(f"[WORKSPACE] Found stale state for {self.ticket_id}. Resetting...")
                self._remove()

            self.worktree_path.parent.mkdir(parents=True, exist_ok=True)
            # -B creates or resets the branch to the start point
            self._git("worktree", "add", "-B", self.branch_name, str(self.worktree_path), start_point)

        self._created = True
        logger.info(f"[WORKSPACE] Worktree created: {self.worktree_path} (from {start_point})")
        return self.worktree_path

    def run_setup(self, command: str, timeout: float | None = None) -> None:
        """Run the project's setup command (dependency install etc.) inside the worktree."""
        try:
            result = subprocess.run(
                command, shell=True, cwd=self.worktree_path,
                capture_output=True, text=True, timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"Setup command timed out after {e.timeout}s: {command}") from e
        if result.returncode != 0:
            raise WorkspaceError(f"Setup command failed: {command}\n{result.stderr[-2000:]}")
        logger.info(f"[WORKSPACE] Setup complete: {command}")

    def status_porcelain(self) -> str:
        return self._worktree_git(
            "-c", "core.quotePath=false", "status", "--porcelain", "--untracked-files=all",
            capture=True,
        )

    def diff_head(self) -> str:
        """
        Read-only view of everything changed since HEAD, untracked files included.
        Safe to call while the agent is still working.
        """
        diff = self._worktree_git("diff", "HEAD", capture=True, check=False)
        untracked = self._worktree_git(
            "ls-files", "--others", "--exclude-standard", "-z", capture=True, check=False,
        )
        sections = [diff] if diff else []
        for rel in filter(None, untracked.split("\0")):
            sections.append(self._untracked_section(rel))
        return "".join(sections)

    def _untracked_section(self, rel: str) -> str:
        header = f"diff --git a/{rel} b/{rel}\nnew file\n"
        path = self.worktree_path / rel
        try:
            size = path.stat().st_size
            if size > _UNTRACKED_DIFF_LIMIT:
                return header + f"+<{size} bytes>\n"
            text = path.read_text(errors="replace")
        except OSError as e:
            return header + f"+<unreadable: {e}>\n"
        return header + "".join(f"+{line}\n" for line in text.splitlines())

    def diff_staged(self) -> str:
        """Full diff of the staged change set against HEAD."""
        self._worktree_git("add", "-A")
        return self._worktree_git("diff", "--cached", "HEAD", capture=True)

    def commit(self, message: str, add_all: bool = True) -> str | None:
        """Stage and commit changes inside the worktree."""
        if add_all:
            self._worktree_git("add", "-A")

        result = self._worktree_git("status", "--porcelain", capture=True)
        if not result.strip():
            logger.info("[WORKSPACE] Nothing to commit.")
            return None

        self._worktree_git("commit", "-m", message)
        sha = self._worktree_git("rev-parse", "HEAD", capture=True).strip()
        logger.info(f"[WORKSPACE] Committed {sha[:10]} on {self.branch_name}")
        return sha

    @retry(
        retry=retry_if_exception_type(WorkspaceError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    def push(self, force: bool = False) -> None:
        """Push the ticket branch to origin, setting upstream."""
        cmd = ["push", "-u", "origin", self.branch_name]
        if force:
            cmd.insert(1, "--force")

        self._worktree_git(*cmd)
        logger.info(f"[WORKSPACE] Pushed (force={force}): {self.branch_name}")

    def cleanup(self) -> None:
        """Remove the worktree and its local branch. Never raises for a missing worktree."""
        with _GIT_LOCK:
            self._remove()
        self._created = False
        logger.info(f"[WORKSPACE] Cleanup complete: {self.ticket_id}")

    def _remove(self) -> None:
        self._git("worktree", "remove", "--force", str(self.worktree_path), check=False)
        if self.worktree_path.exists():
            shutil.rmtree(self.worktree_path, ignore_errors=True)
        self._git("worktree", "prune", check=False)
        self._git("branch", "-D", self.branch_name, check=False)

    def _branch_exists(self, name: str) -> bool:
        res = self._git("branch", "--list", name, capture=True)
        return bool(res.strip())

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check, capture=capture,
                             timeout=self.timeout)

    def _worktree_git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.worktree_path, check=check, capture=capture,
                             timeout=self.timeout)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, check: bool = True, capture: bool = False,
                 timeout: float = 60) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"Git timed out after {timeout}s: {' '.join(cmd)}") from e
        if check and result.returncode != 0:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
