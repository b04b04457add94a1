import subprocess
from pathlib import Path

import pytest

from ticketloom.backends import AgentRequest, AgentResult, ExecutionBackend


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout


class FakeBackend(ExecutionBackend):
    """Scripted agent: each call runs the next action against the workspace."""
    name = "fake"

    def __init__(self, *actions):
        super().__init__()
        self.actions = list(actions)
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        action = self.actions[min(len(self.requests), len(self.actions)) - 1] if self.actions else None
        result = action(request) if action else None
        return result or AgentResult(success=True, stdout="done", exit_code=0)


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-b", "main")
    git(path, "config", "user.email", "dev@example.com")
    git(path, "config", "user.name", "Dev")
    git(path, "config", "commit.gpgsign", "false")
    (path / "src").mkdir()
    (path / "src" / "a.ts").write_text("export const a = 1;\n")
    (path / "README.md").write_text("# demo\n")
    (path / ".gitignore").write_text(".ticketloom/\n")
    git(path, "add", "-A")
    git(path, "commit", "-m", "initial")
    return path


@pytest.fixture
def origin(tmp_path, repo):
    bare = tmp_path / "origin.git"
    git(tmp_path, "init", "--bare", "-b", "main", str(bare))
    git(repo, "remote", "add", "origin", str(bare))
    git(repo, "push", "-u", "origin", "main")
    return bare
