import yaml
from typer.testing import CliRunner

from conftest import git
from ticketloom import __version__
from ticketloom.cli import app
from ticketloom.store import RunStore

runner = CliRunner()


def _store(repo):
    return RunStore.for_repo(repo, ".ticketloom/tickets", ".ticketloom/runs")


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"TICKETLOOM v{__version__}" in result.stdout


def test_init_records_allowed_remote(repo):
    git(repo, "remote", "add", "origin", "git@github.com:Org/Repo.git")
    (repo / "pyproject.toml").write_text("[project]\nname = 'demo'\n")

    result = runner.invoke(app, ["init", str(repo)])

    assert result.exit_code == 0, result.stdout
    config = yaml.safe_load((repo / ".ticketloom" / "config.yaml").read_text())
    assert config["allowed_remote"] == "git@github.com:Org/Repo.git"
    assert config["qa"]["commands"] == [{"name": "test", "cmd": "python -m pytest"}]
    assert ".ticketloom/worktrees/" in (repo / ".gitignore").read_text()


def test_add_and_retry(repo):
    result = runner.invoke(app, [
        "add", "T-1", "Fix the thing", "--allow", "src/**", "--forbid", "secrets/**", "--repo", str(repo),
    ])
    assert result.exit_code == 0, result.stdout
    ticket = _store(repo).get_ticket("T-1")
    assert ticket.allowed_paths == ["src/**"]
    assert ticket.forbidden_paths == ["secrets/**"]
    assert ticket.max_retries == 3

    duplicate = runner.invoke(app, ["add", "T-1", "Again", "--repo", str(repo)])
    assert duplicate.exit_code == 1

    _store(repo).update_ticket("T-1", status="failed", retry_count=3)
    result = runner.invoke(app, ["retry", "T-1", "--allow", "lib/**", "--repo", str(repo)])
    assert result.exit_code == 0, result.stdout
    ticket = _store(repo).get_ticket("T-1")
    assert ticket.status == "ready"
    assert ticket.retry_count == 0
    assert ticket.allowed_paths == ["src/**", "lib/**"]


def test_run_unknown_ticket(repo):
    result = runner.invoke(app, ["run", "missing", "--repo", str(repo)])
    assert result.exit_code == 1


def test_run_refuses_blocked_ticket(repo):
    runner.invoke(app, ["add", "T-1", "Fix", "--repo", str(repo)])
    _store(repo).update_ticket("T-1", status="blocked")
    result = runner.invoke(app, ["run", "T-1", "--repo", str(repo)])
    assert result.exit_code == 1
    assert "blocked" in result.stdout


def test_history_empty(repo):
    result = runner.invoke(app, ["history", "--repo", str(repo)])
    assert result.exit_code == 0
    assert "No history yet" in result.stdout
