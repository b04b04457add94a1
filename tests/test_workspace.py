import pytest

from conftest import git
from ticketloom.scope import parse_changed_files
from ticketloom.workspace import Workspace, WorkspaceError


def test_create_diff_commit_cleanup(repo):
    ws = Workspace(repo, "T-1")
    path = ws.create("main")

    assert path.exists()
    assert ws.created
    assert git(path, "rev-parse", "--abbrev-ref", "HEAD").strip() == "ticketloom/T-1"

    (path / "src" / "a.ts").write_text("export const a = 2;\n")
    (path / "lib").mkdir()
    (path / "lib" / "x.ts").write_text("export const x = 1;\n")

    assert sorted(parse_changed_files(ws.status_porcelain())) == ["lib/x.ts", "src/a.ts"]
    live = ws.diff_head()
    assert "+export const a = 2;" in live
    assert "diff --git a/lib/x.ts b/lib/x.ts" in live
    # the live diff never touches the index
    assert git(path, "diff", "--cached", "--name-only").strip() == ""

    sha = ws.commit("Update a")
    assert sha == git(path, "rev-parse", "HEAD").strip()
    assert ws.commit("Nothing") is None

    ws.cleanup()
    assert not path.exists()
    assert not ws.created
    assert git(repo, "branch", "--list", "ticketloom/T-1").strip() == ""


def test_stale_state_is_reset(repo):
    first = Workspace(repo, "T-1")
    first.create("main")
    (first.path / "junk.txt").write_text("left behind")

    second = Workspace(repo, "T-1")
    second.create("main")
    assert not (second.path / "junk.txt").exists()
    second.cleanup()


def test_setup_failure_raises(repo):
    ws = Workspace(repo, "T-1")
    ws.create("main")
    try:
        with pytest.raises(WorkspaceError):
            ws.run_setup("exit 4")
    finally:
        ws.cleanup()


def test_push_without_origin_fails(repo):
    ws = Workspace(repo, "T-1")
    ws.create("main")
    try:
        with pytest.raises(WorkspaceError):
            ws.push()
    finally:
        ws.cleanup()
