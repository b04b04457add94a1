import pytest

from conftest import git
from ticketloom.remote import PushSafetyError, assert_push_safe, normalize_remote_url


@pytest.mark.parametrize("url", [
    "git@github.com:Org/Repo.git",
    "https://github.com/org/repo",
    "https://github.com/org/repo.git",
    "https://github.com/org/repo/",
    "ssh://git@github.com/org/repo.git",
    "https://token@github.com/Org/Repo",
])
def test_normalize_equivalent_forms(url):
    assert normalize_remote_url(url) == "github.com/org/repo"


def test_normalize_distinguishes_repos():
    assert normalize_remote_url("git@github.com:org/one.git") != normalize_remote_url("git@github.com:org/two.git")


def test_assert_safe_matching_remote(repo):
    git(repo, "remote", "add", "origin", "git@github.com:Org/Repo.git")
    assert_push_safe(repo, "https://github.com/org/repo")


def test_assert_safe_mismatch_quotes_both_values(repo):
    git(repo, "remote", "add", "origin", "git@github.com:evil/fork.git")
    with pytest.raises(PushSafetyError) as exc:
        assert_push_safe(repo, "https://github.com/org/repo")
    message = str(exc.value)
    assert "git@github.com:evil/fork.git" in message
    assert "https://github.com/org/repo" in message
    assert "github.com/evil/fork" in message


def test_assert_safe_without_origin(repo):
    with pytest.raises(PushSafetyError):
        assert_push_safe(repo, "https://github.com/org/repo")


def test_unconfigured_remote_only_warns(repo):
    git(repo, "remote", "add", "origin", "git@github.com:anyone/anything.git")
    assert_push_safe(repo, None)
