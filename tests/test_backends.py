from pathlib import Path

import pytest

from ticketloom.backends import AgentRequest, BackendError, ExecutionBackend, available_backends, get_backend
from ticketloom.backends.claude import detect_phase, stream_text
from ticketloom.backends.process import ProcessOutcome


def test_registry():
    assert {"claude", "codex"} <= set(available_backends())
    backend = get_backend("codex", model="o4-mini")
    assert backend.name == "codex"
    assert "o4-mini" in backend.command(Path("/ws"), Path("/tmp/out.txt"))


def test_unknown_backend():
    with pytest.raises(BackendError, match="Unknown execution backend"):
        get_backend("nope")


def test_claude_requires_api_key(monkeypatch, tmp_path):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(BackendError, match="ANTHROPIC_API_KEY"):
        get_backend("claude").run(AgentRequest(workspace_path=tmp_path, prompt="hi"))


def test_result_mapping():
    timed_out = ExecutionBackend._result(ProcessOutcome(None, "", "", timed_out=True, duration_ms=1500))
    assert not timed_out.success
    assert timed_out.timed_out
    assert timed_out.error == "Agent timed out after 2s"

    failed = ExecutionBackend._result(ProcessOutcome(2, "", "boom\n"))
    assert failed.error == "Agent exited with code 2: boom"

    ok = ExecutionBackend._result(ProcessOutcome(0, "done", ""))
    assert ok.success and ok.error is None


def test_stream_json_helpers():
    line = '{"type": "assistant", "message": {"content": [{"type": "text", "text": "Reading src/a.ts"}]}}'
    assert stream_text(line) == "Reading src/a.ts"
    assert detect_phase(stream_text(line)) == "Reading files"
    assert stream_text("plain") == "plain"
