from ticketloom.config_loader import SpindleConfig
from ticketloom.spindle import (
    SpindleMonitor,
    compute_similarity,
    detect_command_failure,
    detect_qa_ping_pong,
    estimate_tokens,
    failure_signature,
    format_verdict,
)


def _diff(n: int) -> str:
    return f"diff --git a/src/a.ts b/src/a.ts\n+export const a = {n};\n"


# ---------------------------------------------------------------------------
# Pure detectors
# ---------------------------------------------------------------------------

def test_command_failure_threshold():
    assert detect_command_failure(["a", "b", "a"], 2) == "a"
    assert detect_command_failure(["a", "b", "c"], 2) is None
    assert detect_command_failure(["a", "a"], 3) is None


def test_qa_ping_pong_requires_strict_alternation():
    assert detect_qa_ping_pong(["a", "b", "a", "b"], 2) is not None
    assert detect_qa_ping_pong(["x", "a", "b", "a", "b"], 2) is not None
    assert detect_qa_ping_pong(["a", "b", "a", "a"], 2) is None
    assert detect_qa_ping_pong(["a", "a", "a", "a"], 2) is None
    assert detect_qa_ping_pong(["a", "b", "a"], 2) is None
    assert detect_qa_ping_pong(["a", "b", "c", "b"], 2) is None


def test_failure_signature_uses_error_prefix():
    base = "E" * 200
    assert failure_signature("npm test", base + "tail one") == failure_signature("npm test", base + "tail two")
    assert failure_signature("npm test", "boom") != failure_signature("npm run lint", "boom")
    assert len(failure_signature("cmd", "err")) == 12


def test_similarity_and_tokens():
    assert compute_similarity("the quick fox", "the quick fox") == 1.0
    assert compute_similarity("alpha beta", "gamma delta") == 0.0
    assert estimate_tokens("abcde") == 2


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

def test_repeated_failure_fires_at_fifth_iteration_and_latches():
    monitor = SpindleMonitor(SpindleConfig(max_command_failures=5, max_similar_outputs=10, max_stall_iterations=20))

    verdicts = []
    for i in range(1, 6):
        monitor.record_command_failure("npm test", "FAIL src/a.test.ts")
        verdicts.append(monitor.observe(f"iteration {i} attempt {i * 7}", _diff(i)))

    assert verdicts[:4] == [None] * 4
    verdict = verdicts[4]
    assert verdict.trigger == "command_failure"
    assert verdict.iteration == 5
    assert verdict.should_block
    assert not verdict.should_abort

    monitor.record_command_failure("npm run build", "something else")
    assert monitor.observe("iteration 6", _diff(6)) is verdict
    assert monitor.check() is verdict


def test_signature_window_is_bounded():
    monitor = SpindleMonitor()
    for i in range(25):
        monitor.record_command_failure(f"cmd {i}", "err")
    assert len(monitor.signatures) == 20
    assert monitor.signatures[0] == failure_signature("cmd 5", "err")


def test_ping_pong_blocks():
    monitor = SpindleMonitor(SpindleConfig(max_qa_ping_pong=2))
    for cmd in ("test a", "test b", "test a", "test b"):
        monitor.record_command_failure(cmd, "failed")
    verdict = monitor.check()
    assert verdict.trigger == "qa_ping_pong"
    assert verdict.should_block
    assert verdict.should_abort


def test_stalling():
    monitor = SpindleMonitor(SpindleConfig(max_stall_iterations=3, max_similar_outputs=10))
    results = [monitor.observe(f"different output number {i} {'x' * i}", _diff(1)) for i in range(4)]
    assert results[:3] == [None, None, None]
    assert results[3].trigger == "stalling"
    assert results[3].should_abort
    assert not results[3].should_block
    assert results[3].diagnostics["iterations_without_change"] == 3


def test_oscillation():
    monitor = SpindleMonitor(SpindleConfig(max_similar_outputs=10))
    assert monitor.observe("first change", _diff(1)) is None
    assert monitor.observe("second change", _diff(2)) is None
    verdict = monitor.observe("back to the first", _diff(1))
    assert verdict.trigger == "oscillation"
    assert verdict.diagnostics["oscillation_pattern"] == "A → B → A"


def test_repetition():
    monitor = SpindleMonitor()
    line = "Reading the configuration to understand the failure"
    results = [monitor.observe(line, _diff(i)) for i in range(4)]
    assert results[:3] == [None, None, None]
    assert results[3].trigger == "repetition"
    assert results[3].diagnostics["similarity_score"] == 1.0


def test_token_budget_warning_then_abort():
    monitor = SpindleMonitor(SpindleConfig(token_budget_warning=100, token_budget_abort=200, max_similar_outputs=10))
    assert monitor.observe("a" * 500, _diff(1)) is None
    warnings = monitor.pop_warnings()
    assert any("token budget" in w for w in warnings)
    assert monitor.pop_warnings() == []

    verdict = monitor.observe("b" * 500, _diff(2))
    assert verdict.trigger == "token_budget"
    assert verdict.confidence == 1.0


def test_highest_confidence_wins_and_others_are_kept():
    monitor = SpindleMonitor(SpindleConfig(max_stall_iterations=1, max_command_failures=1, max_similar_outputs=10))
    monitor.record_command_failure("npm test", "boom")
    verdict = monitor.observe("nothing changed", None)
    assert verdict.trigger == "stalling"
    assert "command_failure" in verdict.diagnostics["other_triggers"]


def test_disabled_monitor_never_fires():
    monitor = SpindleMonitor(SpindleConfig(enabled=False, max_stall_iterations=1))
    for _ in range(5):
        assert monitor.observe("same", None) is None


def test_format_verdict():
    assert format_verdict(None) == "No spindle loop detected"

    monitor = SpindleMonitor(SpindleConfig(max_stall_iterations=2, max_similar_outputs=10))
    monitor.observe("one", None)
    verdict = monitor.observe("two", None)
    text = format_verdict(verdict)
    assert text.splitlines()[0] == "Spindle loop detected: stalling"
    assert "Confidence: 90%" in text
    assert "Iterations without change: 2" in text
    assert any("max_stall_iterations (current: 2)" in r for r in verdict.recommendations)
