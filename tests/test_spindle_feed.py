import json

from ticketloom.config_loader import SpindleConfig
from ticketloom.spindle import SpindleMonitor
from ticketloom.spindle.feed import AgentOutputFeed


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _feed(config=None, diffs=None, clock=None, progress=None):
    diffs = diffs if diffs is not None else []
    monitor = SpindleMonitor(config or SpindleConfig(check_interval_s=10))
    return AgentOutputFeed(
        monitor,
        diff_provider=lambda: diffs[-1] if diffs else "",
        on_progress=(progress.append if progress is not None else None),
        clock=clock or FakeClock(),
    )


def test_output_is_batched_per_interval():
    clock = FakeClock()
    feed = _feed(clock=clock)

    feed.on_output("reading files\n")
    feed.on_output("still reading\n")
    assert feed.monitor.iteration == 0

    clock.now = 10
    feed.on_tick()
    assert feed.monitor.iteration == 1
    assert feed.monitor.estimated_tokens > 0


def test_silent_windows_raise_stop_flag():
    clock = FakeClock()
    feed = _feed(config=SpindleConfig(check_interval_s=1, max_stall_iterations=2, max_similar_outputs=10), clock=clock)

    for _ in range(2):
        clock.now += 1
        feed.on_tick()

    assert feed.should_stop()
    assert feed.verdict.trigger == "stalling"
    assert feed.verdict.diagnostics["iterations_without_change"] == 2


def test_busy_agent_with_unchanged_diff_keeps_running():
    clock = FakeClock()
    diffs = ["diff --git a/src/a.ts b/src/a.ts\n+export const a = 2;\n"]
    feed = _feed(config=SpindleConfig(), diffs=diffs, clock=clock)

    for i in range(7):
        feed.on_output(f"test batch {i} passed\n")
        clock.now += 61
        feed.on_tick()

    assert feed.monitor.iteration == 7
    assert feed.verdict is None
    assert not feed.should_stop()


def test_unchanged_workspace_stalls_on_wall_clock():
    clock = FakeClock()
    diffs = ["diff --git a/src/a.ts b/src/a.ts\n+export const a = 2;\n"]
    feed = _feed(config=SpindleConfig(check_interval_s=60, max_stall_minutes=5), diffs=diffs, clock=clock)

    verdicts = []
    for i in range(6):
        feed.on_output(f"test batch {i} passed\n")
        clock.now += 61
        feed.on_tick()
        verdicts.append(feed.verdict)

    assert verdicts[:5] == [None] * 5
    assert verdicts[5].trigger == "stalling"
    assert verdicts[5].diagnostics["minutes_since_change"] == 5
    assert feed.should_stop()


def test_final_flush_never_reports_stall():
    clock = FakeClock()
    feed = _feed(config=SpindleConfig(max_stall_iterations=1, max_stall_minutes=1), clock=clock)

    clock.now = 600
    assert feed.finish() is None
    assert feed.monitor.iteration == 1
    assert not feed.should_stop()


def test_claude_tool_errors_are_recorded():
    feed = _feed()
    feed.on_output(json.dumps({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "npm test"}},
    ]}}))
    feed.on_output(json.dumps({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "t1", "is_error": True, "content": [{"type": "text", "text": "FAIL"}]},
    ]}}))
    feed.on_output(json.dumps({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "t1", "is_error": False, "content": "ok"},
    ]}}))

    assert len(feed.monitor.signatures) == 1


def test_codex_failed_commands_are_recorded():
    feed = _feed()
    feed.on_output(json.dumps({"type": "item.completed", "item": {
        "type": "command_execution", "command": "pytest", "exit_code": 1, "aggregated_output": "1 failed",
    }}))
    feed.on_output(json.dumps({"type": "item.completed", "item": {
        "type": "command_execution", "command": "ls", "exit_code": 0,
    }}))
    feed.on_output("not json at all")

    assert len(feed.monitor.signatures) == 1


def test_finish_flushes_pending_output():
    feed = _feed()
    feed.on_output("final words\n")
    assert feed.finish() is None
    assert feed.monitor.iteration == 1
    assert feed.finish() is None
    assert feed.monitor.iteration == 1


def test_diff_errors_do_not_break_the_feed():
    monitor = SpindleMonitor(SpindleConfig(check_interval_s=0))

    def broken():
        raise RuntimeError("index.lock exists")

    feed = AgentOutputFeed(monitor, diff_provider=broken)
    assert feed.check_now() is None
    assert monitor.iteration == 1


def test_warnings_surface_as_progress():
    progress = []
    feed = _feed(
        config=SpindleConfig(check_interval_s=0, token_budget_warning=10, token_budget_abort=10_000),
        progress=progress,
    )
    feed.on_output("x" * 100)
    assert any(m.startswith("⚠ Approaching token budget") for m in progress)
