import threading

import pytest

from ticketloom.state import RunTicketResult, StepRecord, Ticket
from ticketloom.store import RunClosedError, RunStore, StoreError


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / "tickets", tmp_path / "runs")


def test_ticket_roundtrip_and_update(store):
    store.save_ticket(Ticket(id="T-1", title="Fix it", allowed_paths=["src/**"]))
    updated = store.update_ticket("T-1", allowed_paths=["src/**", "lib/x.ts"], retry_count=1, status="ready")

    loaded = store.get_ticket("T-1")
    assert loaded == updated
    assert loaded.allowed_paths == ["src/**", "lib/x.ts"]
    assert loaded.retry_count == 1
    assert [t.id for t in store.list_tickets()] == ["T-1"]


def test_missing_ticket(store):
    with pytest.raises(StoreError):
        store.get_ticket("nope")


@pytest.mark.parametrize("bad", ["../escape", "a/b", "", ".hidden"])
def test_rejects_unsafe_ids(store, bad):
    with pytest.raises(StoreError):
        store.get_ticket(bad)


def test_steps_are_append_only_and_run_closes_once(store):
    store.create_run("T-1", "run_1")
    store.append_step(StepRecord(run_id="run_1", step="worktree", status="started"))
    store.append_step(StepRecord(run_id="run_1", step="worktree", status="success"))

    result = RunTicketResult(run_id="run_1", ticket_id="T-1", success=True, completion_outcome="no_changes_needed")
    record = store.close_run("run_1", result)
    assert record.closed
    assert [s.status for s in store.get_steps("run_1")] == ["started", "success"]

    with pytest.raises(RunClosedError):
        store.close_run("run_1", result)
    with pytest.raises(RunClosedError):
        store.append_step(StepRecord(run_id="run_1", step="cleanup", status="success"))

    [entry] = store.get_recent()
    assert entry["run_id"] == "run_1"
    assert entry["completion_outcome"] == "no_changes_needed"


def test_duplicate_run(store):
    store.create_run("T-1", "run_1")
    with pytest.raises(StoreError):
        store.create_run("T-1", "run_1")


def test_concurrent_step_writes(store):
    store.create_run("T-1", "run_a")
    store.create_run("T-2", "run_b")

    def writer(run_id):
        for _ in range(50):
            store.append_step(StepRecord(run_id=run_id, step="agent", status="started"))

    threads = [threading.Thread(target=writer, args=(r,)) for r in ("run_a", "run_b", "run_a")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.get_steps("run_a")) == 100
    assert len(store.get_steps("run_b")) == 50
