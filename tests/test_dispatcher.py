from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import allure
import pytest

from orgx_dispatch.dispatch.dispatcher import DispatchOptions, backoff_seconds
from orgx_dispatch.dispatch.models import JobResult, Task

pytestmark = [
    allure.epic("Codex Dispatch"),
    allure.feature("Worker Dispatcher"),
]


def _fast_options(**overrides) -> DispatchOptions:
    values = {
        "concurrency": 1,
        "max_attempts": 2,
        "poll_interval_seconds": 0.05,
        "heartbeat_seconds": 60,
        "retry_base_seconds": 0,
    }
    values.update(overrides)
    return DispatchOptions(**values)


def _read_state(dispatcher) -> dict:
    return json.loads(dispatcher.persister.path.read_text("utf-8"))


def test_backoff_is_monotonic_and_capped() -> None:
    delays = [backoff_seconds(attempt) for attempt in range(1, 12)]

    assert delays[:5] == [15, 30, 60, 120, 180]
    assert delays == sorted(delays)
    assert max(delays) == 180
    assert backoff_seconds(0) == 15


def test_three_tasks_complete_on_first_attempt(dispatcher_factory, recording_client) -> None:
    tasks = [
        Task(id="t-a", title="Alpha", status="todo", priority="low"),
        Task(id="t-b", title="Bravo", status="todo", priority="high"),
        Task(id="t-c", title="Charlie", status="in_progress"),
    ]
    dispatcher = dispatcher_factory(tasks)

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED
    assert summary.exit_code == 0
    assert (summary.completed, summary.blocked, summary.skipped) == (3, 0, 0)

    dispatched = [event["metadata"]["task_id"] for event in recording_client.events("dispatch")]
    assert dispatched == ["t-c", "t-b", "t-a"]

    state = _read_state(dispatcher)
    assert state["result"] == "completed"
    assert state["completed"] == 3
    assert state["failed"] == 0
    assert state["totalTasks"] == 3
    assert state["activeWorkers"] == {}
    assert {record["status"] for record in state["taskStates"].values()} == {"done"}

    log_text = (dispatcher.context.logs_dir / "t-a-attempt-1.log").read_text("utf-8")
    assert "echo worker task=t-a attempt=1" in log_text
    assert ":: Alpha (t-a) ====" in log_text
    assert "==== exit 0" in log_text


def test_task_failing_every_attempt_requests_decision(
    dispatcher_factory,
    recording_client,
    echo_args,
) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="Broken", status="todo")],
        codex_args=echo_args("--fail-attempts", "5", "--exit-code", "1"),
    )

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED_WITH_BLOCKERS
    assert summary.exit_code == 2
    assert summary.blocked == 1

    decision_ops = [op for op in recording_client.operations() if op["op"] == "decision.create"]
    assert len(decision_ops) == 1
    assert decision_ops[0]["blocking"] is True
    assert "Broken" in decision_ops[0]["title"]
    task_updates = [
        op["status"] for op in recording_client.operations() if op["op"] == "task.update"
    ]
    assert task_updates[-1] == "blocked"

    state = _read_state(dispatcher)
    assert state["failed"] == 1
    assert state["result"] == "completed_with_blockers"
    record = state["taskStates"]["t-1"]
    assert record["status"] == "blocked"
    assert record["attempts"] == 2
    assert record["exitCode"] == 1
    assert record["failureClass"] == "worker_failed"
    assert (dispatcher.context.logs_dir / "t-1-attempt-2.log").exists()
    assert len(recording_client.events("retry")) == 1
    assert len(recording_client.events("failed")) == 1


def test_retry_then_success(dispatcher_factory, recording_client, echo_args) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="Flaky", status="todo")],
        codex_args=echo_args("--fail-attempts", "1", "--stderr-message", "429 too many requests"),
    )

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED
    retry = recording_client.events("retry")
    assert len(retry) == 1
    assert retry[0]["metadata"]["next_attempt"] == 2
    assert retry[0]["metadata"]["failure_class"] == "backend_transient"
    assert "429 too many requests" in retry[0]["metadata"]["log_preview"]
    record = _read_state(dispatcher)["taskStates"]["t-1"]
    assert record["status"] == "done"
    assert record["attempts"] == 2
    assert "attempt=2" in (dispatcher.context.logs_dir / "t-1-attempt-2.log").read_text("utf-8")


def test_concurrency_cap_is_respected(dispatcher_factory, echo_args) -> None:
    tasks = [Task(id=f"t-{index}", title=f"Task {index}", status="todo") for index in range(4)]
    dispatcher = dispatcher_factory(
        tasks,
        codex_args=echo_args("--sleep", "0.3"),
        options=_fast_options(concurrency=2),
    )
    peak = 0
    original_apply = dispatcher._apply

    def _tracking_apply(event) -> None:
        nonlocal peak
        original_apply(event)
        peak = max(peak, len(dispatcher.state.active_workers))

    dispatcher._apply = _tracking_apply

    summary = dispatcher.run()

    assert summary.completed == 4
    assert peak == 2


def test_counters_account_for_every_task_across_retries(dispatcher_factory, echo_args) -> None:
    tasks = [
        Task(id="t-1", title="Flaky", status="todo"),
        Task(id="t-2", title="Steady", status="todo"),
    ]
    dispatcher = dispatcher_factory(tasks, codex_args=echo_args("--fail-attempts", "1"))
    snapshots = []
    original_apply = dispatcher._apply

    def _tracking_apply(event) -> None:
        original_apply(event)
        state = dispatcher.state
        snapshots.append(
            (
                type(event).__name__,
                state.completed
                + state.failed
                + len(dispatcher._pending)
                + len(dispatcher._running),
            ),
        )

    dispatcher._apply = _tracking_apply

    summary = dispatcher.run()

    assert summary.completed == 2
    assert "AttemptFinished" in {name for name, _ in snapshots}
    assert {total for _, total in snapshots} == {2}
    assert _read_state(dispatcher)["taskStates"]["t-1"]["attempts"] == 2


def test_heartbeat_fires_at_start_then_per_interval(dispatcher_factory, recording_client) -> None:
    now = [100.0]
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="One", status="todo")],
        options=_fast_options(heartbeat_seconds=30),
        clock=lambda: now[0],
    )

    dispatcher._maybe_heartbeat()
    now[0] += 29
    dispatcher._maybe_heartbeat()

    heartbeats = recording_client.events("heartbeat")
    assert len(heartbeats) == 1
    assert heartbeats[0]["message"] == "Heartbeat: 0/1 completed, 0 running, 1 queued, 0 blocked."
    assert _read_state(dispatcher)["lastHeartbeatAt"] is not None

    now[0] += 1
    dispatcher._maybe_heartbeat()

    assert len(recording_client.events("heartbeat")) == 2


def test_dry_run_spawns_nothing_and_mutates_nothing(dispatcher_factory, recording_client) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="One", status="todo"), Task(id="t-2", title="Two", status="todo")],
        codex_bin="/nonexistent/codex",
        options=_fast_options(dry_run=True),
    )

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED
    assert summary.completed == 2
    assert recording_client.activities == []
    assert recording_client.changesets == []
    assert not (dispatcher.context.logs_dir / "t-1-attempt-1.log").exists()


def test_missing_worker_binary_is_a_failed_attempt(dispatcher_factory, tmp_path: Path) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="One", status="todo")],
        codex_bin=str(tmp_path / "missing-codex"),
        codex_args=[],
        options=_fast_options(max_attempts=1),
    )

    summary = dispatcher.run()

    assert summary.exit_code == 2
    record = _read_state(dispatcher)["taskStates"]["t-1"]
    assert record["exitCode"] == 127
    assert record["failureClass"] == "launch_failed"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")
def test_attempt_timeout_terminates_hung_worker(dispatcher_factory, echo_args) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="Hung", status="todo")],
        codex_args=echo_args("--sleep", "30"),
        options=_fast_options(max_attempts=1, attempt_timeout_seconds=0.5),
    )

    summary = dispatcher.run()

    assert summary.blocked == 1
    record = _read_state(dispatcher)["taskStates"]["t-1"]
    assert record["exitCode"] == 124
    assert record["failureClass"] == "timeout"
    assert "timed_out=true" in (dispatcher.context.logs_dir / "t-1-attempt-1.log").read_text(
        "utf-8",
    )


def test_parent_rollups_are_pushed_when_they_change(dispatcher_factory, recording_client) -> None:
    queued = Task(id="t-1", title="Queued", status="todo", milestone_id="m-1", workstream_id="w-1")
    finished = Task(id="t-2", title="Done", status="done", milestone_id="m-1", workstream_id="w-1")
    dispatcher = dispatcher_factory([queued], all_tasks=[queued, finished])

    dispatcher.run()

    milestone_ops = [op for op in recording_client.operations() if op["op"] == "milestone.update"]
    assert [op["status"] for op in milestone_ops] == ["completed"]
    assert recording_client.entity_updates[-1] == ("workstream", "w-1", {"status": "done"})

    rollups = _read_state(dispatcher)["rollups"]
    assert rollups["milestones"]["m-1"]["status"] == "completed"
    assert rollups["milestones"]["m-1"]["progressPct"] == 100
    assert rollups["workstreams"]["w-1"]["status"] == "done"


def test_upstream_failures_do_not_abort_the_loop(dispatcher_factory, client_factory) -> None:
    client = client_factory(fail_changesets=True, fail_activity=True)
    queued = Task(id="t-1", title="Queued", status="todo", milestone_id="m-1")
    dispatcher = dispatcher_factory([queued], client=client)

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED
    assert dispatcher.tracker.task_status("t-1") == "todo"
    assert _read_state(dispatcher)["rollups"]["milestones"] == {}


def test_stop_request_skips_remaining_tasks(dispatcher_factory) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="One", status="todo"), Task(id="t-2", title="Two", status="todo")],
    )
    dispatcher.request_stop(reason="SIGTERM")

    summary = dispatcher.run()

    assert summary.result is JobResult.COMPLETED_WITH_BLOCKERS
    assert summary.skipped == 2
    state = _read_state(dispatcher)
    assert {record["status"] for record in state["taskStates"].values()} == {"skipped"}


def test_stop_keeps_outcome_of_already_exited_worker(dispatcher_factory) -> None:
    dispatcher = dispatcher_factory(
        [Task(id="t-1", title="One", status="todo"), Task(id="t-2", title="Two", status="todo")],
    )
    dispatcher._dispatch_available()
    deadline = time.monotonic() + 30
    while dispatcher._completions.empty() and time.monotonic() < deadline:
        time.sleep(0.05)
    dispatcher.request_stop(reason="SIGTERM")

    summary = dispatcher.run()

    assert (summary.completed, summary.skipped) == (1, 1)
    task_states = _read_state(dispatcher)["taskStates"]
    assert task_states["t-1"]["status"] == "done"
    assert task_states["t-1"]["exitCode"] == 0
    assert task_states["t-2"]["status"] == "skipped"


def test_options_reject_invalid_values() -> None:
    with pytest.raises(ValueError, match="concurrency"):
        DispatchOptions(concurrency=0).validate()
    with pytest.raises(ValueError, match="max_attempts"):
        DispatchOptions(max_attempts=0).validate()
