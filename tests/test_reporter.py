from __future__ import annotations

from pathlib import Path

import allure
import pytest

from orgx_dispatch.dispatch.models import FailureClass, Task, TaskStatus
from orgx_dispatch.dispatch.reporter import (
    IDEMPOTENCY_KEY_MAX_CHARS,
    Reporter,
    idempotency_key,
)
from orgx_dispatch.dispatch.rollups import RollupChange, compute_milestone_rollup
from orgx_dispatch.orgx.client import OrgxApiError

pytestmark = [
    allure.epic("Codex Dispatch"),
    allure.feature("Reporter"),
]


def _reporter(client, *, dry_run: bool = False) -> Reporter:
    return Reporter(
        client=client,
        initiative_id="init-1",
        source_client="codex",
        correlation_id="corr-1",
        plan_path=Path("/plans/plan.md"),
        plan_hash="abc123",
        job_id="job-1",
        dry_run=dry_run,
    )


def test_idempotency_key_is_deterministic_and_bounded() -> None:
    parts = ["dispatch", "job-1", "t/1 with spaces", "done", 2]

    key = idempotency_key(parts)

    assert key == idempotency_key(list(parts))
    assert key.startswith("dispatch:job-1:t-1-with-spaces:done:2:")
    assert len(key) <= IDEMPOTENCY_KEY_MAX_CHARS
    assert idempotency_key([*parts[:-1], 3]) != key


def test_idempotency_key_skips_empty_parts_and_truncates() -> None:
    long_key = idempotency_key(["dispatch", "x" * 500])

    assert len(long_key) <= IDEMPOTENCY_KEY_MAX_CHARS
    assert idempotency_key(["a", None, "", "b"]) == idempotency_key(["a", "b"])
    assert idempotency_key(["dispatch", "x" * 500]) != idempotency_key(["dispatch", "x" * 501])


def test_run_context_switches_to_run_id_after_first_response(recording_client) -> None:
    reporter = _reporter(recording_client)

    reporter.emit("first", metadata={"event": "start"})
    reporter.emit("second", metadata={"event": "heartbeat"})

    first, second = recording_client.activities
    assert first["correlation_id"] == "corr-1"
    assert first["source_client"] == "codex"
    assert "run_id" not in first
    assert second["run_id"] == "run-1"
    assert "correlation_id" not in second
    assert reporter.run_id == "run-1"
    assert second["metadata"]["plan_sha256"] == "abc123"
    assert second["metadata"]["job_id"] == "job-1"


def test_dry_run_returns_payload_without_calling_client(recording_client) -> None:
    reporter = _reporter(recording_client, dry_run=True)

    result = reporter.task_status(
        task_id="t-1",
        status=TaskStatus.IN_PROGRESS,
        attempt=1,
        reason="Dispatched",
    )

    assert result["dry_run"] is True
    assert result["payload"]["operations"][0]["op"] == "task.update"
    assert recording_client.changesets == []
    assert recording_client.activities == []


def test_task_status_uses_stable_key_per_transition(recording_client) -> None:
    reporter = _reporter(recording_client)

    reporter.task_status(task_id="t-1", status=TaskStatus.DONE, attempt=1, reason="ok")
    reporter.task_status(task_id="t-1", status=TaskStatus.DONE, attempt=1, reason="again")
    reporter.task_status(task_id="t-1", status=TaskStatus.DONE, attempt=2, reason="ok")

    keys = [changeset["idempotency_key"] for changeset in recording_client.changesets]
    assert keys[0] == keys[1]
    assert keys[0] != keys[2]


def test_task_status_propagates_upstream_errors(client_factory) -> None:
    reporter = _reporter(client_factory(fail_changesets=True))

    with pytest.raises(OrgxApiError):
        reporter.task_status(task_id="t-1", status=TaskStatus.DONE, attempt=1, reason="ok")


def test_emit_safely_swallows_upstream_errors(client_factory) -> None:
    reporter = _reporter(client_factory(fail_activity=True))

    assert reporter.emit_safely("hello", metadata={"event": "heartbeat"}) is None


def test_milestone_without_status_change_emits_activity_only(recording_client) -> None:
    change = RollupChange(
        parent_id="m-1",
        previous=compute_milestone_rollup(["done", "todo", "todo"]),
        current=compute_milestone_rollup(["done", "done", "todo"]),
    )

    response = _reporter(recording_client).milestone_status(
        change,
        milestone_name="Reliable dispatch",
        trigger_task_id="t-2",
        attempt=1,
    )

    assert response["skipped"] == "no_status_change"
    assert recording_client.changesets == []
    (activity,) = recording_client.activities
    assert activity["progress_pct"] == 67
    assert activity["metadata"]["event"] == "milestone_rollup"
    assert activity["metadata"]["status_changed"] is False


def test_milestone_status_change_applies_changeset(recording_client) -> None:
    change = RollupChange(
        parent_id="m-1",
        previous=compute_milestone_rollup(["done", "todo"]),
        current=compute_milestone_rollup(["done", "done"]),
    )

    _reporter(recording_client).milestone_status(
        change,
        milestone_name=None,
        trigger_task_id="t-2",
        attempt=1,
    )

    assert recording_client.operations() == [
        {"op": "milestone.update", "milestone_id": "m-1", "status": "completed"},
    ]
    assert recording_client.activities[0]["phase"] == "completed"


def test_request_decision_marks_blocked_and_creates_decision(recording_client) -> None:
    task = Task(id="t-1", title="Broken build")

    _reporter(recording_client).request_decision(
        task=task,
        attempt=2,
        exit_code=1,
        log_path=Path("/logs/t-1-attempt-2.log"),
        failure_class=FailureClass.WORKER_FAILED,
    )

    blocked, decision = recording_client.operations()
    assert blocked == {
        "op": "task.update",
        "task_id": "t-1",
        "status": "blocked",
        "description": "Worker failed after 2 attempts (exit 1)",
    }
    assert decision["op"] == "decision.create"
    assert decision["title"] == "Unblock task: Broken build"
    assert decision["urgency"] == "high"
    assert decision["blocking"] is True
    assert "worker_failed" in decision["summary"]
    assert "/logs/t-1-attempt-2.log" in decision["summary"]


def test_request_decision_can_leave_task_status_alone(recording_client) -> None:
    _reporter(recording_client).request_decision(
        task=Task(id="t-1", title="Broken build"),
        attempt=1,
        exit_code=127,
        log_path=Path("/logs/t-1-attempt-1.log"),
        failure_class=FailureClass.LAUNCH_FAILED,
        mark_blocked=False,
    )

    assert [op["op"] for op in recording_client.operations()] == ["decision.create"]
