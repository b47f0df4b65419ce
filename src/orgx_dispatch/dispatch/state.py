"""Job state record, its transition function, and the JSON snapshot writer."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from orgx_dispatch.dispatch.models import AttemptOutcome, JobResult
from orgx_dispatch.dispatch.rollups import Rollup

SKIPPED_STATUS = "skipped"
IN_PROGRESS_STATUS = "in_progress"


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class TaskAttemptRecord:
    """Latest known state of one task within the job."""

    status: str
    attempts: int
    log_path: str
    exit_code: int | None = None
    signal_name: str | None = None
    failure_class: str | None = None
    finished_at: str | None = None
    next_available_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "attempts": self.attempts,
            "exitCode": self.exit_code,
            "signal": self.signal_name,
            "failureClass": self.failure_class,
            "finishedAt": self.finished_at,
            "nextAvailableAt": self.next_available_at,
            "logPath": self.log_path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskAttemptRecord:
        return cls(
            status=str(payload.get("status", "")),
            attempts=int(payload.get("attempts", 0)),
            log_path=str(payload.get("logPath", "")),
            exit_code=payload.get("exitCode"),
            signal_name=payload.get("signal"),
            failure_class=payload.get("failureClass"),
            finished_at=payload.get("finishedAt"),
            next_available_at=payload.get("nextAvailableAt"),
        )


@dataclass(slots=True)
class ActiveWorkerRecord:
    pid: int | None
    attempt: int
    started_at: str
    log_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "attempt": self.attempt,
            "startedAt": self.started_at,
            "logPath": self.log_path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ActiveWorkerRecord:
        return cls(
            pid=payload.get("pid"),
            attempt=int(payload.get("attempt", 0)),
            started_at=str(payload.get("startedAt", "")),
            log_path=str(payload.get("logPath", "")),
        )


@dataclass(slots=True)
class JobState:
    """Snapshot of one dispatch run.

    ``completed`` and ``failed`` are derived from ``task_states`` by the
    reducer; ``total_tasks`` is fixed at construction.
    """

    job_id: str
    initiative_id: str
    plan_path: str
    plan_hash: str
    total_tasks: int
    selected_workstream_ids: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None
    result: JobResult = JobResult.RUNNING
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    task_states: dict[str, TaskAttemptRecord] = field(default_factory=dict)
    active_workers: dict[str, ActiveWorkerRecord] = field(default_factory=dict)
    milestone_rollups: dict[str, dict[str, Any]] = field(default_factory=dict)
    workstream_rollups: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_heartbeat_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "initiativeId": self.initiative_id,
            "planPath": self.plan_path,
            "planHash": self.plan_hash,
            "selectedWorkstreamIds": list(self.selected_workstream_ids),
            "totalTasks": self.total_tasks,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "finishedAt": self.finished_at,
            "result": self.result.value,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "lastHeartbeatAt": self.last_heartbeat_at,
            "taskStates": {
                task_id: record.to_dict() for task_id, record in self.task_states.items()
            },
            "activeWorkers": {
                task_id: record.to_dict() for task_id, record in self.active_workers.items()
            },
            "rollups": {
                "milestones": dict(self.milestone_rollups),
                "workstreams": dict(self.workstream_rollups),
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> JobState:
        rollups = payload.get("rollups") or {}
        return cls(
            job_id=str(payload.get("jobId", "")),
            initiative_id=str(payload.get("initiativeId", "")),
            plan_path=str(payload.get("planPath", "")),
            plan_hash=str(payload.get("planHash", "")),
            total_tasks=int(payload.get("totalTasks", 0)),
            selected_workstream_ids=list(payload.get("selectedWorkstreamIds") or []),
            started_at=str(payload.get("startedAt", "")),
            updated_at=str(payload.get("updatedAt", "")),
            finished_at=payload.get("finishedAt"),
            result=JobResult(payload.get("result", JobResult.RUNNING.value)),
            completed=int(payload.get("completed", 0)),
            failed=int(payload.get("failed", 0)),
            skipped=int(payload.get("skipped", 0)),
            task_states={
                task_id: TaskAttemptRecord.from_dict(record)
                for task_id, record in (payload.get("taskStates") or {}).items()
            },
            active_workers={
                task_id: ActiveWorkerRecord.from_dict(record)
                for task_id, record in (payload.get("activeWorkers") or {}).items()
            },
            milestone_rollups=dict(rollups.get("milestones") or {}),
            workstream_rollups=dict(rollups.get("workstreams") or {}),
            last_heartbeat_at=payload.get("lastHeartbeatAt"),
        )


@dataclass(slots=True)
class AttemptDispatched:
    task_id: str
    attempt: int
    pid: int | None
    log_path: str
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class AttemptFinished:
    task_id: str
    attempt: int
    outcome: AttemptOutcome
    exit_code: int
    log_path: str
    signal_name: str | None = None
    failure_class: str | None = None
    next_available_at: str | None = None
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class RollupRecorded:
    parent_kind: str  # "milestone" or "workstream"
    parent_id: str
    rollup: Rollup
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class HeartbeatRecorded:
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class TasksSkipped:
    """Tasks left unfinished because the job was asked to stop."""

    task_ids: list[str]
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class JobFinished:
    result: JobResult
    at: str = field(default_factory=utc_now_iso)


JobEvent = (
    AttemptDispatched
    | AttemptFinished
    | RollupRecorded
    | HeartbeatRecorded
    | TasksSkipped
    | JobFinished
)


def reduce_job_state(state: JobState, event: JobEvent) -> JobState:  # noqa: PLR0911
    """Return the state after ``event``; the input state is not modified."""

    if isinstance(event, AttemptDispatched):
        active_workers = dict(state.active_workers)
        active_workers[event.task_id] = ActiveWorkerRecord(
            pid=event.pid,
            attempt=event.attempt,
            started_at=event.at,
            log_path=event.log_path,
        )
        task_states = dict(state.task_states)
        task_states[event.task_id] = TaskAttemptRecord(
            status=IN_PROGRESS_STATUS,
            attempts=event.attempt,
            log_path=event.log_path,
        )
        return replace(state, active_workers=active_workers, task_states=task_states)

    if isinstance(event, AttemptFinished):
        active_workers = dict(state.active_workers)
        active_workers.pop(event.task_id, None)
        task_states = dict(state.task_states)
        task_states[event.task_id] = TaskAttemptRecord(
            status=event.outcome.value,
            attempts=event.attempt,
            log_path=event.log_path,
            exit_code=event.exit_code,
            signal_name=event.signal_name,
            failure_class=event.failure_class,
            finished_at=event.at,
            next_available_at=event.next_available_at,
        )
        return _with_counters(
            replace(state, active_workers=active_workers, task_states=task_states),
        )

    if isinstance(event, RollupRecorded):
        snapshot = {**event.rollup.to_dict(), "updatedAt": event.at}
        if event.parent_kind == "milestone":
            milestones = dict(state.milestone_rollups)
            milestones[event.parent_id] = snapshot
            return replace(state, milestone_rollups=milestones)
        workstreams = dict(state.workstream_rollups)
        workstreams[event.parent_id] = snapshot
        return replace(state, workstream_rollups=workstreams)

    if isinstance(event, HeartbeatRecorded):
        return replace(state, last_heartbeat_at=event.at)

    if isinstance(event, TasksSkipped):
        active_workers = dict(state.active_workers)
        task_states = dict(state.task_states)
        for task_id in event.task_ids:
            active_workers.pop(task_id, None)
            previous = task_states.get(task_id)
            task_states[task_id] = TaskAttemptRecord(
                status=SKIPPED_STATUS,
                attempts=previous.attempts if previous else 0,
                log_path=previous.log_path if previous else "",
                exit_code=previous.exit_code if previous else None,
                signal_name=previous.signal_name if previous else None,
                failure_class=previous.failure_class if previous else None,
                finished_at=event.at,
            )
        return _with_counters(
            replace(state, active_workers=active_workers, task_states=task_states),
        )

    if isinstance(event, JobFinished):
        return replace(state, result=event.result, finished_at=event.at)

    raise TypeError(f"Unsupported job event: {type(event).__name__}")


def _with_counters(state: JobState) -> JobState:
    statuses = [record.status for record in state.task_states.values()]
    return replace(
        state,
        completed=statuses.count(AttemptOutcome.DONE.value),
        failed=statuses.count(AttemptOutcome.BLOCKED.value),
        skipped=statuses.count(SKIPPED_STATUS),
    )


class JobStatePersister:
    """Overwrite the JSON snapshot of the job state after every transition."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def persist(self, state: JobState) -> JobState:
        stamped = replace(state, updated_at=utc_now_iso())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(stamped.to_dict(), ensure_ascii=False, indent=2)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(payload)
            temp_path = Path(handle.name)
        os.replace(temp_path, self.path)
        return stamped


def load_job_state(path: Path) -> JobState:
    """Read a persisted snapshot back for inspection."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return JobState.from_dict(payload)
