"""Milestone and workstream rollups derived from child task statuses."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from orgx_dispatch.dispatch.models import (
    MilestoneStatus,
    Task,
    TaskStateBucket,
    WorkstreamStatus,
)

_DONE_STATES = frozenset({"done", "completed", "cancelled", "archived", "deleted"})
_BLOCKED_STATES = frozenset({"blocked", "at_risk"})
_ACTIVE_STATES = frozenset({"in_progress", "active", "running", "queued", "retry_pending"})


def classify_task_state(status: object) -> TaskStateBucket:
    """Map a raw task status onto a rollup bucket.

    Cancelled and archived tasks count as done: they no longer hold their
    parent open.
    """

    normalized = str(status if status is not None else "").strip().lower()
    if normalized in _DONE_STATES:
        return TaskStateBucket.DONE
    if normalized in _BLOCKED_STATES:
        return TaskStateBucket.BLOCKED
    if normalized in _ACTIVE_STATES:
        return TaskStateBucket.ACTIVE
    return TaskStateBucket.TODO


@dataclass(slots=True)
class TaskStatusCounts:
    total: int = 0
    done: int = 0
    blocked: int = 0
    active: int = 0
    todo: int = 0


@dataclass(slots=True)
class Rollup:
    """Aggregate status and progress of one milestone or workstream."""

    total: int
    done: int
    blocked: int
    active: int
    todo: int
    status: MilestoneStatus | WorkstreamStatus
    progress_pct: int

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "done": self.done,
            "blocked": self.blocked,
            "active": self.active,
            "todo": self.todo,
            "status": self.status.value,
            "progressPct": self.progress_pct,
        }


def summarize_task_statuses(statuses: Iterable[object]) -> TaskStatusCounts:
    counts = TaskStatusCounts()
    for status in statuses:
        counts.total += 1
        bucket = classify_task_state(status)
        if bucket is TaskStateBucket.DONE:
            counts.done += 1
        elif bucket is TaskStateBucket.BLOCKED:
            counts.blocked += 1
        elif bucket is TaskStateBucket.ACTIVE:
            counts.active += 1
        else:
            counts.todo += 1
    return counts


def to_percent(done: int, total: int) -> int:
    """Half-up rounded percentage clamped to 0..100; 0 when total is empty."""

    if total <= 0:
        return 0
    return max(0, min(100, math.floor(done / total * 100 + 0.5)))


def compute_milestone_rollup(statuses: Iterable[object]) -> Rollup:
    counts = summarize_task_statuses(statuses)
    status = MilestoneStatus.PLANNED
    if counts.total <= 0:
        status = MilestoneStatus.PLANNED
    elif counts.done >= counts.total:
        status = MilestoneStatus.COMPLETED
    elif counts.blocked > 0 and counts.active == 0:
        status = MilestoneStatus.AT_RISK
    elif counts.active > 0 or counts.done > 0:
        status = MilestoneStatus.IN_PROGRESS
    return _rollup(counts, status)


def compute_workstream_rollup(statuses: Iterable[object]) -> Rollup:
    counts = summarize_task_statuses(statuses)
    status = WorkstreamStatus.NOT_STARTED
    if counts.total <= 0:
        status = WorkstreamStatus.NOT_STARTED
    elif counts.done >= counts.total:
        status = WorkstreamStatus.DONE
    elif counts.blocked > 0 and counts.active == 0:
        status = WorkstreamStatus.BLOCKED
    elif counts.active > 0 or counts.done > 0:
        status = WorkstreamStatus.ACTIVE
    return _rollup(counts, status)


def rollup_changed(previous: Rollup | None, current: Rollup) -> bool:
    """True when any reported field differs; never for the first snapshot."""

    if previous is None:
        return False
    return (
        previous.status != current.status
        or previous.progress_pct != current.progress_pct
        or previous.total != current.total
        or previous.done != current.done
        or previous.active != current.active
        or previous.blocked != current.blocked
        or previous.todo != current.todo
    )


@dataclass(slots=True)
class RollupChange:
    parent_id: str
    previous: Rollup
    current: Rollup

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.current.status


class RollupTracker:
    """Live task statuses and last acknowledged rollups for one job.

    Only parents of queued tasks are tracked. A rollup is acknowledged once
    the upstream update succeeded, so a failed push is retried on the next
    change.
    """

    def __init__(self, *, tasks: Iterable[Task], queued: Iterable[Task]) -> None:
        all_tasks = list(tasks)
        self._status_by_task: dict[str, str] = {
            task.id: task.status or "todo" for task in all_tasks
        }
        self._task_ids_by_milestone = _task_ids_by_parent(all_tasks, "milestone_id")
        self._task_ids_by_workstream = _task_ids_by_parent(all_tasks, "workstream_id")

        queued_tasks = list(queued)
        self.milestone_ids = {task.milestone_id for task in queued_tasks if task.milestone_id}
        self.workstream_ids = {task.workstream_id for task in queued_tasks if task.workstream_id}
        self._milestones: dict[str, Rollup] = {
            milestone_id: self._compute_milestone(milestone_id)
            for milestone_id in sorted(self.milestone_ids)
        }
        self._workstreams: dict[str, Rollup] = {
            workstream_id: self._compute_workstream(workstream_id)
            for workstream_id in sorted(self.workstream_ids)
        }

    @property
    def milestones(self) -> dict[str, Rollup]:
        return dict(self._milestones)

    @property
    def workstreams(self) -> dict[str, Rollup]:
        return dict(self._workstreams)

    def task_status(self, task_id: str) -> str:
        return self._status_by_task.get(task_id, "todo")

    def set_task_status(self, task_id: str, status: str) -> None:
        self._status_by_task[task_id] = status

    def milestone_change(self, task: Task) -> RollupChange | None:
        milestone_id = task.milestone_id
        if not milestone_id or milestone_id not in self.milestone_ids:
            return None
        previous = self._milestones.get(milestone_id)
        current = self._compute_milestone(milestone_id)
        if previous is None or not rollup_changed(previous, current):
            return None
        return RollupChange(parent_id=milestone_id, previous=previous, current=current)

    def workstream_change(self, task: Task) -> RollupChange | None:
        workstream_id = task.workstream_id
        if not workstream_id or workstream_id not in self.workstream_ids:
            return None
        previous = self._workstreams.get(workstream_id)
        current = self._compute_workstream(workstream_id)
        if previous is None or not rollup_changed(previous, current):
            return None
        return RollupChange(parent_id=workstream_id, previous=previous, current=current)

    def acknowledge_milestone(self, milestone_id: str, rollup: Rollup) -> None:
        self._milestones[milestone_id] = rollup

    def acknowledge_workstream(self, workstream_id: str, rollup: Rollup) -> None:
        self._workstreams[workstream_id] = rollup

    def _compute_milestone(self, milestone_id: str) -> Rollup:
        return compute_milestone_rollup(
            self.task_status(task_id)
            for task_id in self._task_ids_by_milestone.get(milestone_id, [])
        )

    def _compute_workstream(self, workstream_id: str) -> Rollup:
        return compute_workstream_rollup(
            self.task_status(task_id)
            for task_id in self._task_ids_by_workstream.get(workstream_id, [])
        )


def _rollup(counts: TaskStatusCounts, status: MilestoneStatus | WorkstreamStatus) -> Rollup:
    return Rollup(
        total=counts.total,
        done=counts.done,
        blocked=counts.blocked,
        active=counts.active,
        todo=counts.todo,
        status=status,
        progress_pct=to_percent(counts.done, counts.total),
    )


def _task_ids_by_parent(tasks: list[Task], parent_field: str) -> dict[str, list[str]]:
    by_parent: dict[str, list[str]] = {}
    for task in tasks:
        parent_id = getattr(task, parent_field)
        if not parent_id:
            continue
        by_parent.setdefault(parent_id, []).append(task.id)
    return by_parent
