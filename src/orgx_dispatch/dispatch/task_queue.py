"""Deterministic task queue construction."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime

from orgx_dispatch.dispatch.models import Task

PRIORITY_RANK: dict[str, int] = {
    "urgent": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}
STATE_RANK: dict[str, int] = {
    "in_progress": 0,
    "todo": 1,
    "blocked": 2,
}
_UNRANKED = 9


def state_weight(status: str | None) -> int:
    return STATE_RANK.get((status or "").strip().lower(), _UNRANKED)


def priority_weight(priority: str | None) -> int:
    return PRIORITY_RANK.get((priority or "").strip().lower(), _UNRANKED)


def due_epoch(value: str | None) -> float:
    """Due date as epoch seconds; missing or unparseable dates sort last."""

    if not value:
        return math.inf
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return math.inf
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


def task_sort_key(task: Task) -> tuple[int, float, int, float, str]:
    return (
        state_weight(task.status),
        due_epoch(task.due_date),
        priority_weight(task.priority),
        task.sequence if task.sequence is not None else math.inf,
        task.title,
    )


def sort_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Stable multi-key sort: state, due date, priority, sequence, title."""

    return sorted(tasks, key=task_sort_key)


def build_task_queue(
    tasks: Iterable[Task],
    selected_workstream_ids: Iterable[str] = (),
    selected_task_ids: Iterable[str] = (),
) -> list[Task]:
    """Filter by workstream and task selection (empty = unrestricted), then sort."""

    workstreams = set(selected_workstream_ids)
    task_ids = set(selected_task_ids)
    scoped = [
        task
        for task in tasks
        if (not workstreams or task.workstream_id in workstreams)
        and (not task_ids or task.id in task_ids)
    ]
    return sort_tasks(scoped)
