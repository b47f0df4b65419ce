"""Domain models for the dispatch job."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class TaskStateBucket(str, Enum):
    """Coarse task buckets used by rollups."""

    TODO = "todo"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"


class TaskStatus(str, Enum):
    """Task statuses the dispatcher proposes upstream."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class MilestoneStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    AT_RISK = "at_risk"
    COMPLETED = "completed"


class WorkstreamStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"


class AttemptOutcome(str, Enum):
    """Resolution of one task attempt."""

    DONE = "done"
    RETRY_PENDING = "retry_pending"
    BLOCKED = "blocked"


class JobResult(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_BLOCKERS = "completed_with_blockers"


class FailureClass(str, Enum):
    """Diagnostic classes for failed attempts."""

    TIMEOUT = "timeout"
    LAUNCH_FAILED = "launch_failed"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BACKEND_TRANSIENT = "backend_transient"
    WORKER_FAILED = "worker_failed"


@dataclass(slots=True)
class Task:
    """Read-only view of an OrgX task entity."""

    id: str
    title: str = ""
    status: str = ""
    workstream_id: str | None = None
    milestone_id: str | None = None
    initiative_id: str | None = None
    priority: str | None = None
    due_date: str | None = None
    sequence: float | None = None
    workstream_name: str | None = None
    milestone_title: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_entity(cls, entity: Mapping[str, Any]) -> Task:
        return cls(
            id=str(entity.get("id", "")),
            title=str(entity.get("title") or entity.get("name") or ""),
            status=str(entity.get("status") or ""),
            workstream_id=_optional_str(entity.get("workstream_id")),
            milestone_id=_optional_str(entity.get("milestone_id")),
            initiative_id=_optional_str(entity.get("initiative_id")),
            priority=_optional_str(entity.get("priority")),
            due_date=_optional_str(entity.get("due_date")),
            sequence=_optional_number(entity.get("sequence")),
            workstream_name=_optional_str(entity.get("workstream_name")),
            milestone_title=_optional_str(entity.get("milestone_title")),
            raw=dict(entity),
        )

    def summary(self) -> str:
        return f"{self.title} ({self.id})"


@dataclass(slots=True)
class PendingItem:
    """Queue entry; ``available_at`` is on the dispatcher's monotonic clock."""

    task: Task
    available_at: float = 0.0


@dataclass(slots=True)
class WorkerExit:
    """Completion event pushed by a worker onto the completion channel."""

    task_id: str
    attempt: int
    exit_code: int
    log_path: Path
    signal_name: str | None = None
    timed_out: bool = False
    launch_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.launch_error is None


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return float(value)
