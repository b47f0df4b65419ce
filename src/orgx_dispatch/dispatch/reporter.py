"""Translate dispatch lifecycle events into OrgX activity and changesets."""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from orgx_dispatch.dispatch.models import (
    FailureClass,
    MilestoneStatus,
    Task,
    TaskStatus,
    WorkstreamStatus,
)
from orgx_dispatch.dispatch.rollups import RollupChange
from orgx_dispatch.orgx.client import OrgxApiError

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_MAX_CHARS = 120
_IDEMPOTENCY_PREFIX_CHARS = 84
_IDEMPOTENCY_HASH_CHARS = 20
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9:_-]")

PHASE_BY_EVENT: dict[str, str] = {
    "dispatch": "execution",
    "success": "review",
    "retry": "blocked",
    "failure": "blocked",
    "heartbeat": "execution",
    "start": "intent",
    "complete": "completed",
}


class ActivityGateway(Protocol):
    """Subset of the OrgX client used for reporting."""

    def emit_activity(self, payload: dict[str, Any]) -> Any: ...

    def apply_changeset(self, payload: dict[str, Any]) -> Any: ...

    def update_entity(self, entity_type: str, entity_id: str, updates: dict[str, Any]) -> Any: ...


def idempotency_key(parts: Iterable[object]) -> str:
    """Deterministic, URL-safe key of at most 120 characters."""

    raw = ":".join(str(part) for part in parts if part not in (None, ""))
    cleaned = _UNSAFE_KEY_CHARS.sub("-", raw)[:_IDEMPOTENCY_PREFIX_CHARS]
    suffix = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_IDEMPOTENCY_HASH_CHARS]
    return f"{cleaned}:{suffix}"[:IDEMPOTENCY_KEY_MAX_CHARS]


def phase_for_milestone(status: MilestoneStatus) -> str:
    if status is MilestoneStatus.COMPLETED:
        return "completed"
    if status is MilestoneStatus.AT_RISK:
        return "blocked"
    return "execution"


def phase_for_workstream(status: WorkstreamStatus) -> str:
    if status is WorkstreamStatus.DONE:
        return "completed"
    if status is WorkstreamStatus.BLOCKED:
        return "blocked"
    return "execution"


class Reporter:
    """Stateful reporting session for one dispatch job.

    Activity emission is best-effort through ``emit_safely``. Status changes
    raise ``OrgxApiError`` so the caller can keep its rollup cache on the last
    acknowledged snapshot.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: ActivityGateway,
        initiative_id: str,
        source_client: str,
        correlation_id: str,
        plan_path: Path,
        plan_hash: str,
        job_id: str,
        dry_run: bool = False,
    ) -> None:
        self.client = client
        self.initiative_id = initiative_id
        self.source_client = source_client
        self.correlation_id = correlation_id
        self.plan_path = plan_path
        self.plan_hash = plan_hash
        self.job_id = job_id
        self.dry_run = dry_run
        self._run_id: str | None = None

    @property
    def run_id(self) -> str | None:
        return self._run_id

    def emit(  # noqa: PLR0913
        self,
        message: str,
        *,
        phase: str = "execution",
        level: str = "info",
        progress_pct: int | None = None,
        metadata: dict[str, Any] | None = None,
        next_step: str | None = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "initiative_id": self.initiative_id,
            "message": message,
            "phase": phase,
            "level": level,
            "metadata": {
                **(metadata or {}),
                "job_id": self.job_id,
                "plan_file": str(self.plan_path),
                "plan_sha256": self.plan_hash,
            },
        }
        if progress_pct is not None:
            payload["progress_pct"] = progress_pct
        if next_step:
            payload["next_step"] = next_step
        payload = self._with_run_context(payload)

        if self.dry_run:
            return {"ok": True, "dry_run": True, "payload": payload}
        response = self.client.emit_activity(payload)
        self._remember_run_id(response)
        return response

    def emit_safely(self, message: str, **kwargs: Any) -> Any:
        """Emit activity; upstream failures are logged and swallowed."""

        try:
            return self.emit(message, **kwargs)
        except OrgxApiError as error:
            logger.warning("Activity emit failed (%s): %s", message, error)
            return None

    def apply_changeset(
        self,
        *,
        idempotency_parts: Iterable[object],
        operations: list[dict[str, Any]],
    ) -> Any:
        payload = self._with_run_context(
            {
                "initiative_id": self.initiative_id,
                "idempotency_key": idempotency_key(idempotency_parts),
                "operations": operations,
            },
        )
        if self.dry_run:
            return {"ok": True, "dry_run": True, "payload": payload}
        response = self.client.apply_changeset(payload)
        self._remember_run_id(response)
        return response

    def task_status(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status: TaskStatus,
        attempt: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        response = self.apply_changeset(
            idempotency_parts=["dispatch", self.job_id, task_id, status.value, attempt],
            operations=[
                {
                    "op": "task.update",
                    "task_id": task_id,
                    "status": status.value,
                    "description": reason,
                },
            ],
        )
        if metadata:
            self.emit_safely(
                f"Task {task_id} -> {status.value}",
                phase="completed" if status is TaskStatus.DONE else "execution",
                level="warn" if status is TaskStatus.BLOCKED else "info",
                metadata={
                    "task_id": task_id,
                    "status": status.value,
                    "attempt": attempt,
                    **metadata,
                },
            )
        return response

    def milestone_status(
        self,
        change: RollupChange,
        *,
        milestone_name: str | None,
        trigger_task_id: str,
        attempt: int,
    ) -> Any:
        current = change.current
        status = MilestoneStatus(current.status)
        response: Any = {"ok": True, "skipped": "no_status_change"}
        if change.status_changed:
            response = self.apply_changeset(
                idempotency_parts=[
                    "dispatch",
                    self.job_id,
                    "milestone",
                    change.parent_id,
                    status.value,
                    current.progress_pct,
                    current.done,
                    current.total,
                ],
                operations=[
                    {
                        "op": "milestone.update",
                        "milestone_id": change.parent_id,
                        "status": status.value,
                    },
                ],
            )

        name = milestone_name or change.parent_id
        self.emit_safely(
            f"Milestone {name}: {current.done}/{current.total} done "
            f"({current.progress_pct}%), status {status.value}.",
            phase=phase_for_milestone(status),
            level="warn" if status is MilestoneStatus.AT_RISK else "info",
            progress_pct=current.progress_pct,
            metadata={
                "event": "milestone_rollup",
                "milestone_id": change.parent_id,
                "milestone_name": name,
                "status_changed": change.status_changed,
                "trigger_task_id": trigger_task_id,
                "attempt": attempt,
                **current.to_dict(),
            },
        )
        return response

    def workstream_status(
        self,
        change: RollupChange,
        *,
        workstream_name: str | None,
        trigger_task_id: str,
        attempt: int,
    ) -> Any:
        current = change.current
        status = WorkstreamStatus(current.status)
        response: Any = {"ok": True, "skipped": "no_status_change"}
        if change.status_changed:
            if self.dry_run:
                response = {
                    "ok": True,
                    "dry_run": True,
                    "payload": {
                        "type": "workstream",
                        "id": change.parent_id,
                        "status": status.value,
                    },
                }
            else:
                response = self.client.update_entity(
                    "workstream",
                    change.parent_id,
                    {"status": status.value},
                )

        name = workstream_name or change.parent_id
        self.emit_safely(
            f"Workstream {name}: {current.done}/{current.total} done "
            f"({current.progress_pct}%), status {status.value}.",
            phase=phase_for_workstream(status),
            level="warn" if status is WorkstreamStatus.BLOCKED else "info",
            progress_pct=current.progress_pct,
            metadata={
                "event": "workstream_rollup",
                "workstream_id": change.parent_id,
                "workstream_name": name,
                "status_changed": change.status_changed,
                "trigger_task_id": trigger_task_id,
                "attempt": attempt,
                **current.to_dict(),
            },
        )
        return response

    def request_decision(  # noqa: PLR0913
        self,
        *,
        task: Task,
        attempt: int,
        exit_code: int,
        log_path: Path,
        failure_class: FailureClass,
        mark_blocked: bool = True,
    ) -> Any:
        """Ask a human to unblock a task whose attempts are exhausted."""

        operations: list[dict[str, Any]] = []
        if mark_blocked:
            operations.append(
                {
                    "op": "task.update",
                    "task_id": task.id,
                    "status": TaskStatus.BLOCKED.value,
                    "description": (
                        f"Worker failed after {attempt} attempts (exit {exit_code})"
                    ),
                },
            )
        operations.append(
            {
                "op": "decision.create",
                "title": f"Unblock task: {task.title or task.id}",
                "summary": (
                    f"Dispatcher job {self.job_id} exhausted {attempt} attempts for "
                    f"{task.summary()} (exit {exit_code}, {failure_class.value}). "
                    f"Worker log: {log_path}"
                ),
                "urgency": "high",
                "options": [
                    "Fix the blocker and rerun with --task_ids",
                    "Re-scope or split the task",
                    "Skip the task",
                ],
                "blocking": True,
            },
        )
        return self.apply_changeset(
            idempotency_parts=[
                "dispatch",
                self.job_id,
                task.id,
                "decision",
                attempt,
                exit_code,
            ],
            operations=operations,
        )

    def _with_run_context(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._run_id:
            return {**payload, "run_id": self._run_id}
        return {
            **payload,
            "correlation_id": self.correlation_id,
            "source_client": self.source_client,
        }

    def _remember_run_id(self, response: Any) -> None:
        if isinstance(response, dict) and response.get("run_id"):
            self._run_id = str(response["run_id"])
