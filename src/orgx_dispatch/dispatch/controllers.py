"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orgx_dispatch.config import (
    ConfigurationError,
    DispatchSettings,
    JobConfig,
    pick_string,
    split_csv,
)
from orgx_dispatch.dispatch.dispatcher import (
    DispatchContext,
    Dispatcher,
    DispatchOptions,
    DispatchSummary,
)
from orgx_dispatch.dispatch.models import JobResult, Task
from orgx_dispatch.dispatch.reporter import PHASE_BY_EVENT, Reporter
from orgx_dispatch.dispatch.rollups import RollupTracker, to_percent
from orgx_dispatch.dispatch.state import (
    JobFinished,
    JobState,
    JobStatePersister,
    RollupRecorded,
    load_job_state,
    reduce_job_state,
)
from orgx_dispatch.dispatch.task_queue import build_task_queue
from orgx_dispatch.orgx.client import OrgxClient

logger = logging.getLogger(__name__)

DEFAULT_CODEX_ARGS = ("--full-auto",)
WORKSTREAM_LIST_LIMIT = 500
MILESTONE_LIST_LIMIT = 4_000
TASK_LIST_LIMIT = 4_000


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for one dispatch job run."""

    initiative_id: str | None = None
    plan_file: Path | None = None
    workstream_ids: str | None = None
    task_ids: str | None = None
    all_workstreams: bool = False
    concurrency: int = 4
    max_attempts: int = 2
    poll_interval_sec: float = 10.0
    heartbeat_sec: float = 45.0
    retry_backoff_sec: float = 15.0
    attempt_timeout_sec: float = 0.0
    state_file: Path | None = None
    logs_dir: Path | None = None
    config_file: Path | None = None
    codex_bin: str | None = None
    codex_args: str | None = None
    dry_run: bool = False
    auto_complete: bool = True
    max_tasks: int | None = None
    job_id: str | None = None
    base_url: str | None = None
    user_id: str | None = None
    source_client: str | None = None
    correlation_id: str | None = None


@dataclass(slots=True)
class DispatchInspectCommand:
    """CLI input for persisted job state inspection."""

    state_file: Path


@dataclass(slots=True)
class DispatchRunResult:
    lines: list[str] = field(default_factory=list)
    summary: DispatchSummary | None = None

    @property
    def exit_code(self) -> int:
        return self.summary.exit_code if self.summary is not None else 0


class DispatchCliController:
    """Wires settings, the OrgX client, and the dispatcher for CLI commands."""

    def run(self, command: DispatchRunCommand) -> DispatchRunResult:  # noqa: PLR0915
        settings = _resolve_settings(command)
        settings.validate_for_dispatch()
        job_config = JobConfig.load(command.config_file)
        initiative_id = settings.initiative_id or ""

        plan_path = _resolve_plan_file(command.plan_file, job_config.plan_file, settings.plan_file)
        try:
            plan_text = plan_path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise ConfigurationError(f"Cannot read plan file {plan_path}: {error}") from error
        plan_hash = hashlib.sha256(plan_text.encode("utf-8")).hexdigest()

        selected_workstream_ids = _selected_workstream_ids(command, job_config)
        selected_task_ids = split_csv(command.task_ids)
        codex_args = (
            command.codex_args.split()
            if command.codex_args is not None
            else list(DEFAULT_CODEX_ARGS)
        )
        codex_bin = pick_string(command.codex_bin, settings.codex_bin) or settings.codex_bin

        epoch_ms = int(time.time() * 1000)
        job_id = pick_string(command.job_id) or f"codex-job-{epoch_ms}"
        correlation_id = (
            pick_string(command.correlation_id, settings.correlation_id)
            or f"dispatch-{epoch_ms}-{uuid.uuid4().hex[:8]}"
        )
        logs_dir = (command.logs_dir or settings.logs_root).expanduser().resolve() / job_id
        logs_dir.mkdir(parents=True, exist_ok=True)
        state_file = (command.state_file or logs_dir / "job-state.json").expanduser().resolve()
        persister = JobStatePersister(state_file)

        options = DispatchOptions(
            concurrency=command.concurrency,
            max_attempts=command.max_attempts,
            poll_interval_seconds=command.poll_interval_sec,
            heartbeat_seconds=command.heartbeat_sec,
            retry_base_seconds=command.retry_backoff_sec,
            attempt_timeout_seconds=command.attempt_timeout_sec,
            dry_run=command.dry_run,
            auto_complete=command.auto_complete,
        )
        try:
            options.validate()
        except ValueError as error:
            raise ConfigurationError(str(error)) from error

        logger.info(
            "Starting %s initiative=%s dry_run=%s concurrency=%s",
            job_id,
            initiative_id,
            command.dry_run,
            options.concurrency,
        )
        with OrgxClient(
            api_key=settings.api_key,
            base_url=settings.base_url,
            user_id=settings.user_id,
            timeout_seconds=settings.http.timeout_seconds,
            max_retries=settings.http.max_retries,
        ) as client:
            reporter = Reporter(
                client=client,
                initiative_id=initiative_id,
                source_client=settings.source_client,
                correlation_id=correlation_id,
                plan_path=plan_path,
                plan_hash=plan_hash,
                job_id=job_id,
                dry_run=command.dry_run,
            )
            workstreams = client.list_entities(
                "workstream",
                limit=WORKSTREAM_LIST_LIMIT,
                initiative_id=initiative_id,
            )
            milestones = client.list_entities(
                "milestone",
                limit=MILESTONE_LIST_LIMIT,
                initiative_id=initiative_id,
            )
            task_rows = client.list_entities(
                "task",
                limit=TASK_LIST_LIMIT,
                initiative_id=initiative_id,
            )

            workstream_names = _names_by_id(workstreams, "name", "title")
            milestone_names = _names_by_id(milestones, "title", "name")
            tasks = [
                _with_parent_names(Task.from_entity(row), workstream_names, milestone_names)
                for row in task_rows
            ]
            queue = build_task_queue(tasks, selected_workstream_ids, selected_task_ids)
            if command.max_tasks is not None:
                queue = queue[: command.max_tasks]

            state = JobState(
                job_id=job_id,
                initiative_id=initiative_id,
                plan_path=str(plan_path),
                plan_hash=plan_hash,
                total_tasks=len(queue),
                selected_workstream_ids=list(selected_workstream_ids),
            )

            if not queue:
                reporter.emit_safely(
                    "Dispatcher found no matching tasks to execute.",
                    phase=PHASE_BY_EVENT["complete"],
                    level="warn",
                    progress_pct=100,
                    metadata={
                        "queue_size": 0,
                        "selected_workstreams": list(selected_workstream_ids),
                    },
                )
                persister.persist(
                    reduce_job_state(state, JobFinished(result=JobResult.COMPLETED)),
                )
                summary = DispatchSummary(
                    job_id=job_id,
                    result=JobResult.COMPLETED,
                    total_tasks=0,
                    completed=0,
                    blocked=0,
                    skipped=0,
                    state_file=state_file,
                    run_id=reporter.run_id,
                )
                return DispatchRunResult(
                    lines=["No tasks to run.", json.dumps(summary.to_dict())],
                    summary=summary,
                )

            tracker = RollupTracker(tasks=tasks, queued=queue)
            for milestone_id, rollup in tracker.milestones.items():
                state = reduce_job_state(
                    state,
                    RollupRecorded(parent_kind="milestone", parent_id=milestone_id, rollup=rollup),
                )
            for workstream_id, rollup in tracker.workstreams.items():
                state = reduce_job_state(
                    state,
                    RollupRecorded(
                        parent_kind="workstream",
                        parent_id=workstream_id,
                        rollup=rollup,
                    ),
                )
            state = persister.persist(state)

            queued_workstreams = {task.workstream_id for task in queue}
            empty_workstreams = [
                {"id": row.get("id"), "name": row.get("name")}
                for row in workstreams
                if (not selected_workstream_ids or row.get("id") in selected_workstream_ids)
                and row.get("id") not in queued_workstreams
            ]
            reporter.emit_safely(
                f"Codex dispatch job started for {len(queue)} tasks.",
                phase=PHASE_BY_EVENT["start"],
                progress_pct=0,
                metadata={
                    "total_tasks": len(queue),
                    "selected_workstreams": list(selected_workstream_ids) or "all",
                    "empty_workstreams": empty_workstreams,
                    "codex_bin": codex_bin,
                    "codex_args": codex_args,
                },
            )

            dispatcher = Dispatcher(
                tasks=queue,
                tracker=tracker,
                reporter=reporter,
                persister=persister,
                state=state,
                context=DispatchContext(
                    job_id=job_id,
                    initiative_id=initiative_id,
                    correlation_id=correlation_id,
                    source_client=settings.source_client,
                    plan_path=plan_path,
                    plan_text=plan_text,
                    logs_dir=logs_dir,
                    codex_bin=codex_bin,
                    codex_args=codex_args,
                    job_config=job_config,
                    base_env=dict(os.environ),
                    milestone_names=milestone_names,
                    workstream_names=workstream_names,
                ),
                options=options,
            )
            summary = dispatcher.run()
            _emit_job_complete(reporter, summary)

        lines = [
            f"Job {summary.job_id} finished: result={summary.result.value} "
            f"completed={summary.completed}/{summary.total_tasks} "
            f"blocked={summary.blocked} skipped={summary.skipped}",
            f"State file: {summary.state_file}",
            json.dumps(summary.to_dict()),
        ]
        return DispatchRunResult(lines=lines, summary=summary)

    def inspect(self, command: DispatchInspectCommand) -> list[str]:
        try:
            state = load_job_state(command.state_file)
        except (OSError, ValueError, TypeError) as error:
            raise ConfigurationError(
                f"Cannot read job state {command.state_file}: {error}",
            ) from error

        lines = [
            f"Job: {state.job_id} result={state.result.value} initiative={state.initiative_id}",
            f"Plan: {state.plan_path} sha256={state.plan_hash[:12]}",
            f"Tasks: total={state.total_tasks} completed={state.completed} "
            f"blocked={state.failed} skipped={state.skipped}",
            f"Started: {state.started_at} Updated: {state.updated_at} "
            f"Finished: {state.finished_at or '-'}",
        ]
        if state.task_states:
            lines.append("Task states:")
            for task_id, record in sorted(state.task_states.items()):
                lines.append(
                    f"  {task_id}: status={record.status} attempts={record.attempts} "
                    f"exit={_dash(record.exit_code)} class={_dash(record.failure_class)} "
                    f"log={record.log_path or '-'}",
                )
        if state.active_workers:
            lines.append("Active workers:")
            for task_id, worker in sorted(state.active_workers.items()):
                lines.append(
                    f"  {task_id}: pid={_dash(worker.pid)} attempt={worker.attempt} "
                    f"started={worker.started_at}",
                )
        for label, rollups in (
            ("Milestone rollups:", state.milestone_rollups),
            ("Workstream rollups:", state.workstream_rollups),
        ):
            if not rollups:
                continue
            lines.append(label)
            for parent_id, rollup in sorted(rollups.items()):
                lines.append(
                    f"  {parent_id}: status={rollup.get('status')} "
                    f"progress={rollup.get('progressPct')}% "
                    f"({rollup.get('done')}/{rollup.get('total')} done, "
                    f"{rollup.get('blocked')} blocked)",
                )
        return lines


def _resolve_settings(command: DispatchRunCommand) -> DispatchSettings:
    settings = DispatchSettings.from_env()
    settings.initiative_id = pick_string(command.initiative_id, settings.initiative_id)
    settings.user_id = pick_string(command.user_id, settings.user_id)
    settings.source_client = (
        pick_string(command.source_client, settings.source_client) or settings.source_client
    )
    base_url = pick_string(command.base_url)
    if base_url:
        settings.base_url = base_url.rstrip("/")
    return settings


def _resolve_plan_file(*candidates: object) -> Path:
    picked = pick_string(
        *(str(value) if isinstance(value, Path) else value for value in candidates),
    )
    if not picked:
        raise ConfigurationError("plan_file is required (arg, config planFile or ORGX_PLAN_FILE).")
    plan_path = Path(picked).expanduser().resolve()
    if not plan_path.is_file():
        raise ConfigurationError(f"Plan file not found: {plan_path}")
    return plan_path


def _selected_workstream_ids(
    command: DispatchRunCommand,
    job_config: JobConfig,
) -> tuple[str, ...]:
    if command.all_workstreams:
        return ()
    explicit = split_csv(command.workstream_ids)
    if explicit:
        return explicit
    return job_config.default_workstream_ids


def _names_by_id(rows: list[dict[str, Any]], *keys: str) -> dict[str, str]:
    names: dict[str, str] = {}
    for row in rows:
        entity_id = pick_string(row.get("id"))
        if not entity_id:
            continue
        names[entity_id] = pick_string(*(row.get(key) for key in keys)) or entity_id
    return names


def _with_parent_names(
    task: Task,
    workstream_names: dict[str, str],
    milestone_names: dict[str, str],
) -> Task:
    if not task.workstream_name and task.workstream_id:
        task.workstream_name = workstream_names.get(task.workstream_id)
    if not task.milestone_title and task.milestone_id:
        task.milestone_title = milestone_names.get(task.milestone_id)
    return task


def _emit_job_complete(reporter: Reporter, summary: DispatchSummary) -> None:
    success = summary.result is JobResult.COMPLETED
    if success:
        message = (
            "Dispatch job completed successfully. "
            f"{summary.completed}/{summary.total_tasks} tasks completed."
        )
        next_step = "Validate merged outputs and close launch milestone."
    else:
        message = (
            "Dispatch job finished with blockers. "
            f"{summary.completed}/{summary.total_tasks} completed, {summary.blocked} blocked, "
            f"{summary.skipped} skipped."
        )
        next_step = "Unblock failed tasks and rerun with --task_ids."
    reporter.emit_safely(
        message,
        phase=PHASE_BY_EVENT["complete"],
        level="info" if success else "warn",
        progress_pct=to_percent(summary.completed, summary.total_tasks),
        metadata={
            "event": "job_complete",
            "completed": summary.completed,
            "total": summary.total_tasks,
            "blocked": summary.blocked,
            "skipped": summary.skipped,
            "state_file": str(summary.state_file),
            "run_id": reporter.run_id,
        },
        next_step=next_step,
    )


def _dash(value: object) -> str:
    return "-" if value is None else str(value)
