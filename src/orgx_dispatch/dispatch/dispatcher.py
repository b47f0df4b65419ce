"""Bounded-concurrency dispatch loop for codex worker attempts."""

from __future__ import annotations

import logging
import queue
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from orgx_dispatch.config import JobConfig
from orgx_dispatch.dispatch.backend import (
    CodexWorkerLauncher,
    WorkerHandle,
    WorkerLaunchError,
    WorkerSpec,
    read_log_tail,
)
from orgx_dispatch.dispatch.failure_classifier import classify_worker_failure
from orgx_dispatch.dispatch.models import (
    AttemptOutcome,
    FailureClass,
    JobResult,
    PendingItem,
    Task,
    TaskStatus,
    WorkerExit,
)
from orgx_dispatch.dispatch.prompts import (
    PromptInputs,
    build_codex_prompt,
    extract_plan_context,
)
from orgx_dispatch.dispatch.reporter import PHASE_BY_EVENT, Reporter
from orgx_dispatch.dispatch.rollups import RollupTracker, to_percent
from orgx_dispatch.dispatch.sanitization import log_preview
from orgx_dispatch.dispatch.state import (
    AttemptDispatched,
    AttemptFinished,
    HeartbeatRecorded,
    JobEvent,
    JobFinished,
    JobState,
    JobStatePersister,
    RollupRecorded,
    TasksSkipped,
    reduce_job_state,
)
from orgx_dispatch.orgx.client import OrgxApiError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_HEARTBEAT_SECONDS = 45.0
DEFAULT_RETRY_BASE_SECONDS = 15.0
DEFAULT_RETRY_MAX_SECONDS = 180.0
_STOP_CHECK_SECONDS = 0.5
_STOP_DRAIN_SECONDS = 5.0


def backoff_seconds(
    attempt: int,
    *,
    base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
    max_seconds: float = DEFAULT_RETRY_MAX_SECONDS,
) -> float:
    """Delay before the attempt after ``attempt``: ``min(max, base * 2**(attempt-1))``."""

    exponent = max(0, attempt - 1)
    return min(max_seconds, base_seconds * (2**exponent))


@dataclass(slots=True)
class DispatchOptions:
    """Loop tuning knobs."""

    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS
    attempt_timeout_seconds: float = 0.0
    dry_run: bool = False
    auto_complete: bool = True

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0.")
        if self.heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be > 0.")
        if self.retry_base_seconds < 0 or self.retry_max_seconds < 0:
            raise ValueError("retry backoff must be >= 0.")
        if self.attempt_timeout_seconds < 0:
            raise ValueError("attempt_timeout_seconds must be >= 0.")


@dataclass(slots=True)
class DispatchContext:
    """Job-wide inputs shared by every attempt."""

    job_id: str
    initiative_id: str
    correlation_id: str
    source_client: str
    plan_path: Path
    plan_text: str
    logs_dir: Path
    codex_bin: str
    codex_args: list[str]
    job_config: JobConfig = field(default_factory=JobConfig)
    base_env: dict[str, str] = field(default_factory=dict)
    milestone_names: dict[str, str] = field(default_factory=dict)
    workstream_names: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchSummary:
    """Final job counters printed by the CLI."""

    job_id: str
    result: JobResult
    total_tasks: int
    completed: int
    blocked: int
    skipped: int
    state_file: Path
    run_id: str | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.result is JobResult.COMPLETED else 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.result is JobResult.COMPLETED,
            "jobId": self.job_id,
            "result": self.result.value,
            "totalTasks": self.total_tasks,
            "completed": self.completed,
            "blocked": self.blocked,
            "skipped": self.skipped,
            "stateFile": str(self.state_file),
            "runId": self.run_id,
        }


@dataclass(slots=True)
class _RunningAttempt:
    task: Task
    attempt: int
    log_path: Path
    handle: WorkerHandle | None = None


class Dispatcher:
    """Single control thread owning the job state.

    Worker pump threads only push ``WorkerExit`` events onto the completion
    channel; every state transition happens here, reduced and then persisted.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: list[Task],
        tracker: RollupTracker,
        reporter: Reporter,
        persister: JobStatePersister,
        state: JobState,
        context: DispatchContext,
        options: DispatchOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tracker = tracker
        self.reporter = reporter
        self.persister = persister
        self.context = context
        self.options = options or DispatchOptions()
        self.options.validate()
        self._clock = clock
        self._state = state
        self._pending: list[PendingItem] = [PendingItem(task=task) for task in tasks]
        self._running: dict[str, _RunningAttempt] = {}
        self._attempts: dict[str, int] = {}
        self._completions: queue.Queue[WorkerExit] = queue.Queue()
        self._launcher = CodexWorkerLauncher(self._completions)
        self._last_heartbeat_at: float | None = None
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def state(self) -> JobState:
        return self._state

    def run(self) -> DispatchSummary:
        """Dispatch until the queue and all running workers are drained."""

        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    self._stop_running_workers()
                    break
                self._dispatch_available()
                self._drain_completions()
                self._maybe_heartbeat()
                if not self._pending and not self._running:
                    break
                self._enforce_attempt_timeouts()
                self._wait_for_completion(self._wait_seconds())

        result = JobResult.COMPLETED
        if self._state.failed > 0 or self._state.skipped > 0:
            result = JobResult.COMPLETED_WITH_BLOCKERS
        self._apply(JobFinished(result=result))
        logger.info(
            "Job %s finished: result=%s completed=%s/%s blocked=%s skipped=%s",
            self.context.job_id,
            result.value,
            self._state.completed,
            self._state.total_tasks,
            self._state.failed,
            self._state.skipped,
        )
        return DispatchSummary(
            job_id=self.context.job_id,
            result=result,
            total_tasks=self._state.total_tasks,
            completed=self._state.completed,
            blocked=self._state.failed,
            skipped=self._state.skipped,
            state_file=self.persister.path,
            run_id=self.reporter.run_id,
        )

    def request_stop(self, *, reason: str = "requested") -> None:
        self._stop_requested = True
        self._stop_signal_name = reason

    def _dispatch_available(self) -> None:
        while len(self._running) < self.options.concurrency:
            now = self._clock()
            index = next(
                (
                    position
                    for position, item in enumerate(self._pending)
                    if item.available_at <= now and item.task.id not in self._running
                ),
                None,
            )
            if index is None:
                return
            item = self._pending.pop(index)
            self._dispatch(item.task)

    def _dispatch(self, task: Task) -> None:
        attempt = self._attempts.get(task.id, 0) + 1
        self._attempts[task.id] = attempt
        log_path = self.context.logs_dir / f"{task.id}-attempt-{attempt}.log"
        cwd = self.context.job_config.resolve_cwd(task.workstream_id)

        self.reporter.emit_safely(
            f"Dispatching {task.summary()} (attempt {attempt}/{self.options.max_attempts})",
            phase=PHASE_BY_EVENT["dispatch"],
            progress_pct=self._progress_pct(),
            metadata={
                "event": "dispatch",
                "task_id": task.id,
                "task_title": task.title,
                "workstream_id": task.workstream_id,
                "cwd": str(cwd),
                "attempt": attempt,
                "max_attempts": self.options.max_attempts,
                "worker_log": str(log_path),
            },
        )
        if self.options.auto_complete:
            self._update_task_status(
                task,
                status=TaskStatus.IN_PROGRESS,
                attempt=attempt,
                reason=f"Dispatched by {self.context.job_id} attempt {attempt}",
                metadata={"event": "status_update", "from": task.status, "to": "in_progress"},
            )

        running = _RunningAttempt(task=task, attempt=attempt, log_path=log_path)
        self._running[task.id] = running
        if self.options.dry_run:
            logger.info("[dry-run] would dispatch %s attempt %s", task.summary(), attempt)
            self._apply(
                AttemptDispatched(
                    task_id=task.id,
                    attempt=attempt,
                    pid=None,
                    log_path=str(log_path),
                ),
            )
            self._completions.put(
                WorkerExit(task_id=task.id, attempt=attempt, exit_code=0, log_path=log_path),
            )
            return

        spec = WorkerSpec(
            task_id=task.id,
            attempt=attempt,
            task_summary=task.summary(),
            argv=[
                self.context.codex_bin,
                *self.context.codex_args,
                self._build_prompt(task, attempt),
            ],
            cwd=cwd,
            env=self._worker_env(task),
            log_path=log_path,
        )
        try:
            running.handle = self._launcher.launch(spec)
        except WorkerLaunchError as error:
            logger.warning("Failed to launch worker for %s: %s", task.summary(), error)
            self._apply(
                AttemptDispatched(
                    task_id=task.id,
                    attempt=attempt,
                    pid=None,
                    log_path=str(log_path),
                ),
            )
            self._completions.put(
                WorkerExit(
                    task_id=task.id,
                    attempt=attempt,
                    exit_code=error.exit_code,
                    log_path=log_path,
                    launch_error=str(error),
                ),
            )
            return

        logger.info(
            "Dispatched %s attempt %s/%s pid=%s",
            task.summary(),
            attempt,
            self.options.max_attempts,
            running.handle.pid,
        )
        self._apply(
            AttemptDispatched(
                task_id=task.id,
                attempt=attempt,
                pid=running.handle.pid,
                log_path=str(log_path),
            ),
        )

    def _build_prompt(self, task: Task, attempt: int) -> str:
        job_config = self.context.job_config
        plan_context = "\n\n".join(
            part
            for part in [
                extract_plan_context(self.context.plan_text, task),
                *job_config.prompt_suffixes(workstream_id=task.workstream_id, task_id=task.id),
            ]
            if part
        )
        return build_codex_prompt(
            task,
            PromptInputs(
                plan_path=self.context.plan_path,
                plan_context=plan_context,
                initiative_id=self.context.initiative_id,
                job_id=self.context.job_id,
                attempt=attempt,
                total_tasks=self._state.total_tasks,
                completed_tasks=self._state.completed,
            ),
        )

    def _worker_env(self, task: Task) -> dict[str, str]:
        return {
            **self.context.base_env,
            "ORGX_INITIATIVE_ID": self.context.initiative_id,
            "ORGX_TASK_ID": task.id,
            "ORGX_CORRELATION_ID": self.context.correlation_id,
            "ORGX_SOURCE_CLIENT": self.context.source_client,
            "ORGX_PLAN_FILE": str(self.context.plan_path),
            "ORGX_DISPATCH_JOB_ID": self.context.job_id,
        }

    def _drain_completions(self) -> None:
        while True:
            try:
                worker_exit = self._completions.get_nowait()
            except queue.Empty:
                return
            self._handle_exit(worker_exit)

    def _wait_for_completion(self, seconds: float) -> None:
        deadline = self._clock() + max(0.0, seconds)
        while not self._stop_requested:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            try:
                worker_exit = self._completions.get(timeout=min(_STOP_CHECK_SECONDS, remaining))
            except queue.Empty:
                continue
            self._handle_exit(worker_exit)
            return

    def _wait_seconds(self) -> float:
        now = self._clock()
        wait = self.options.poll_interval_seconds
        if self._pending and len(self._running) < self.options.concurrency:
            earliest = min(item.available_at for item in self._pending)
            wait = min(wait, max(0.0, earliest - now))
        if self._last_heartbeat_at is not None:
            next_heartbeat = self._last_heartbeat_at + self.options.heartbeat_seconds
            wait = min(wait, max(0.0, next_heartbeat - now))
        if self.options.attempt_timeout_seconds > 0:
            for running in self._running.values():
                if running.handle is None or running.handle.timed_out:
                    continue
                expires = running.handle.started_monotonic + self.options.attempt_timeout_seconds
                wait = min(wait, max(0.0, expires - now))
        return wait

    def _handle_exit(self, worker_exit: WorkerExit) -> None:
        running = self._running.get(worker_exit.task_id)
        if running is None or running.attempt != worker_exit.attempt:
            logger.warning(
                "Ignoring completion for unknown attempt %s#%s",
                worker_exit.task_id,
                worker_exit.attempt,
            )
            return
        del self._running[worker_exit.task_id]

        if worker_exit.succeeded:
            self._handle_success(running.task, worker_exit)
        else:
            self._handle_failure(running.task, worker_exit)

    def _handle_success(self, task: Task, worker_exit: WorkerExit) -> None:
        attempt = worker_exit.attempt
        self._apply(
            AttemptFinished(
                task_id=task.id,
                attempt=attempt,
                outcome=AttemptOutcome.DONE,
                exit_code=worker_exit.exit_code,
                log_path=str(worker_exit.log_path),
            ),
        )
        logger.info("Completed %s (attempt %s)", task.summary(), attempt)
        if self.options.auto_complete:
            self._update_task_status(
                task,
                status=TaskStatus.DONE,
                attempt=attempt,
                reason=f"Worker success from {self.context.job_id}",
                metadata={"event": "status_update", "to": "done", "exit_code": 0},
            )
        self.reporter.emit_safely(
            f"Completed {task.summary()} (attempt {attempt})",
            phase=PHASE_BY_EVENT["success"],
            progress_pct=self._progress_pct(),
            metadata={
                "event": "success",
                "task_id": task.id,
                "attempt": attempt,
                "exit_code": worker_exit.exit_code,
                "worker_log": str(worker_exit.log_path),
            },
        )

    def _handle_failure(self, task: Task, worker_exit: WorkerExit) -> None:
        attempt = worker_exit.attempt
        log_tail = read_log_tail(worker_exit.log_path)
        classification = classify_worker_failure(worker_exit, log_tail=log_tail)
        failure_details = {
            **classification.to_event_details(),
            "log_preview": log_preview(log_tail),
        }

        if attempt < self.options.max_attempts:
            delay = backoff_seconds(
                attempt,
                base_seconds=self.options.retry_base_seconds,
                max_seconds=self.options.retry_max_seconds,
            )
            self._pending.append(PendingItem(task=task, available_at=self._clock() + delay))
            next_available_at = (datetime.now(tz=UTC) + timedelta(seconds=delay)).isoformat()
            self._apply(
                AttemptFinished(
                    task_id=task.id,
                    attempt=attempt,
                    outcome=AttemptOutcome.RETRY_PENDING,
                    exit_code=worker_exit.exit_code,
                    log_path=str(worker_exit.log_path),
                    signal_name=worker_exit.signal_name,
                    failure_class=classification.failure_class.value,
                    next_available_at=next_available_at,
                ),
            )
            logger.warning(
                "Attempt %s of %s failed (exit %s, %s); retry in %.0fs",
                attempt,
                task.summary(),
                worker_exit.exit_code,
                classification.failure_class.value,
                delay,
            )
            self.reporter.emit_safely(
                f"Retry scheduled for {task.summary()} after non-zero exit "
                f"({worker_exit.exit_code}).",
                phase=PHASE_BY_EVENT["retry"],
                level="warn",
                progress_pct=self._progress_pct(),
                metadata={
                    "event": "retry",
                    "task_id": task.id,
                    "attempt": attempt,
                    "next_attempt": attempt + 1,
                    "available_at": next_available_at,
                    "exit_code": worker_exit.exit_code,
                    "worker_log": str(worker_exit.log_path),
                    **failure_details,
                },
            )
            return

        self._apply(
            AttemptFinished(
                task_id=task.id,
                attempt=attempt,
                outcome=AttemptOutcome.BLOCKED,
                exit_code=worker_exit.exit_code,
                log_path=str(worker_exit.log_path),
                signal_name=worker_exit.signal_name,
                failure_class=classification.failure_class.value,
            ),
        )
        logger.error(
            "Task %s blocked after %s attempts (exit %s, %s)",
            task.summary(),
            attempt,
            worker_exit.exit_code,
            classification.failure_class.value,
        )
        self._request_decision(task, worker_exit, classification.failure_class)
        self.reporter.emit_safely(
            f"Task blocked after {attempt} attempts: {task.summary()}.",
            phase=PHASE_BY_EVENT["failure"],
            level="error",
            progress_pct=self._progress_pct(),
            metadata={
                "event": "failed",
                "task_id": task.id,
                "attempt": attempt,
                "exit_code": worker_exit.exit_code,
                "signal": worker_exit.signal_name,
                "worker_log": str(worker_exit.log_path),
                **failure_details,
            },
            next_step="Review worker log and unblock before rerun.",
        )

    def _request_decision(
        self,
        task: Task,
        worker_exit: WorkerExit,
        failure_class: FailureClass,
    ) -> None:
        try:
            self.reporter.request_decision(
                task=task,
                attempt=worker_exit.attempt,
                exit_code=worker_exit.exit_code,
                log_path=worker_exit.log_path,
                failure_class=failure_class,
                mark_blocked=self.options.auto_complete,
            )
        except OrgxApiError as error:
            logger.warning("Decision request failed for %s: %s", task.summary(), error)
            return
        if self.options.auto_complete:
            self.tracker.set_task_status(task.id, TaskStatus.BLOCKED.value)
            self._sync_parent_rollups(task, worker_exit.attempt)

    def _update_task_status(
        self,
        task: Task,
        *,
        status: TaskStatus,
        attempt: int,
        reason: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            self.reporter.task_status(
                task_id=task.id,
                status=status,
                attempt=attempt,
                reason=reason,
                metadata=metadata,
            )
        except OrgxApiError as error:
            logger.warning(
                "Task status update failed (%s -> %s): %s",
                task.id,
                status.value,
                error,
            )
            return
        self.tracker.set_task_status(task.id, status.value)
        self._sync_parent_rollups(task, attempt)

    def _sync_parent_rollups(self, task: Task, attempt: int) -> None:
        milestone_change = self.tracker.milestone_change(task)
        if milestone_change is not None:
            try:
                self.reporter.milestone_status(
                    milestone_change,
                    milestone_name=self.context.milestone_names.get(milestone_change.parent_id),
                    trigger_task_id=task.id,
                    attempt=attempt,
                )
            except OrgxApiError as error:
                logger.warning(
                    "Milestone rollup update failed (%s): %s",
                    milestone_change.parent_id,
                    error,
                )
            else:
                self.tracker.acknowledge_milestone(
                    milestone_change.parent_id,
                    milestone_change.current,
                )
                self._apply(
                    RollupRecorded(
                        parent_kind="milestone",
                        parent_id=milestone_change.parent_id,
                        rollup=milestone_change.current,
                    ),
                )

        workstream_change = self.tracker.workstream_change(task)
        if workstream_change is not None:
            try:
                self.reporter.workstream_status(
                    workstream_change,
                    workstream_name=self.context.workstream_names.get(
                        workstream_change.parent_id,
                    ),
                    trigger_task_id=task.id,
                    attempt=attempt,
                )
            except OrgxApiError as error:
                logger.warning(
                    "Workstream rollup update failed (%s): %s",
                    workstream_change.parent_id,
                    error,
                )
            else:
                self.tracker.acknowledge_workstream(
                    workstream_change.parent_id,
                    workstream_change.current,
                )
                self._apply(
                    RollupRecorded(
                        parent_kind="workstream",
                        parent_id=workstream_change.parent_id,
                        rollup=workstream_change.current,
                    ),
                )

    def _maybe_heartbeat(self) -> None:
        now = self._clock()
        if (
            self._last_heartbeat_at is not None
            and now - self._last_heartbeat_at < self.options.heartbeat_seconds
        ):
            return
        self._last_heartbeat_at = now
        running_ids = sorted(self._running)
        state = self._state
        self.reporter.emit_safely(
            f"Heartbeat: {state.completed}/{state.total_tasks} completed, "
            f"{len(running_ids)} running, {len(self._pending)} queued, {state.failed} blocked.",
            phase=PHASE_BY_EVENT["heartbeat"],
            level="warn" if state.failed > 0 else "info",
            progress_pct=self._progress_pct(),
            metadata={
                "event": "heartbeat",
                "completed": state.completed,
                "total": state.total_tasks,
                "running": running_ids,
                "queued": len(self._pending),
                "blocked": state.failed,
            },
        )
        self._apply(HeartbeatRecorded())

    def _enforce_attempt_timeouts(self) -> None:
        timeout = self.options.attempt_timeout_seconds
        if timeout <= 0:
            return
        now = self._clock()
        for running in list(self._running.values()):
            handle = running.handle
            if handle is None or handle.timed_out:
                continue
            if now - handle.started_monotonic < timeout:
                continue
            logger.warning(
                "Attempt %s of %s exceeded %.0fs; terminating pid=%s",
                running.attempt,
                running.task.summary(),
                timeout,
                handle.pid,
            )
            handle.terminate(timed_out=True)

    def _stop_running_workers(self) -> None:
        # Attempts that already exited keep their real outcome.
        self._drain_completions()
        logger.warning(
            "Stop requested (%s); terminating %s running worker(s), skipping %s queued task(s)",
            self._stop_signal_name or "unknown",
            len(self._running),
            len(self._pending),
        )
        launched = [running for running in self._running.values() if running.handle is not None]
        for running in launched:
            running.handle.terminate()
        # Let pump threads write their exit banners before the job ends.
        deadline = time.monotonic() + _STOP_DRAIN_SECONDS
        for _ in launched:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                worker_exit = self._completions.get(timeout=remaining)
            except queue.Empty:
                break
            if worker_exit.succeeded:
                self._handle_exit(worker_exit)

        skipped = [*self._running, *(item.task.id for item in self._pending)]
        self._running.clear()
        self._pending.clear()
        self._apply(TasksSkipped(task_ids=skipped))
        self.reporter.emit_safely(
            f"Dispatch job stopped ({self._stop_signal_name or 'unknown'}); "
            f"{len(skipped)} task(s) skipped.",
            phase=PHASE_BY_EVENT["failure"],
            level="warn",
            progress_pct=self._progress_pct(),
            metadata={"event": "stopped", "skipped": skipped, "signal": self._stop_signal_name},
        )

    def _progress_pct(self) -> int:
        return to_percent(self._state.completed, self._state.total_tasks)

    def _apply(self, event: JobEvent) -> None:
        self._state = self.persister.persist(reduce_job_state(self._state, event))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
