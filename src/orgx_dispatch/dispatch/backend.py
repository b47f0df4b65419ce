"""Subprocess launcher for codex worker attempts."""

from __future__ import annotations

import logging
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from orgx_dispatch.dispatch.models import WorkerExit

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
LAUNCH_ERROR_EXIT_CODE = -1
_LOG_TAIL_BYTES = 8_192
_BANNER_PREFIX = "==== "


class WorkerLaunchError(RuntimeError):
    """Worker spawn error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient

    @property
    def exit_code(self) -> int:
        return LAUNCH_ERROR_EXIT_CODE if self.transient else NOT_FOUND_EXIT_CODE


@dataclass(slots=True)
class WorkerSpec:
    """Everything needed to start one attempt of one task."""

    task_id: str
    attempt: int
    task_summary: str
    argv: list[str]
    cwd: Path
    env: dict[str, str]
    log_path: Path


@dataclass(slots=True)
class WorkerHandle:
    """A running worker process owned by the dispatcher."""

    spec: WorkerSpec
    process: subprocess.Popen[bytes]
    started_at: datetime
    started_monotonic: float
    timed_out: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    def terminate(self, *, timed_out: bool = False) -> None:
        """Stop the process; the pump thread still reports its exit."""

        if timed_out:
            self.timed_out = True
        _terminate_process(self.process)


class CodexWorkerLauncher:
    """Start worker processes and report each exit on the completion channel.

    A daemon pump thread per process waits for it to exit, appends the exit
    banner to the attempt log and pushes exactly one ``WorkerExit``.
    """

    def __init__(self, completions: queue.Queue[WorkerExit]) -> None:
        self.completions = completions

    def launch(self, spec: WorkerSpec) -> WorkerHandle:
        spec.log_path.parent.mkdir(parents=True, exist_ok=True)
        started_at = datetime.now(tz=UTC)
        try:
            with spec.log_path.open("ab") as log_handle:
                log_handle.write(
                    f"\n==== {started_at.isoformat()} :: {spec.task_summary} ====\n".encode(),
                )
                log_handle.flush()
                process = subprocess.Popen(  # noqa: S603
                    spec.argv,
                    cwd=spec.cwd,
                    env=spec.env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                )
        except FileNotFoundError as error:
            raise WorkerLaunchError(
                f"Worker command not found: {spec.argv[0] if spec.argv else '<empty>'}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerLaunchError(
                f"Worker failed to start: {error}",
                transient=True,
            ) from error

        handle = WorkerHandle(
            spec=spec,
            process=process,
            started_at=started_at,
            started_monotonic=time.monotonic(),
        )
        thread = threading.Thread(
            target=self._pump,
            args=(handle,),
            name=f"worker-{spec.task_id}-{spec.attempt}",
            daemon=True,
        )
        thread.start()
        logger.debug(
            "Started worker pid=%s for task %s attempt %s",
            process.pid,
            spec.task_id,
            spec.attempt,
        )
        return handle

    def _pump(self, handle: WorkerHandle) -> None:
        returncode = handle.process.wait()
        signal_name: str | None = None
        exit_code = returncode
        if returncode < 0:
            signal_name = _signal_name(-returncode)
            exit_code = LAUNCH_ERROR_EXIT_CODE
        if handle.timed_out:
            exit_code = TIMEOUT_EXIT_CODE

        _append_exit_banner(
            handle.spec.log_path,
            exit_code=exit_code,
            signal_name=signal_name,
            timed_out=handle.timed_out,
        )
        self.completions.put(
            WorkerExit(
                task_id=handle.spec.task_id,
                attempt=handle.spec.attempt,
                exit_code=exit_code,
                log_path=handle.spec.log_path,
                signal_name=signal_name,
                timed_out=handle.timed_out,
            ),
        )


def read_log_tail(path: Path, *, max_bytes: int = _LOG_TAIL_BYTES) -> str:
    """Return worker output from the last ``max_bytes`` of a log, banners excluded."""

    try:
        with path.open("rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - max_bytes))
            text = handle.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(line for line in text.splitlines() if not line.startswith(_BANNER_PREFIX))


def _append_exit_banner(
    path: Path,
    *,
    exit_code: int,
    signal_name: str | None,
    timed_out: bool,
) -> None:
    suffix = ""
    if signal_name:
        suffix += f" signal={signal_name}"
    if timed_out:
        suffix += " timed_out=true"
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(
                f"\n==== exit {exit_code}{suffix} at {datetime.now(tz=UTC).isoformat()} ====\n",
            )
    except OSError as error:
        logger.warning("Failed to append exit banner to %s: %s", path, error)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
