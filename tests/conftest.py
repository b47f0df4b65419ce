"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from orgx_dispatch.dispatch.dispatcher import DispatchContext, Dispatcher, DispatchOptions
from orgx_dispatch.dispatch.models import Task
from orgx_dispatch.dispatch.reporter import Reporter
from orgx_dispatch.dispatch.rollups import RollupTracker
from orgx_dispatch.dispatch.state import JobState, JobStatePersister
from orgx_dispatch.dispatch.task_queue import build_task_queue
from orgx_dispatch.orgx.client import OrgxApiError

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

PLAN_TEXT = """\
# Launch plan

## Workstream: Platform

Harden the dispatcher and make rollups visible on the dashboard.

### Milestone: Reliable dispatch

- Ship retry handling for codex workers.
- Persist job state for every transition.
"""


def echo_worker_args(*extra: str) -> list[str]:
    """Codex args that run the local echo worker with ``sys.executable``."""

    return ["-m", "orgx_dispatch.dispatch.echo_worker", *extra]


def worker_env() -> dict[str, str]:
    existing = os.environ.get("PYTHONPATH", "")
    return {
        **os.environ,
        "PYTHONPATH": os.pathsep.join(part for part in (str(SRC_DIR), existing) if part),
    }


class RecordingClient:
    """In-memory stand-in for ``OrgxClient`` that records every call."""

    def __init__(
        self,
        *,
        entities: dict[str, list[dict[str, Any]]] | None = None,
        fail_changesets: bool = False,
        fail_activity: bool = False,
    ) -> None:
        self.entities = entities or {}
        self.fail_changesets = fail_changesets
        self.fail_activity = fail_activity
        self.activities: list[dict[str, Any]] = []
        self.changesets: list[dict[str, Any]] = []
        self.entity_updates: list[tuple[str, str, dict[str, Any]]] = []
        self.list_calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def list_entities(self, entity_type: str, **filters: Any) -> list[dict[str, Any]]:
        self.list_calls.append((entity_type, filters))
        return [dict(row) for row in self.entities.get(entity_type, [])]

    def emit_activity(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.fail_activity:
            raise OrgxApiError("activity down", status_code=503)
        self.activities.append(payload)
        return {"ok": True, "run_id": "run-1"}

    def apply_changeset(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.fail_changesets:
            raise OrgxApiError("changesets down", status_code=500)
        self.changesets.append(payload)
        return {"ok": True, "run_id": "run-1", "applied_count": len(payload["operations"])}

    def update_entity(
        self,
        entity_type: str,
        entity_id: str,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        self.entity_updates.append((entity_type, entity_id, updates))
        return {"type": entity_type, "id": entity_id, **updates}

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> RecordingClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def operations(self) -> list[dict[str, Any]]:
        return [operation for changeset in self.changesets for operation in changeset["operations"]]

    def events(self, name: str) -> list[dict[str, Any]]:
        return [
            activity
            for activity in self.activities
            if activity["metadata"].get("event") == name
        ]


@pytest.fixture()
def plan_file(tmp_path: Path) -> Path:
    path = tmp_path / "plan.md"
    path.write_text(PLAN_TEXT, "utf-8")
    return path


@pytest.fixture()
def recording_client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture()
def dispatcher_factory(tmp_path: Path, plan_file: Path, recording_client: RecordingClient):
    """Build a dispatcher over the echo worker with fast loop settings."""

    def _build(  # noqa: PLR0913
        tasks: list[Task],
        *,
        codex_args: list[str] | None = None,
        codex_bin: str = sys.executable,
        options: DispatchOptions | None = None,
        all_tasks: list[Task] | None = None,
        client: RecordingClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Dispatcher:
        client = client or recording_client
        options = options or DispatchOptions(
            concurrency=1,
            max_attempts=2,
            poll_interval_seconds=0.05,
            heartbeat_seconds=60,
            retry_base_seconds=0,
        )
        queue = build_task_queue(tasks)
        persister = JobStatePersister(tmp_path / "logs" / "job-1" / "job-state.json")
        state = JobState(
            job_id="job-1",
            initiative_id="init-1",
            plan_path=str(plan_file),
            plan_hash="abc123",
            total_tasks=len(queue),
        )
        reporter = Reporter(
            client=client,
            initiative_id="init-1",
            source_client="codex",
            correlation_id="corr-1",
            plan_path=plan_file,
            plan_hash="abc123",
            job_id="job-1",
            dry_run=options.dry_run,
        )
        return Dispatcher(
            tasks=queue,
            tracker=RollupTracker(tasks=all_tasks or tasks, queued=queue),
            reporter=reporter,
            persister=persister,
            state=persister.persist(state),
            context=DispatchContext(
                job_id="job-1",
                initiative_id="init-1",
                correlation_id="corr-1",
                source_client="codex",
                plan_path=plan_file,
                plan_text=PLAN_TEXT,
                logs_dir=tmp_path / "logs" / "job-1",
                codex_bin=codex_bin,
                codex_args=codex_args if codex_args is not None else echo_worker_args(),
                base_env=worker_env(),
            ),
            options=options,
            clock=clock,
        )

    return _build


@pytest.fixture()
def echo_args():
    """Callable building codex args for the echo worker."""

    return echo_worker_args


@pytest.fixture()
def client_factory():
    return RecordingClient


@pytest.fixture()
def worker_pythonpath(monkeypatch) -> None:
    """Make ``orgx_dispatch`` importable by spawned worker processes."""

    monkeypatch.setenv("PYTHONPATH", worker_env()["PYTHONPATH"])
