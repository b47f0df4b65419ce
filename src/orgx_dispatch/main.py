"""CLI entrypoint for orgx-dispatch."""

import logging
import sys
from pathlib import Path

import rich_click as click

from orgx_dispatch import __version__
from orgx_dispatch.config import ConfigurationError
from orgx_dispatch.dispatch.controllers import (
    DispatchCliController,
    DispatchInspectCommand,
    DispatchRunCommand,
)
from orgx_dispatch.orgx.client import OrgxApiError

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="orgx-dispatch")
@click.option(
    "--log_level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for stderr diagnostics.",
)
def orgx_dispatch(log_level: str) -> None:
    """Dispatch OrgX initiative tasks to local codex workers.

    Requires `ORGX_API_KEY` in the environment.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)


@orgx_dispatch.command("run")
@click.option("--initiative_id", default=None, help="OrgX initiative id (or ORGX_INITIATIVE_ID).")
@click.option(
    "--plan_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Original plan document (or config planFile / ORGX_PLAN_FILE).",
)
@click.option("--workstream_ids", default=None, help="CSV of workstream ids to dispatch.")
@click.option("--task_ids", default=None, help="CSV of task ids to dispatch.")
@click.option(
    "--all_workstreams",
    type=click.BOOL,
    is_flag=False,
    flag_value=True,
    default=False,
    show_default=True,
    help="Ignore workstream selection and config defaults.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=4,
    show_default=True,
    help="Parallel codex workers.",
)
@click.option(
    "--max_attempts",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Max attempts per task.",
)
@click.option(
    "--poll_interval_sec",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Upper bound on the wait between loop iterations.",
)
@click.option(
    "--heartbeat_sec",
    type=click.IntRange(min=5),
    default=45,
    show_default=True,
    help="Heartbeat activity interval.",
)
@click.option(
    "--retry_backoff_sec",
    type=click.FloatRange(min=0),
    default=15.0,
    show_default=True,
    help="Base retry delay, doubled per attempt and capped at 180s.",
)
@click.option(
    "--attempt_timeout_sec",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Terminate attempts running longer than this; 0 disables.",
)
@click.option(
    "--state_file",
    type=click.Path(path_type=Path),
    default=None,
    help="Job state JSON path (default {logs_dir}/{job_id}/job-state.json).",
)
@click.option(
    "--logs_dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Logs root (or ORGX_JOB_LOGS_DIR; default .orgx-codex-jobs).",
)
@click.option(
    "--config_file",
    type=click.Path(path_type=Path),
    default=None,
    help="JSON job config with cwd and prompt overrides.",
)
@click.option("--codex_bin", default=None, help="Codex executable (or ORGX_CODEX_BIN).")
@click.option("--codex_args", default=None, help='Codex arguments (default "--full-auto").')
@click.option(
    "--dry_run",
    type=click.BOOL,
    is_flag=False,
    flag_value=True,
    default=False,
    show_default=True,
    help="Do not execute codex or mutate OrgX.",
)
@click.option(
    "--auto_complete",
    type=click.BOOL,
    is_flag=False,
    flag_value=True,
    default=True,
    show_default=True,
    help="Push task status and rollup updates to OrgX.",
)
@click.option("--max_tasks", type=click.IntRange(min=0), default=None, help="Cap queue size.")
@click.option("--job_id", default=None, help="Job id (default codex-job-{epoch_ms}).")
@click.option("--base_url", default=None, help="OrgX base URL (or ORGX_BASE_URL).")
@click.option("--user_id", default=None, help="OrgX user id (or ORGX_USER_ID).")
@click.option("--source_client", default=None, help="Reporting source client (default codex).")
@click.option("--correlation_id", default=None, help="Reporting correlation id.")
@click.pass_context
def dispatch_run(  # noqa: PLR0913
    ctx: click.Context,
    initiative_id: str | None,
    plan_file: Path | None,
    workstream_ids: str | None,
    task_ids: str | None,
    all_workstreams: bool,
    concurrency: int,
    max_attempts: int,
    poll_interval_sec: int,
    heartbeat_sec: int,
    retry_backoff_sec: float,
    attempt_timeout_sec: float,
    state_file: Path | None,
    logs_dir: Path | None,
    config_file: Path | None,
    codex_bin: str | None,
    codex_args: str | None,
    dry_run: bool,
    auto_complete: bool,
    max_tasks: int | None,
    job_id: str | None,
    base_url: str | None,
    user_id: str | None,
    source_client: str | None,
    correlation_id: str | None,
) -> None:
    """Run one codex dispatch job for an initiative.

    Exit code `0` when every task completes, `2` when any task ends blocked.
    """

    try:
        result = DISPATCH_CONTROLLER.run(
            DispatchRunCommand(
                initiative_id=initiative_id,
                plan_file=plan_file,
                workstream_ids=workstream_ids,
                task_ids=task_ids,
                all_workstreams=all_workstreams,
                concurrency=concurrency,
                max_attempts=max_attempts,
                poll_interval_sec=float(poll_interval_sec),
                heartbeat_sec=float(heartbeat_sec),
                retry_backoff_sec=retry_backoff_sec,
                attempt_timeout_sec=attempt_timeout_sec,
                state_file=state_file,
                logs_dir=logs_dir,
                config_file=config_file,
                codex_bin=codex_bin,
                codex_args=codex_args,
                dry_run=dry_run,
                auto_complete=auto_complete,
                max_tasks=max_tasks,
                job_id=job_id,
                base_url=base_url,
                user_id=user_id,
                source_client=source_client,
                correlation_id=correlation_id,
            ),
        )
    except (ConfigurationError, OrgxApiError) as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if result.exit_code != 0:
        ctx.exit(result.exit_code)


@orgx_dispatch.command("inspect")
@click.option(
    "--state_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Job state JSON written by a previous run.",
)
def dispatch_inspect(state_file: Path) -> None:
    """Summarize a persisted job state (read-only)."""

    try:
        lines = DISPATCH_CONTROLLER.inspect(DispatchInspectCommand(state_file=state_file))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    orgx_dispatch()
