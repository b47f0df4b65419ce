"""Runtime configuration for the codex dispatch job."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar
from urllib.parse import urlparse

_Number = TypeVar("_Number", int, float)

DEFAULT_BASE_URL = "https://www.useorgx.com"
DEFAULT_LOGS_ROOT = ".orgx-codex-jobs"
DEFAULT_CODEX_BIN = "codex"
DEFAULT_SOURCE_CLIENT = "codex"


class ConfigurationError(ValueError):
    """Raised before dispatch when required configuration is missing or invalid."""


@dataclass(slots=True)
class HttpSettings:
    """OrgX HTTP client settings."""

    timeout_seconds: float = 30.0
    max_retries: int = 2


@dataclass(slots=True)
class DispatchSettings:
    """Environment-level settings; CLI flags take precedence over these."""

    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    user_id: str | None = None
    initiative_id: str | None = None
    plan_file: str | None = None
    codex_bin: str = DEFAULT_CODEX_BIN
    logs_root: Path = Path(DEFAULT_LOGS_ROOT)
    source_client: str = DEFAULT_SOURCE_CLIENT
    correlation_id: str | None = None
    http: HttpSettings = field(default_factory=HttpSettings)

    @classmethod
    def from_env(cls) -> DispatchSettings:
        """Load settings from ORGX_* environment variables."""

        return cls(
            api_key=os.getenv("ORGX_API_KEY", "").strip(),
            base_url=_normalize_base_url(os.getenv("ORGX_BASE_URL", "")),
            user_id=_optional_env("ORGX_USER_ID"),
            initiative_id=_optional_env("ORGX_INITIATIVE_ID"),
            plan_file=_optional_env("ORGX_PLAN_FILE"),
            codex_bin=_optional_env("ORGX_CODEX_BIN") or DEFAULT_CODEX_BIN,
            logs_root=Path(_optional_env("ORGX_JOB_LOGS_DIR") or DEFAULT_LOGS_ROOT),
            source_client=_optional_env("ORGX_SOURCE_CLIENT") or DEFAULT_SOURCE_CLIENT,
            correlation_id=_optional_env("ORGX_CORRELATION_ID"),
            http=HttpSettings(
                timeout_seconds=_numeric_env("ORGX_HTTP_TIMEOUT_SECONDS", "30", float),
                max_retries=_numeric_env("ORGX_HTTP_MAX_RETRIES", "2", int),
            ),
        )

    def validate_for_dispatch(self) -> None:
        """Raise configuration error if credentials or the initiative are missing."""

        if not self.api_key:
            raise ConfigurationError("ORGX_API_KEY is required.")
        if not self.initiative_id:
            raise ConfigurationError("initiative_id is required (arg or ORGX_INITIATIVE_ID).")
        parsed = urlparse(self.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigurationError(
                f"Invalid ORGX_BASE_URL: {self.base_url!r}. "
                "Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.http.timeout_seconds <= 0:
            raise ConfigurationError("ORGX_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.http.max_retries < 0:
            raise ConfigurationError("ORGX_HTTP_MAX_RETRIES must be >= 0.")


@dataclass(slots=True)
class JobConfig:
    """Per-job overrides loaded from the ``--config_file`` JSON document.

    Recognized keys: ``defaultCwd``, ``workstreamCwds``, ``workstreamPrompt``,
    ``taskPrompt``, ``defaultWorkstreamIds`` and ``planFile``.
    """

    default_cwd: str | None = None
    workstream_cwds: dict[str, str] = field(default_factory=dict)
    workstream_prompt: dict[str, str] = field(default_factory=dict)
    task_prompt: dict[str, str] = field(default_factory=dict)
    default_workstream_ids: tuple[str, ...] = ()
    plan_file: str | None = None

    @classmethod
    def load(cls, path: Path | None) -> JobConfig:
        if path is None:
            return cls()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            raw = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ConfigurationError(f"Config file is not valid JSON: {path} ({error})") from error
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file must contain a JSON object: {path}")
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: dict[str, object]) -> JobConfig:
        return cls(
            default_cwd=_pick_string(raw.get("defaultCwd")),
            workstream_cwds=_string_map(raw.get("workstreamCwds"), key="workstreamCwds"),
            workstream_prompt=_string_map(raw.get("workstreamPrompt"), key="workstreamPrompt"),
            task_prompt=_string_map(raw.get("taskPrompt"), key="taskPrompt"),
            default_workstream_ids=_string_tuple(
                raw.get("defaultWorkstreamIds"),
                key="defaultWorkstreamIds",
            ),
            plan_file=_pick_string(raw.get("planFile")),
        )

    def resolve_cwd(self, workstream_id: str | None) -> Path:
        """Working directory for a task: workstream override, then default, then cwd."""

        override = self.workstream_cwds.get(workstream_id or "")
        if override:
            return Path(override).expanduser().resolve()
        if self.default_cwd:
            return Path(self.default_cwd).expanduser().resolve()
        return Path.cwd()

    def prompt_suffixes(self, *, workstream_id: str | None, task_id: str) -> list[str]:
        suffixes = [
            _pick_string(self.workstream_prompt.get(workstream_id or "")),
            _pick_string(self.task_prompt.get(task_id)),
        ]
        return [suffix for suffix in suffixes if suffix]


def pick_string(*values: object) -> str | None:
    """Return the first non-blank string among ``values``, stripped."""

    for value in values:
        picked = _pick_string(value)
        if picked:
            return picked
    return None


def split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _pick_string(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _optional_env(name: str) -> str | None:
    return _pick_string(os.getenv(name))


def _numeric_env(name: str, default: str, parse: Callable[[str], _Number]) -> _Number:
    raw = os.getenv(name, default)
    try:
        return parse(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid {name} value: {raw!r}") from error


def _normalize_base_url(value: str) -> str:
    stripped = value.strip() or DEFAULT_BASE_URL
    return stripped.rstrip("/")


def _string_map(value: object, *, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config key {key!r} must be an object.")
    result: dict[str, str] = {}
    for map_key, map_value in value.items():
        picked = _pick_string(map_value)
        if picked:
            result[str(map_key)] = picked
    return result


def _string_tuple(value: object, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigurationError(f"Config key {key!r} must be a list of ids.")
    picked = (_pick_string(item) for item in value)
    return tuple(item for item in picked if item)
