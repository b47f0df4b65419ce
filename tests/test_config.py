from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from orgx_dispatch.config import (
    ConfigurationError,
    DispatchSettings,
    HttpSettings,
    JobConfig,
    pick_string,
    split_csv,
)

pytestmark = [
    allure.epic("Codex Dispatch"),
    allure.feature("Configuration"),
]


def test_from_env_reads_orgx_variables(monkeypatch) -> None:
    monkeypatch.setenv("ORGX_API_KEY", "  oxk_secret  ")
    monkeypatch.setenv("ORGX_BASE_URL", "https://orgx.example.com/")
    monkeypatch.setenv("ORGX_INITIATIVE_ID", "init-1")
    monkeypatch.setenv("ORGX_CODEX_BIN", "/opt/codex")
    monkeypatch.setenv("ORGX_JOB_LOGS_DIR", "/var/jobs")
    monkeypatch.setenv("ORGX_HTTP_MAX_RETRIES", "5")
    monkeypatch.delenv("ORGX_USER_ID", raising=False)

    settings = DispatchSettings.from_env()

    assert settings.api_key == "oxk_secret"
    assert settings.base_url == "https://orgx.example.com"
    assert settings.initiative_id == "init-1"
    assert settings.codex_bin == "/opt/codex"
    assert settings.logs_root == Path("/var/jobs")
    assert settings.user_id is None
    assert settings.http.max_retries == 5


def test_from_env_defaults(monkeypatch) -> None:
    for name in ("ORGX_BASE_URL", "ORGX_CODEX_BIN", "ORGX_JOB_LOGS_DIR", "ORGX_SOURCE_CLIENT"):
        monkeypatch.delenv(name, raising=False)

    settings = DispatchSettings.from_env()

    assert settings.base_url == "https://www.useorgx.com"
    assert settings.codex_bin == "codex"
    assert settings.logs_root == Path(".orgx-codex-jobs")
    assert settings.source_client == "codex"


@pytest.mark.parametrize(
    ("name", "value"),
    [("ORGX_HTTP_TIMEOUT_SECONDS", "soon"), ("ORGX_HTTP_MAX_RETRIES", "2.5")],
)
def test_from_env_rejects_malformed_numbers(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=f"Invalid {name} value"):
        DispatchSettings.from_env()


def test_validate_for_dispatch_requires_api_key() -> None:
    with pytest.raises(ConfigurationError, match="ORGX_API_KEY is required"):
        DispatchSettings(initiative_id="init-1").validate_for_dispatch()


def test_validate_for_dispatch_requires_initiative() -> None:
    with pytest.raises(ValueError, match="initiative_id is required"):
        DispatchSettings(api_key="key").validate_for_dispatch()


def test_validate_for_dispatch_rejects_invalid_base_url() -> None:
    settings = DispatchSettings(api_key="key", initiative_id="init-1", base_url="ftp://orgx")

    with pytest.raises(ConfigurationError, match="Invalid ORGX_BASE_URL"):
        settings.validate_for_dispatch()


def test_validate_for_dispatch_rejects_bad_http_settings() -> None:
    settings = DispatchSettings(
        api_key="key",
        initiative_id="init-1",
        http=HttpSettings(timeout_seconds=0),
    )

    with pytest.raises(ConfigurationError, match="ORGX_HTTP_TIMEOUT_SECONDS"):
        settings.validate_for_dispatch()


def test_job_config_load_reads_overrides(tmp_path: Path) -> None:
    path = tmp_path / "job.json"
    path.write_text(
        json.dumps(
            {
                "defaultCwd": str(tmp_path),
                "workstreamCwds": {"w-1": str(tmp_path / "repo"), "w-2": "  "},
                "workstreamPrompt": {"w-1": "Use the staging database."},
                "taskPrompt": {"t-1": "Keep the public API stable."},
                "defaultWorkstreamIds": ["w-1", "", "w-3"],
                "planFile": "docs/plan.md",
            },
        ),
        "utf-8",
    )

    config = JobConfig.load(path)

    assert config.workstream_cwds == {"w-1": str(tmp_path / "repo")}
    assert config.default_workstream_ids == ("w-1", "w-3")
    assert config.plan_file == "docs/plan.md"
    assert config.resolve_cwd("w-1") == (tmp_path / "repo").resolve()
    assert config.resolve_cwd("w-9") == tmp_path.resolve()
    assert config.prompt_suffixes(workstream_id="w-1", task_id="t-1") == [
        "Use the staging database.",
        "Keep the public API stable.",
    ]
    assert config.prompt_suffixes(workstream_id=None, task_id="t-2") == []


def test_job_config_without_file_uses_current_directory() -> None:
    config = JobConfig.load(None)

    assert config.resolve_cwd("w-1") == Path.cwd()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "not valid JSON"),
        ("[1, 2]", "must contain a JSON object"),
        ('{"workstreamCwds": ["a"]}', "must be an object"),
        ('{"defaultWorkstreamIds": "w-1"}', "must be a list"),
    ],
)
def test_job_config_load_rejects_malformed_files(
    tmp_path: Path,
    content: str,
    message: str,
) -> None:
    path = tmp_path / "job.json"
    path.write_text(content, "utf-8")

    with pytest.raises(ConfigurationError, match=message):
        JobConfig.load(path)


def test_job_config_load_rejects_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Config file not found"):
        JobConfig.load(tmp_path / "missing.json")


def test_string_helpers() -> None:
    assert pick_string(None, "  ", 3, " plan.md ") == "plan.md"
    assert pick_string(None) is None
    assert split_csv(" w-1, ,w-2 ") == ("w-1", "w-2")
    assert split_csv(None) == ()
