from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from zen.config import WorkerSettings, ZenConfig, load_config


@pytest.mark.unit
def test_load_config_resolves_paths_relative_to_file(tmp_path: Path) -> None:
    config_path = tmp_path / "zen.json"
    config_path.write_text(
        json.dumps({"concurrency": 20, "function_names": {"workTests": "ci-workTests"}}),
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.app_root == tmp_path.resolve()
    assert config.tmp_dir == tmp_path.resolve() / ".zen"
    assert config.tmp_dir.is_dir()
    assert config.asset_root == config.tmp_dir / "assets"
    assert config.concurrency == 20
    assert config.work_tests_function == "ci-workTests"
    assert config.list_tests_function == "zen-listTests"
    assert config.session_id


@pytest.mark.unit
def test_config_rejects_bad_values(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        ZenConfig(app_root=tmp_path, concurrency=0)
    with pytest.raises(ValidationError):
        ZenConfig(app_root=tmp_path, chrome={"width": 0, "height": 600})
    with pytest.raises(ValidationError):
        ZenConfig(app_root=tmp_path, invoker="lambda")


@pytest.mark.unit
def test_worker_settings_travel_through_environment(tmp_path: Path) -> None:
    config = ZenConfig(
        app_root=tmp_path,
        gateway_url="http://gateway:3100/",
        invocation_timeout_seconds=90,
        chrome={"width": 1280, "height": 720},
        fail_on_exceptions=True,
    )
    settings = WorkerSettings.from_config(config, log_stream_name="zen-worker-1")

    restored = WorkerSettings.from_env(settings.to_env())

    assert restored == settings
    assert restored.gateway_url == "http://gateway:3100"
    assert restored.time_budget_ms == 90_000


@pytest.mark.unit
def test_worker_settings_tolerate_bad_budget() -> None:
    settings = WorkerSettings.from_env({"ZEN_TIME_BUDGET_MS": "soon"})
    assert settings.time_budget_ms == WorkerSettings().time_budget_ms
