from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from zen.constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_FUNCTION_NAMES,
    DEFAULT_GATEWAY_URL,
    DEFAULT_HTML_TEMPLATE,
    DEFAULT_INVOCATION_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_ROUNDS,
    DEFAULT_PORT,
    DEFAULT_WINDOW_SIZE,
    DEFAULT_WORKER_IMAGE,
)


class WindowSize(BaseModel):
    width: int = DEFAULT_WINDOW_SIZE["width"]
    height: int = DEFAULT_WINDOW_SIZE["height"]

    @field_validator("width", "height")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Window dimensions must be positive integers.")
        return value


class ZenConfig(BaseModel):
    """Settings for one test run, loaded from a JSON config file."""

    app_root: Path = Field(default_factory=Path.cwd)
    port: int = DEFAULT_PORT
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tmp_dir: Optional[Path] = None
    function_names: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FUNCTION_NAMES))
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    max_rounds: int = Field(default=DEFAULT_MAX_ROUNDS, ge=1)
    invoker: Literal["local", "docker", "http"] = "local"
    worker_image: str = DEFAULT_WORKER_IMAGE
    worker_url: Optional[str] = None
    gateway_url: str = DEFAULT_GATEWAY_URL
    invocation_timeout_seconds: int = Field(default=DEFAULT_INVOCATION_TIMEOUT_SECONDS, gt=0)
    html_template: str = DEFAULT_HTML_TEMPLATE
    test_dependencies: List[str] = Field(default_factory=list)
    asset_root: Optional[Path] = None
    chrome: WindowSize = Field(default_factory=WindowSize)
    skip_hot_reload: bool = False
    fail_on_exceptions: bool = False

    @model_validator(mode="after")
    def resolve_paths(self) -> "ZenConfig":
        self.app_root = self.app_root.resolve()
        if self.tmp_dir is None:
            self.tmp_dir = self.app_root / ".zen"
        elif not self.tmp_dir.is_absolute():
            self.tmp_dir = self.app_root / self.tmp_dir
        if self.asset_root is None:
            self.asset_root = self.tmp_dir / "assets"
        elif not self.asset_root.is_absolute():
            self.asset_root = self.app_root / self.asset_root
        for key, default in DEFAULT_FUNCTION_NAMES.items():
            self.function_names.setdefault(key, default)
        return self

    @property
    def work_tests_function(self) -> str:
        return self.function_names["workTests"]

    @property
    def list_tests_function(self) -> str:
        return self.function_names["listTests"]


def load_config(path: Path | str) -> ZenConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    raw.setdefault("app_root", str(config_path.resolve().parent))
    config = ZenConfig.model_validate(raw)
    config.tmp_dir.mkdir(parents=True, exist_ok=True)
    return config


@dataclass
class WorkerSettings:
    """Worker-side settings, read from the container environment."""

    gateway_url: str = DEFAULT_GATEWAY_URL
    time_budget_ms: int = DEFAULT_INVOCATION_TIMEOUT_SECONDS * 1000
    log_stream_name: str = "local"
    window_width: int = DEFAULT_WINDOW_SIZE["width"]
    window_height: int = DEFAULT_WINDOW_SIZE["height"]
    skip_hot_reload: bool = False
    fail_on_exceptions: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "WorkerSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        try:
            budget = int(env.get("ZEN_TIME_BUDGET_MS", defaults.time_budget_ms))
        except (TypeError, ValueError):
            budget = defaults.time_budget_ms
        return cls(
            gateway_url=env.get("ZEN_GATEWAY_URL", defaults.gateway_url).rstrip("/"),
            time_budget_ms=budget,
            log_stream_name=env.get("ZEN_LOG_STREAM", defaults.log_stream_name),
            window_width=int(env.get("ZEN_WINDOW_WIDTH", defaults.window_width)),
            window_height=int(env.get("ZEN_WINDOW_HEIGHT", defaults.window_height)),
            skip_hot_reload=env.get("ZEN_SKIP_HOT_RELOAD", "") == "1",
            fail_on_exceptions=env.get("ZEN_FAIL_ON_EXCEPTIONS", "") == "1",
        )

    @classmethod
    def from_config(cls, config: ZenConfig, log_stream_name: str = "local") -> "WorkerSettings":
        return cls(
            gateway_url=config.gateway_url.rstrip("/"),
            time_budget_ms=config.invocation_timeout_seconds * 1000,
            log_stream_name=log_stream_name,
            window_width=config.chrome.width,
            window_height=config.chrome.height,
            skip_hot_reload=config.skip_hot_reload,
            fail_on_exceptions=config.fail_on_exceptions,
        )

    def to_env(self) -> Dict[str, str]:
        return {
            "ZEN_GATEWAY_URL": self.gateway_url,
            "ZEN_TIME_BUDGET_MS": str(self.time_budget_ms),
            "ZEN_LOG_STREAM": self.log_stream_name,
            "ZEN_WINDOW_WIDTH": str(self.window_width),
            "ZEN_WINDOW_HEIGHT": str(self.window_height),
            "ZEN_SKIP_HOT_RELOAD": "1" if self.skip_hot_reload else "0",
            "ZEN_FAIL_ON_EXCEPTIONS": "1" if self.fail_on_exceptions else "0",
        }
