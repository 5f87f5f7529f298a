from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class SessionState(str, Enum):
    starting = "starting"
    idle = "idle"
    loading = "loading"
    running = "running"
    hot_reload = "hotReload"
    bad_code = "badCode"


class RequestKind(str, Enum):
    test = "test"
    list_names = "list_names"


class TestResult(BaseModel):
    """Outcome of one attempt of one test."""

    __test__ = False

    full_name: str
    error: Optional[str] = None
    stack: Optional[str] = None
    time_ms: int = 0
    attempts: int = 1
    log_stream: Optional[str] = None
    log: Optional[Dict[str, List[str]]] = None

    model_config = {"frozen": True}

    @property
    def failed(self) -> bool:
        return bool(self.error)


class WorkGroup(BaseModel):
    tests: List[str] = Field(default_factory=list)
    estimated_time_ms: int = 0


class TestRequest(BaseModel):
    """Payload handed to the bundle's ``Zen.run``."""

    __test__ = False

    test_name: str
    run_id: Optional[str] = None
    logs: Optional[Dict[str, bool]] = None


class WorkTestsRequest(BaseModel):
    test_names: List[str]
    deflake_limit: int = Field(default=1, ge=1)
    session_id: str
    run_id: Optional[str] = None
    time_budget_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("test_names")
    @classmethod
    def dedupe_names(cls, value: List[str]) -> List[str]:
        seen = set()
        unique: List[str] = []
        for name in value:
            if name not in seen:
                seen.add(name)
                unique.append(name)
        return unique


class WorkTestsResponse(BaseModel):
    results: Dict[str, List[TestResult]] = Field(default_factory=dict)
    log_stream_name: Optional[str] = None


class ListTestsRequest(BaseModel):
    session_id: str
    time_budget_ms: Optional[int] = Field(default=None, gt=0)


class ListTestsResponse(BaseModel):
    test_names: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    log_stream_name: Optional[str] = None


class AssetFile(BaseModel):
    url_path: str
    versioned_path: str
    to_check: bool = True


class AssetManifest(BaseModel):
    session_id: str
    index: str
    files: List[AssetFile] = Field(default_factory=list)

    @property
    def file_map(self) -> Dict[str, str]:
        return {item.url_path: item.versioned_path for item in self.files}
