from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import JobKind, JobStatus, TargetStatus


class JobCreate(BaseModel):
    kind: JobKind
    branch: str
    commit: Optional[str] = None
    component: Optional[str] = None

    @model_validator(mode="after")
    def check_component(self):
        if self.kind == JobKind.SINGLE_COMPONENT and not self.component:
            raise ValueError("single-component jobs require a component name")
        return self


class JobRequest(JobCreate):
    """A scheduled job as handed to the pipeline. Never mutated once queued."""

    model_config = ConfigDict(frozen=True)

    id: str


class BusAction(str, Enum):
    RUN_TEST = "runTest"
    REMOVE_TEST = "removeTest"
    PROCESS_BUILD = "processBuild"
    REMOVE_BUILD = "remove-build"


class BusMessage(BaseModel):
    action: str
    id: str


class LogEntry(BaseModel):
    path: str
    state: str


class EngineResult(BaseModel):
    engine: str
    browser: str
    version: Optional[str] = None
    status: str = "init"
    logs: List[LogEntry] = Field(default_factory=list)
    passed: int = 0
    failed: int = 0
    error: bool = False
    message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class Report(BaseModel):
    passing: bool
    retry_count: int = 0
    results: List[EngineResult] = Field(default_factory=list)
    passed: int = 0
    failed: int = 0
    end_time: datetime

    @property
    def has_logs(self) -> bool:
        return any(result.logs for result in self.results)


class TargetResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target: str
    status: TargetStatus
    retries: int
    passed: int
    failed: int
    has_logs: bool
    message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: JobKind
    branch: str
    commit: Optional[str] = None
    component: Optional[str] = None
    status: JobStatus
    size: int
    passed: int
    failed: int
    error_message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    targets: List[TargetResultResponse] = Field(default_factory=list)
