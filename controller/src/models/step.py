"""
Pipeline, run and result models.
"""

from fnmatch import fnmatch
from pydantic import BaseModel, Field, computed_field
from typing import List, Optional, Dict, Union, Literal
from datetime import datetime, timezone
from enum import Enum

from controller.src.errors import StepFailed, StepTimedOut


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)


class TriggerEvent(BaseModel):
    event_type: str = "push"
    branch: str
    commit_sha: str
    actor: str = ""
    repository: Optional[str] = None
    clone_url: Optional[str] = None

    class Config:
        frozen = True


class TriggerFilter(BaseModel):
    """Predicate over trigger metadata. Empty lists match anything."""

    events: List[str] = []
    branches: List[str] = []
    exclude_branches: List[str] = []
    actors: List[str] = []

    class Config:
        frozen = True

    def matches(self, event: TriggerEvent) -> bool:
        if self.events and event.event_type not in self.events:
            return False
        if self.branches and not any(fnmatch(event.branch, p) for p in self.branches):
            return False
        if any(fnmatch(event.branch, p) for p in self.exclude_branches):
            return False
        if self.actors and event.actor not in self.actors:
            return False
        return True

    def dedup_key(self, event: TriggerEvent) -> str:
        return event.branch


class StepConfig(BaseModel):
    name: str
    command: Union[str, List[str]]
    args: List[str] = []
    expected_exit_code: int = 0
    timeout: float = 600
    env: Dict[str, str] = {}
    working_dir: Optional[str] = None
    image: Optional[str] = None
    inputs: List[str] = []
    outputs: List[str] = []
    allow_failure: bool = False

    class Config:
        frozen = True


class StageConfig(BaseModel):
    name: str
    steps: List[StepConfig]
    continue_on_failure: bool = False
    env: Dict[str, str] = {}
    parallel_group: Optional[str] = None

    class Config:
        frozen = True


class PipelineConfig(BaseModel):
    name: str
    stages: List[StageConfig]
    trigger: TriggerFilter = TriggerFilter()
    env: Dict[str, str] = {}
    deduplicate: bool = False

    class Config:
        frozen = True


class StepResult(BaseModel):
    step_name: str
    status: Status
    exit_code: Optional[int] = None
    stdout_ref: Optional[str] = None
    stderr_ref: Optional[str] = None
    error: Optional[str] = None
    required: bool = True
    expected_exit_code: int = 0
    timeout: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def failed(self) -> bool:
        return self.status in (Status.FAILED, Status.TIMED_OUT)

    def raise_for_status(self):
        """Raise StepTimedOut or StepFailed for an unsuccessful result."""
        if self.status == Status.TIMED_OUT:
            raise StepTimedOut(self.step_name, self.timeout or 0)
        if self.status == Status.FAILED:
            exit_code = self.exit_code if self.exit_code is not None else -1
            raise StepFailed(self.step_name, exit_code, self.expected_exit_code)


class StageResult(BaseModel):
    stage_name: str
    status: Status
    step_results: List[StepResult] = []
    continue_on_failure: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def blocking_failure(self) -> bool:
        return self.status == Status.FAILED and not self.continue_on_failure


class RunRecord(BaseModel):
    """One execution of a pipeline against one trigger event.

    ``status`` is derived from the recorded stage results and lifecycle
    timestamps; it is never assigned.
    """

    run_id: str
    pipeline: str
    trigger: TriggerEvent
    stage_results: List[StageResult] = []
    cancelled: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def status(self) -> Status:
        if self.started_at is None:
            return Status.PENDING
        if self.finished_at is None:
            return Status.RUNNING
        if self.cancelled:
            return Status.CANCELLED
        if self.error is not None:
            return Status.FAILED
        if any(r.blocking_failure for r in self.stage_results):
            return Status.FAILED
        return Status.SUCCEEDED

    def append_stage_result(self, result: StageResult):
        if self.finished_at is not None:
            raise ValueError(f"Run {self.run_id} is already finished")
        self.stage_results.append(result)


class Artifact(BaseModel):
    run_id: str
    name: str
    content_ref: str
    size: int = 0
    created_at: datetime

    class Config:
        frozen = True


class StatusEvent(BaseModel):
    run_id: str
    entity: Literal["run", "stage", "step"]
    name: str
    old_status: Optional[Status] = None
    new_status: Status
    timestamp: datetime = Field(default_factory=utcnow)


class ArtifactRef(BaseModel):
    name: str
    content_ref: str


class RunManifest(BaseModel):
    run_id: str
    pipeline: str
    status: Status
    artifacts: List[ArtifactRef] = []
    stages: List[StageResult] = []


class PipelineJob(BaseModel):
    run_id: str
    pipeline: str
    trigger: TriggerEvent
    queued_at: str
