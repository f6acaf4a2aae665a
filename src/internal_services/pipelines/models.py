"""Domain models for pipeline templates and pipeline runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class PipelineRunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_done(self) -> bool:
        return self in {PipelineRunStatus.SUCCEEDED, PipelineRunStatus.FAILED}


class PipelineRunAlreadyExists(RuntimeError):
    """A pipeline run with the same name already exists."""


class PipelineRunNotFoundError(LookupError):
    """Pipeline run does not exist."""


@dataclass(slots=True)
class PipelineWrite:
    """Payload for registering a pipeline template."""

    namespace: str
    name: str
    command_template: str
    timeout_seconds: int = 600
    description: str | None = None


@dataclass(slots=True)
class PipelineView:
    """Stored pipeline template."""

    namespace: str
    name: str
    command_template: str
    timeout_seconds: int
    description: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class PipelineRunCreate:
    """Input payload for creating one pipeline run."""

    name: str
    namespace: str
    pipeline_name: str
    command_template: str
    timeout_seconds: int
    request_namespace: str
    request_name: str
    request_uid: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PipelineRunView:
    """Stored pipeline run."""

    name: str
    namespace: str
    pipeline_name: str
    command_template: str
    timeout_seconds: int
    params: dict[str, str]
    request_namespace: str
    request_name: str
    request_uid: str
    status: PipelineRunStatus
    message: str | None
    results: dict[str, str]
    exit_code: int | None
    worker_id: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime
