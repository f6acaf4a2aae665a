"""Correlate internal requests with the pipeline runs executing them.

Every request owns at most one pipeline run. The run name is derived from the
request identity, so the primary key of the run store acts as a
create-if-absent guard: two reconciliations racing on the same request both
end up with the same run.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from sqlalchemy.exc import OperationalError

from internal_services.controller.models import RequestIdentity
from internal_services.pipelines.models import (
    PipelineRunAlreadyExists,
    PipelineRunCreate,
    PipelineRunNotFoundError,
    PipelineRunStatus,
    PipelineRunView,
    PipelineView,
)

logger = logging.getLogger(__name__)

PIPELINE_RUN_NAME_PREFIX = "internal-request"


class JobBackendError(RuntimeError):
    """Job backend call failed, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class JobBackend(Protocol):
    """Operations the correlator needs from the job execution backend."""

    def create_run(self, payload: PipelineRunCreate) -> PipelineRunView: ...

    def get_run(self, name: str) -> PipelineRunView | None: ...

    def delete_run(self, name: str) -> None: ...


class JobState(str, Enum):
    """Observed outcome of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_STATE_BY_STATUS = {
    PipelineRunStatus.PENDING: JobState.PENDING,
    PipelineRunStatus.RUNNING: JobState.RUNNING,
    PipelineRunStatus.SUCCEEDED: JobState.SUCCEEDED,
    PipelineRunStatus.FAILED: JobState.FAILED,
}


@dataclass(frozen=True, slots=True)
class JobHandle:
    """Reference to the pipeline run owned by one request."""

    name: str
    namespace: str


@dataclass(frozen=True, slots=True)
class JobObservation:
    """Current state of a pipeline run plus its results once finished."""

    state: JobState
    results: Mapping[str, str] = field(default_factory=dict)
    message: str = ""

    @property
    def finished(self) -> bool:
        return self.state in {JobState.SUCCEEDED, JobState.FAILED}


def pipeline_run_name(identity: RequestIdentity) -> str:
    """Derive the pipeline run name for a request; stable across restarts."""

    digest = hashlib.sha256(
        f"{identity.namespace}/{identity.name}/{identity.uid}".encode(),
    ).hexdigest()[:16]
    return f"{PIPELINE_RUN_NAME_PREFIX}-{digest}"


class JobCorrelator:
    """Find, create, observe and delete the pipeline run of a request."""

    def __init__(self, backend: JobBackend) -> None:
        self.backend = backend

    def find_existing(self, identity: RequestIdentity) -> JobHandle | None:
        with _backend_call("look up pipeline run"):
            run = self.backend.get_run(pipeline_run_name(identity))
        if run is None:
            return None
        if run.request_uid != identity.uid:
            raise JobBackendError(
                f"Pipeline run {run.name} belongs to another request ({run.request_uid}).",
                transient=False,
            )
        return JobHandle(name=run.name, namespace=run.namespace)

    def create(
        self,
        *,
        template: PipelineView,
        params: Mapping[str, str],
        identity: RequestIdentity,
    ) -> JobHandle:
        """Create the run for ``identity``; an existing run with the same name is adopted."""

        name = pipeline_run_name(identity)
        payload = PipelineRunCreate(
            name=name,
            namespace=template.namespace,
            pipeline_name=template.name,
            command_template=template.command_template,
            timeout_seconds=template.timeout_seconds,
            request_namespace=identity.namespace,
            request_name=identity.name,
            request_uid=identity.uid,
            params=dict(params),
        )
        try:
            with _backend_call("create pipeline run"):
                run = self.backend.create_run(payload)
        except PipelineRunAlreadyExists:
            logger.info("Pipeline run %s already exists for %s, adopting it", name, identity)
            handle = self.find_existing(identity)
            if handle is None:
                raise JobBackendError(
                    f"Pipeline run {name} vanished right after a name collision.",
                    transient=True,
                ) from None
            return handle
        logger.info("Created pipeline run %s for %s", run.name, identity)
        return JobHandle(name=run.name, namespace=run.namespace)

    def observe(self, handle: JobHandle) -> JobObservation | None:
        """Return the run state, or None when the run no longer exists."""

        with _backend_call("observe pipeline run"):
            run = self.backend.get_run(handle.name)
        if run is None:
            return None
        return JobObservation(
            state=_STATE_BY_STATUS[run.status],
            results=dict(run.results),
            message=run.message or "",
        )

    def delete(self, handle: JobHandle) -> None:
        try:
            with _backend_call("delete pipeline run"):
                self.backend.delete_run(handle.name)
        except PipelineRunNotFoundError:
            logger.debug("Pipeline run %s already deleted", handle.name)
            return
        logger.info("Deleted pipeline run %s", handle.name)


@contextmanager
def _backend_call(action: str) -> Iterator[None]:
    try:
        yield
    except OperationalError as error:
        raise JobBackendError(f"Cannot {action}: {error}", transient=True) from error
    except OSError as error:
        raise JobBackendError(f"Cannot {action}: {error}", transient=True) from error
