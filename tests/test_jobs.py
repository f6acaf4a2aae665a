from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import OperationalError

from internal_services.controller.jobs import (
    JobBackendError,
    JobCorrelator,
    JobState,
    pipeline_run_name,
)
from internal_services.controller.models import RequestIdentity
from internal_services.pipelines.models import PipelineRunStatus

pytestmark = [
    allure.epic("Request Lifecycle"),
    allure.feature("Job Correlation"),
]


class _LockedBackend:
    def create_run(self, payload):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    def get_run(self, name):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    def delete_run(self, name):
        raise OperationalError("DELETE", {}, Exception("database is locked"))


def test_pipeline_run_name_is_deterministic() -> None:
    identity = RequestIdentity(namespace="tenant-a", name="release-1", uid="uid-1")

    assert pipeline_run_name(identity) == pipeline_run_name(
        RequestIdentity(namespace="tenant-a", name="release-1", uid="uid-1"),
    )
    assert pipeline_run_name(identity).startswith("internal-request-")
    assert pipeline_run_name(identity) != pipeline_run_name(
        RequestIdentity(namespace="tenant-a", name="release-1", uid="uid-2"),
    )


def test_create_adopts_existing_run_on_name_collision(harness) -> None:
    pipeline = harness.register_pipeline()
    request = harness.create_request()
    correlator = JobCorrelator(harness.runs)

    first = correlator.create(template=pipeline, params=request.params, identity=request.identity)
    second = correlator.create(template=pipeline, params=request.params, identity=request.identity)

    assert first == second
    assert len(harness.runs.find_runs_for_request(request_uid=request.uid)) == 1
    assert correlator.find_existing(request.identity) == first


def test_find_existing_rejects_run_owned_by_other_request(harness) -> None:
    pipeline = harness.register_pipeline()
    owner = harness.create_request("release-1")
    other = harness.create_request("release-2")
    owner_run = JobCorrelator(harness.runs).create(
        template=pipeline,
        params={},
        identity=owner.identity,
    )
    correlator = JobCorrelator(_FixedRunBackend(harness.runs, owner_run.name))

    with pytest.raises(JobBackendError, match="belongs to another request"):
        correlator.find_existing(other.identity)


class _FixedRunBackend:
    """Serve one fixed run for every lookup to simulate a name clash."""

    def __init__(self, runs, name: str) -> None:
        self.runs = runs
        self.name = name

    def create_run(self, payload):
        return self.runs.create_run(payload)

    def get_run(self, name):
        return self.runs.get_run(self.name)

    def delete_run(self, name):
        self.runs.delete_run(self.name)


def test_observe_maps_run_status(harness) -> None:
    pipeline = harness.register_pipeline()
    request = harness.create_request()
    correlator = JobCorrelator(harness.runs)
    handle = correlator.create(template=pipeline, params={}, identity=request.identity)

    pending = correlator.observe(handle)
    assert pending is not None
    assert pending.state == JobState.PENDING
    assert not pending.finished

    harness.runs.claim_next_pending(worker_id="runner-test")
    harness.runs.finish_run(
        name=handle.name,
        status=PipelineRunStatus.SUCCEEDED,
        message=None,
        results={"digest": "sha256:abc"},
        exit_code=0,
    )
    succeeded = correlator.observe(handle)

    assert succeeded is not None
    assert succeeded.state == JobState.SUCCEEDED
    assert succeeded.finished
    assert dict(succeeded.results) == {"digest": "sha256:abc"}


def test_delete_is_idempotent(harness) -> None:
    pipeline = harness.register_pipeline()
    request = harness.create_request()
    correlator = JobCorrelator(harness.runs)
    handle = correlator.create(template=pipeline, params={}, identity=request.identity)

    correlator.delete(handle)
    correlator.delete(handle)

    assert correlator.observe(handle) is None
    assert correlator.find_existing(request.identity) is None


def test_locked_database_is_a_transient_backend_error(harness) -> None:
    pipeline = harness.register_pipeline()
    identity = RequestIdentity(namespace="tenant-a", name="release-1", uid="uid-1")
    correlator = JobCorrelator(_LockedBackend())

    with pytest.raises(JobBackendError) as excinfo:
        correlator.create(template=pipeline, params={}, identity=identity)

    assert excinfo.value.transient
    with pytest.raises(JobBackendError):
        correlator.find_existing(identity)
