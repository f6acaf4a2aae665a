from __future__ import annotations

import threading

import allure

from internal_services.controller.adapter import (
    RUN_LOST_MESSAGE,
    TEMPLATE_NOT_FOUND_MESSAGE,
    InternalRequestAdapter,
)
from internal_services.controller.authorization import AllowListPolicy, AuthorizationDecision
from internal_services.controller.conditions import (
    ConditionReason,
    ConditionStatus,
    LifecyclePhase,
)
from internal_services.controller.jobs import JobCorrelator, pipeline_run_name
from internal_services.controller.loader import ConfigLoader
from internal_services.controller.operations import Directive, reconcile_handler
from internal_services.pipelines.models import PipelineRunStatus

pytestmark = [
    allure.epic("Request Lifecycle"),
    allure.feature("Reconcile Scenarios"),
]


class _DenyPolicy:
    def __init__(self, reason: str) -> None:
        self.reason = reason
        self.calls = 0

    def evaluate(self, requested_job, requester, config):
        self.calls += 1
        return AuthorizationDecision.deny(self.reason)


class _ExplodingLoader:
    def load(self):
        raise AssertionError("config must not be loaded")


class _ExplodingListener:
    def request_completed(self, completion):
        raise RuntimeError("metrics sink is down")


class _StaleLookupRuns:
    """Run store whose first lookup misses, like a racing reconciler would see."""

    def __init__(self, runs) -> None:
        self.runs = runs
        self.lookups = 0

    def create_run(self, payload):
        return self.runs.create_run(payload)

    def get_run(self, name):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return self.runs.get_run(name)

    def delete_run(self, name):
        self.runs.delete_run(name)


def _finish_run(harness, request, *, status, results=None, message=None) -> None:
    claimed = harness.runs.claim_next_pending(worker_id="runner-test")
    assert claimed is not None
    assert claimed.request_uid == request.uid
    assert harness.runs.finish_run(
        name=claimed.name,
        status=status,
        message=message,
        results=results or {},
        exit_code=0 if status == PipelineRunStatus.SUCCEEDED else 1,
    )


def _adapter(harness, request, **overrides) -> InternalRequestAdapter:
    options = {
        "request": request,
        "repository": harness.repository,
        "config_loader": ConfigLoader(harness.config_path),
        "policy": AllowListPolicy(),
        "templates": harness.catalog,
        "correlator": JobCorrelator(harness.runs),
        "listener": harness.listener,
    }
    options.update(overrides)
    return InternalRequestAdapter(**options)


def test_denied_request_is_rejected_without_job(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request(params={"env": "prod"})
    policy = _DenyPolicy("unauthorized namespace")

    report = harness.controller(policy=policy).reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    condition = stored.status.condition
    assert report.outcome.directive == Directive.STOP
    assert condition is not None
    assert (condition.status, condition.reason, condition.message) == (
        ConditionStatus.FALSE,
        ConditionReason.REJECTED,
        "unauthorized namespace",
    )
    assert stored.status.start_time is None
    assert stored.status.completion_time is None
    assert harness.runs.list_runs() == []
    assert harness.listener.completions == []
    assert report.completed_phase == LifecyclePhase.REJECTED


def test_request_outside_allow_list_is_rejected(harness) -> None:
    harness.write_config(allow_list=("tenant-z",))
    request = harness.create_request()

    harness.controller().reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert stored.status.phase == LifecyclePhase.REJECTED
    assert stored.status.condition is not None
    assert "not in the allow list" in stored.status.condition.message


def test_succeeded_job_copies_results_and_is_deleted(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()

    first = controller.reconcile(request.namespace, request.name)
    running = harness.reload(request)
    assert first.outcome.directive == Directive.STOP
    assert running.status.phase == LifecyclePhase.RUNNING

    _finish_run(
        harness,
        request,
        status=PipelineRunStatus.SUCCEEDED,
        results={"digest": "sha256:abc"},
    )
    second = controller.reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert second.outcome.executed[-1] == "ensure_pipeline_run_is_deleted"
    assert stored.status.condition is not None
    assert stored.status.condition.status == ConditionStatus.TRUE
    assert stored.status.condition.reason == ConditionReason.SUCCEEDED
    assert dict(stored.status.results) == {"digest": "sha256:abc"}
    assert stored.status.start_time == running.status.start_time
    assert stored.status.completion_time is not None
    assert harness.runs.get_run(pipeline_run_name(request.identity)) is None
    assert [completion.reason for completion in harness.listener.completions] == ["Succeeded"]
    assert second.completed_phase == LifecyclePhase.SUCCEEDED


def test_running_job_stops_and_keeps_start_time(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()

    controller.reconcile(request.namespace, request.name)
    first = harness.reload(request)
    harness.runs.claim_next_pending(worker_id="runner-test")
    report = controller.reconcile(request.namespace, request.name)
    second = harness.reload(request)

    assert report.outcome.directive == Directive.STOP
    assert report.outcome.executed[-1] == "ensure_status_is_tracked"
    assert second.status.phase == LifecyclePhase.RUNNING
    assert second.status.start_time == first.status.start_time
    assert second.status.completion_time is None
    assert second.resource_version == first.resource_version
    run = harness.runs.get_run(pipeline_run_name(request.identity))
    assert run is not None
    assert run.status == PipelineRunStatus.RUNNING


def test_repeated_reconcile_creates_exactly_one_job(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()

    for _ in range(4):
        controller.reconcile(request.namespace, request.name)

    assert len(harness.runs.find_runs_for_request(request_uid=request.uid)) == 1


def test_racing_reconcile_adopts_winner_job(harness) -> None:
    harness.write_config()
    pipeline = harness.register_pipeline()
    request = harness.create_request()
    winner = _adapter(harness, request)
    loser = _adapter(harness, request, correlator=JobCorrelator(_StaleLookupRuns(harness.runs)))

    winner_outcome = reconcile_handler(winner.operations())
    loser_outcome = reconcile_handler(loser.operations())

    runs = harness.runs.find_runs_for_request(request_uid=request.uid)
    assert len(runs) == 1
    assert runs[0].pipeline_name == pipeline.name
    assert winner_outcome.directive == Directive.STOP
    assert loser.pipeline_run is not None
    assert loser.pipeline_run.name == runs[0].name
    # The loser's status write raced the winner and is retried from a fresh snapshot.
    assert loser_outcome.directive == Directive.REQUEUE
    assert harness.reload(request).status.phase == LifecyclePhase.RUNNING


def test_concurrent_reconcile_threads_create_one_job(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def _worker() -> None:
        controller = harness.controller()
        try:
            barrier.wait(timeout=5)
            controller.reconcile(request.namespace, request.name)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(harness.runs.find_runs_for_request(request_uid=request.uid)) == 1
    assert harness.reload(request).status.phase == LifecyclePhase.RUNNING


def test_completed_request_short_circuits_without_collaborators(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()
    controller.reconcile(request.namespace, request.name)
    _finish_run(harness, request, status=PipelineRunStatus.SUCCEEDED)
    controller.reconcile(request.namespace, request.name)
    succeeded = harness.reload(request)
    assert succeeded.status.phase == LifecyclePhase.SUCCEEDED

    policy = _DenyPolicy("never asked")
    report = harness.controller(config_loader=_ExplodingLoader(), policy=policy).reconcile(
        request.namespace,
        request.name,
    )

    assert report.outcome.directive == Directive.STOP
    assert report.outcome.executed == ["ensure_request_is_not_completed"]
    assert policy.calls == 0
    assert harness.reload(request).resource_version == succeeded.resource_version


def test_missing_template_fails_request(harness) -> None:
    harness.write_config()
    request = harness.create_request(request="not-registered")

    report = harness.controller().reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert report.outcome.directive == Directive.STOP
    assert stored.status.phase == LifecyclePhase.FAILED
    assert stored.status.condition is not None
    assert stored.status.condition.message == TEMPLATE_NOT_FOUND_MESSAGE
    assert harness.runs.list_runs() == []


def test_failed_job_marks_request_failed_with_details(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()
    controller.reconcile(request.namespace, request.name)

    _finish_run(
        harness,
        request,
        status=PipelineRunStatus.FAILED,
        message="Pipeline command exited with code 3",
        results={"log": "partial"},
    )
    report = controller.reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert report.completed_phase == LifecyclePhase.FAILED
    assert stored.status.condition is not None
    assert stored.status.condition.message == "Pipeline command exited with code 3"
    assert dict(stored.status.results) == {"log": "partial"}
    assert stored.status.completion_time is not None
    assert harness.runs.list_runs() == []


def test_deleted_job_fails_running_request(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()
    controller.reconcile(request.namespace, request.name)

    harness.runs.delete_run(pipeline_run_name(request.identity))
    controller.reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert stored.status.phase == LifecyclePhase.FAILED
    assert stored.status.condition is not None
    assert stored.status.condition.message == RUN_LOST_MESSAGE
    # The lost run is not recreated.
    assert harness.runs.list_runs() == []


def test_debug_config_keeps_finished_job(harness) -> None:
    harness.write_config(debug=True)
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()
    controller.reconcile(request.namespace, request.name)
    _finish_run(harness, request, status=PipelineRunStatus.SUCCEEDED)

    controller.reconcile(request.namespace, request.name)

    assert harness.reload(request).status.phase == LifecyclePhase.SUCCEEDED
    assert harness.runs.get_run(pipeline_run_name(request.identity)) is not None


def test_invalid_config_requeues_without_status_change(harness) -> None:
    harness.config_path.write_text("{broken", "utf-8")
    request = harness.create_request()

    report = harness.controller().reconcile(request.namespace, request.name)

    assert report.outcome.directive == Directive.REQUEUE
    assert report.outcome.executed == [
        "ensure_request_is_not_completed",
        "ensure_config_is_loaded",
    ]
    assert harness.reload(request).resource_version == request.resource_version


def test_stale_snapshot_write_requeues(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    harness.controller().reconcile(request.namespace, request.name)

    stale = _adapter(harness, request, policy=_DenyPolicy("late denial"))
    outcome = reconcile_handler(stale.operations())

    assert outcome.directive == Directive.REQUEUE
    assert harness.reload(request).status.phase == LifecyclePhase.RUNNING


def test_listener_failure_does_not_affect_status(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller(listener=_ExplodingListener())
    controller.reconcile(request.namespace, request.name)
    _finish_run(harness, request, status=PipelineRunStatus.SUCCEEDED)

    report = controller.reconcile(request.namespace, request.name)

    assert report.outcome.directive == Directive.STOP
    assert harness.reload(request).status.phase == LifecyclePhase.SUCCEEDED


class _NoTemplates:
    def resolve(self, name, namespace):
        return None


def test_allow_list_change_does_not_reject_running_request(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    controller = harness.controller()
    controller.reconcile(request.namespace, request.name)
    running = harness.reload(request)
    assert running.status.phase == LifecyclePhase.RUNNING

    harness.write_config(allow_list=())
    _finish_run(harness, request, status=PipelineRunStatus.SUCCEEDED, results={"digest": "x"})
    report = controller.reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert report.completed_phase == LifecyclePhase.SUCCEEDED
    assert stored.status.phase == LifecyclePhase.SUCCEEDED
    assert dict(stored.status.results) == {"digest": "x"}
    assert stored.status.start_time == running.status.start_time
    assert harness.runs.get_run(pipeline_run_name(request.identity)) is None


def test_removed_template_does_not_fail_running_request(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    harness.controller().reconcile(request.namespace, request.name)
    controller = harness.controller(catalog=_NoTemplates())

    harness.runs.claim_next_pending(worker_id="runner-test")
    pending = controller.reconcile(request.namespace, request.name)
    assert pending.outcome.executed[-1] == "ensure_status_is_tracked"
    assert harness.reload(request).status.phase == LifecyclePhase.RUNNING

    assert harness.runs.finish_run(
        name=pipeline_run_name(request.identity),
        status=PipelineRunStatus.FAILED,
        message="Pipeline command exited with code 2",
        results={},
        exit_code=2,
    )
    controller.reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert stored.status.phase == LifecyclePhase.FAILED
    assert stored.status.condition is not None
    assert stored.status.condition.message == "Pipeline command exited with code 2"
    assert harness.runs.list_runs() == []


def test_removed_template_still_reports_lost_run(harness) -> None:
    harness.write_config()
    harness.register_pipeline()
    request = harness.create_request()
    harness.controller().reconcile(request.namespace, request.name)

    harness.runs.delete_run(pipeline_run_name(request.identity))
    harness.controller(catalog=_NoTemplates()).reconcile(request.namespace, request.name)

    stored = harness.reload(request)
    assert stored.status.condition is not None
    assert stored.status.condition.message == RUN_LOST_MESSAGE
    assert harness.runs.list_runs() == []
