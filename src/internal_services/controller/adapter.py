"""Reconcile steps for one internal request snapshot."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from sqlalchemy.exc import OperationalError

from internal_services.controller.authorization import AuthorizationPolicy
from internal_services.controller.conditions import RequestStatus, completed_with_execution
from internal_services.controller.jobs import (
    JobBackendError,
    JobCorrelator,
    JobHandle,
    JobState,
    pipeline_run_name,
)
from internal_services.controller.loader import ConfigLoader, ConfigLoadError, ServicesConfig
from internal_services.controller.models import InternalRequestView, StatusConflictError
from internal_services.controller.notifications import (
    CompletionListener,
    RequestCompletion,
    notify_completion,
)
from internal_services.controller.operations import (
    Operation,
    OperationResult,
    continue_processing,
    requeue,
    stop_processing,
)
from internal_services.pipelines.models import PipelineView

logger = logging.getLogger(__name__)

TEMPLATE_NOT_FOUND_MESSAGE = "job template not found"
RUN_LOST_MESSAGE = "pipeline run was deleted before it completed"
RUN_FAILED_MESSAGE = "pipeline run failed"


class StatusWriter(Protocol):
    def update_status(
        self,
        *,
        request: InternalRequestView,
        status: RequestStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> InternalRequestView: ...


class TemplateResolver(Protocol):
    def resolve(self, name: str, namespace: str) -> PipelineView | None: ...


class InternalRequestAdapter:
    """Holds one request snapshot and the working context shared by its steps."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        request: InternalRequestView,
        repository: StatusWriter,
        config_loader: ConfigLoader,
        policy: AuthorizationPolicy,
        templates: TemplateResolver,
        correlator: JobCorrelator,
        listener: CompletionListener,
    ) -> None:
        self.request = request
        self.repository = repository
        self.config_loader = config_loader
        self.policy = policy
        self.templates = templates
        self.correlator = correlator
        self.listener = listener
        self.config: ServicesConfig | None = None
        self.pipeline: PipelineView | None = None
        self.pipeline_run: JobHandle | None = None

    def operations(self) -> list[Operation]:
        return [
            self.ensure_request_is_not_completed,
            self.ensure_config_is_loaded,
            self.ensure_request_is_allowed,
            self.ensure_pipeline_exists,
            self.ensure_pipeline_run_is_created,
            self.ensure_status_is_tracked,
            self.ensure_pipeline_run_is_deleted,
        ]

    def cleanup_operations(self) -> list[Operation]:
        """Steps that retry deleting the pipeline run of a completed request."""

        return [
            self.ensure_config_is_loaded,
            self.ensure_pipeline_run_is_found,
            self.ensure_pipeline_run_is_deleted,
        ]

    def ensure_request_is_not_completed(self) -> OperationResult:
        if self.request.has_completed():
            logger.debug("Internal request %s already completed", self.request.identity)
            return stop_processing("request already completed")
        return continue_processing()

    def ensure_config_is_loaded(self) -> OperationResult:
        try:
            self.config = self.config_loader.load()
        except ConfigLoadError as error:
            logger.warning("Cannot load services config for %s: %s", self.request.identity, error)
            return requeue(error=error)
        return continue_processing()

    def ensure_request_is_allowed(self) -> OperationResult:
        if self.request.status.is_running():
            return continue_processing()
        decision = self.policy.evaluate(
            self.request.request,
            self.request.namespace,
            self._require_config(),
        )
        if decision.allowed:
            return continue_processing()

        failure = self._write_status(
            self.request.status.mark_rejected(decision.reason),
            event_type="rejected",
        )
        if failure is not None:
            return failure
        logger.info("Internal request %s rejected: %s", self.request.identity, decision.reason)
        return stop_processing(decision.reason)

    def ensure_pipeline_exists(self) -> OperationResult:
        if self.request.status.is_running():
            # The run already exists; removing its template does not affect it.
            return continue_processing()
        namespace = self._require_config().pipeline_namespace
        try:
            self.pipeline = self.templates.resolve(self.request.request, namespace)
        except OperationalError as error:
            logger.warning("Pipeline lookup failed for %s: %s", self.request.identity, error)
            return requeue(error=error)
        if self.pipeline is not None:
            return continue_processing()

        failure = self._write_status(
            self.request.status.mark_failed(TEMPLATE_NOT_FOUND_MESSAGE),
            event_type="failed",
            details={"pipeline": self.request.request, "pipeline_namespace": namespace},
        )
        if failure is not None:
            return failure
        logger.info(
            "Internal request %s failed: pipeline %s not found in %s",
            self.request.identity,
            self.request.request,
            namespace,
        )
        return stop_processing(TEMPLATE_NOT_FOUND_MESSAGE)

    def ensure_pipeline_run_is_created(self) -> OperationResult:
        try:
            handle = self.correlator.find_existing(self.request.identity)
            if handle is None and self.request.status.is_running():
                # Already started once; a missing run is reported as lost, never recreated.
                handle = JobHandle(
                    name=pipeline_run_name(self.request.identity),
                    namespace=self._require_config().pipeline_namespace,
                )
            elif handle is None:
                handle = self.correlator.create(
                    template=self._require_pipeline(),
                    params=self.request.params,
                    identity=self.request.identity,
                )
        except JobBackendError as error:
            logger.warning("Cannot create pipeline run for %s: %s", self.request.identity, error)
            return requeue(error=error)
        self.pipeline_run = handle

        failure = self._write_status(
            self.request.status.mark_running(),
            event_type="running",
            details={"pipeline_run": handle.name},
        )
        if failure is not None:
            return failure
        return continue_processing()

    def ensure_status_is_tracked(self) -> OperationResult:
        handle = self._require_pipeline_run()
        try:
            observation = self.correlator.observe(handle)
        except JobBackendError as error:
            logger.warning("Cannot observe pipeline run %s: %s", handle.name, error)
            return requeue(error=error)

        if observation is None:
            status = self.request.status.mark_failed(RUN_LOST_MESSAGE)
            event_type = "failed"
        elif not observation.finished:
            return stop_processing(f"pipeline run {handle.name} is {observation.state.value}")
        elif observation.state == JobState.SUCCEEDED:
            status = self.request.status.mark_succeeded(results=observation.results)
            event_type = "succeeded"
        else:
            status = self.request.status.mark_failed(
                observation.message or RUN_FAILED_MESSAGE,
                results=observation.results,
            )
            event_type = "failed"

        failure = self._write_status(
            status,
            event_type=event_type,
            details={"pipeline_run": handle.name},
        )
        if failure is not None:
            return failure
        return continue_processing()

    def ensure_pipeline_run_is_found(self) -> OperationResult:
        if not self.request.has_completed():
            return stop_processing("request not completed")
        try:
            self.pipeline_run = self.correlator.find_existing(self.request.identity)
        except JobBackendError as error:
            logger.warning("Cannot look up pipeline run for %s: %s", self.request.identity, error)
            return requeue(error=error)
        if self.pipeline_run is None:
            return stop_processing("pipeline run already deleted")
        return continue_processing()

    def ensure_pipeline_run_is_deleted(self) -> OperationResult:
        handle = self.pipeline_run
        if handle is None or not self.request.has_completed():
            return stop_processing()
        if self._require_config().debug:
            logger.info("Keeping pipeline run %s because debug is enabled", handle.name)
            return stop_processing()
        try:
            self.correlator.delete(handle)
        except JobBackendError as error:
            logger.warning("Cannot delete pipeline run %s: %s", handle.name, error)
            return requeue(error=error)
        return stop_processing()

    def _write_status(
        self,
        status: RequestStatus,
        *,
        event_type: str,
        details: Mapping[str, object] | None = None,
    ) -> OperationResult | None:
        """Persist ``status`` if it changed; return a requeue result when the write fails."""

        before = self.request.status
        if status == before:
            return None
        try:
            self.request = self.repository.update_status(
                request=self.request,
                status=status,
                event_type=event_type,
                details=dict(details or {}),
            )
        except StatusConflictError as error:
            logger.warning("Status write conflict for %s: %s", self.request.identity, error)
            return requeue(error=error, delay_seconds=0)
        except OperationalError as error:
            logger.warning("Status write failed for %s: %s", self.request.identity, error)
            return requeue(error=error)

        if completed_with_execution(before, status):
            notify_completion(
                self.listener,
                RequestCompletion(
                    namespace=self.request.namespace,
                    name=self.request.name,
                    request=self.request.request,
                    reason=status.phase.value,
                    start_time=status.start_time,
                    completion_time=status.completion_time,
                ),
            )
        return None

    def _require_config(self) -> ServicesConfig:
        if self.config is None:
            raise RuntimeError("Services config is not loaded.")
        return self.config

    def _require_pipeline(self) -> PipelineView:
        if self.pipeline is None:
            raise RuntimeError("Pipeline template is not resolved.")
        return self.pipeline

    def _require_pipeline_run(self) -> JobHandle:
        if self.pipeline_run is None:
            raise RuntimeError("Pipeline run is not created.")
        return self.pipeline_run
