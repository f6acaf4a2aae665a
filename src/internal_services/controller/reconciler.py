"""Trigger-driven controller that reconciles internal requests."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta

from internal_services.controller.adapter import InternalRequestAdapter
from internal_services.controller.authorization import AllowListPolicy, AuthorizationPolicy
from internal_services.controller.conditions import LifecyclePhase
from internal_services.controller.jobs import JobCorrelator
from internal_services.controller.loader import ConfigLoader
from internal_services.controller.models import InternalRequestView
from internal_services.controller.notifications import (
    CompletionListener,
    LoggingCompletionListener,
)
from internal_services.controller.operations import (
    Directive,
    OperationResult,
    ReconcileOutcome,
    reconcile_handler,
    stop_processing,
)
from internal_services.controller.repository import RequestRepository
from internal_services.controller.triggers import TRIGGER_CLEANUP, TRIGGER_REQUEUE, TriggerQueue
from internal_services.pipelines.catalog import PipelineCatalog
from internal_services.pipelines.models import PipelineRunNotFoundError
from internal_services.pipelines.runs import PipelineRunStore
from internal_services.polling import PollingLoop
from internal_services.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ControllerRunSummary:
    """Aggregate controller counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    requeued: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class ReconcileReport:
    """Outcome of one reconciliation plus the request before and after it."""

    outcome: ReconcileOutcome
    before: InternalRequestView | None
    after: InternalRequestView | None

    @property
    def completed_phase(self) -> LifecyclePhase | None:
        """Terminal phase reached during this reconciliation, if any."""

        if self.before is None or self.after is None:
            return None
        if self.before.has_completed() or not self.after.has_completed():
            return None
        return self.after.status.phase


class InternalRequestController:
    """Claims reconcile triggers and drives requests through the reconcile steps."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: RequestRepository,
        triggers: TriggerQueue,
        catalog: PipelineCatalog,
        runs: PipelineRunStore,
        config_loader: ConfigLoader,
        controller_id: str,
        policy: AuthorizationPolicy | None = None,
        listener: CompletionListener | None = None,
        poll_interval_seconds: float = 2.0,
        requeue_base_seconds: float = 5.0,
        requeue_max_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.triggers = triggers
        self.catalog = catalog
        self.runs = runs
        self.config_loader = config_loader
        self.controller_id = controller_id
        self.policy = policy or AllowListPolicy()
        self.listener = listener or LoggingCompletionListener()
        self.requeue_base_seconds = requeue_base_seconds
        self.requeue_max_seconds = requeue_max_seconds
        self.correlator = JobCorrelator(runs)
        self._random = random.Random()  # noqa: S311
        self.loop = PollingLoop(
            name=f"controller {controller_id}",
            poll_interval_seconds=poll_interval_seconds,
        )

    def reconcile(self, namespace: str, name: str) -> ReconcileReport:
        """Run the reconcile steps once against the current request snapshot."""

        request = self.repository.get_request(namespace=namespace, name=name)
        if request is None:
            logger.debug("Internal request %s/%s not found, nothing to reconcile", namespace, name)
            return ReconcileReport(
                outcome=ReconcileOutcome(result=stop_processing("request not found")),
                before=None,
                after=None,
            )

        adapter = self._adapter(request)
        outcome = reconcile_handler(adapter.operations())
        logger.debug(
            "Reconciled %s: directive=%s steps=%s",
            request.identity,
            outcome.directive.value,
            ",".join(outcome.executed),
        )
        return ReconcileReport(outcome=outcome, before=request, after=adapter.request)

    def cleanup(self, namespace: str, name: str) -> ReconcileReport:
        """Retry deleting the pipeline run of a completed request."""

        request = self.repository.get_request(namespace=namespace, name=name)
        if request is None:
            return ReconcileReport(
                outcome=ReconcileOutcome(result=stop_processing("request not found")),
                before=None,
                after=None,
            )
        adapter = self._adapter(request)
        outcome = reconcile_handler(adapter.cleanup_operations())
        logger.debug(
            "Cleaned up %s: directive=%s steps=%s",
            request.identity,
            outcome.directive.value,
            ",".join(outcome.executed),
        )
        return ReconcileReport(outcome=outcome, before=request, after=adapter.request)

    def run_once(self) -> ControllerRunSummary:
        """Process at most one reconcile trigger."""

        summary = ControllerRunSummary()
        if self.loop.stop_requested:
            summary.idle_polls = 1
            return summary

        trigger = self.triggers.claim_next(worker_id=self.controller_id)
        if trigger is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        handle = self.cleanup if trigger.reason == TRIGGER_CLEANUP else self.reconcile
        try:
            report = handle(trigger.namespace, trigger.name)
        except Exception as error:
            logger.exception("Reconcile of %s/%s crashed", trigger.namespace, trigger.name)
            report = ReconcileReport(
                outcome=ReconcileOutcome(
                    result=OperationResult(directive=Directive.ERROR, error=error),
                ),
                before=None,
                after=None,
            )

        if report.outcome.requeue:
            delay_seconds = self._compute_requeue_delay(
                attempt=trigger.attempt,
                hint=report.outcome.result.requeue_delay_seconds,
            )
            # A completed request only comes back to retry its run deletion.
            completed = report.after is not None and report.after.has_completed()
            self.triggers.enqueue(
                namespace=trigger.namespace,
                name=trigger.name,
                reason=TRIGGER_CLEANUP if completed else TRIGGER_REQUEUE,
                attempt=trigger.attempt + 1,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
            )
            summary.requeued = 1
            logger.info(
                "Requeued %s/%s in %.1fs (attempt %d): %s",
                trigger.namespace,
                trigger.name,
                delay_seconds,
                trigger.attempt + 1,
                report.outcome.result.message or report.outcome.directive.value,
            )
        self.triggers.acknowledge(trigger.trigger_id)

        completed_phase = report.completed_phase
        if completed_phase == LifecyclePhase.SUCCEEDED:
            summary.succeeded = 1
        elif completed_phase == LifecyclePhase.FAILED:
            summary.failed = 1
        elif completed_phase == LifecyclePhase.REJECTED:
            summary.rejected = 1
        return summary

    def run_loop(
        self,
        *,
        max_triggers: int | None = None,
        max_idle_polls: int = 1,
    ) -> ControllerRunSummary:
        """Run the controller until the trigger queue is idle or max_triggers reached.

        Args:
            max_triggers: Stop after processing this many triggers (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Raise it when runners complete pipeline runs concurrently.
        """

        return self.loop.run(
            self.run_once,
            ControllerRunSummary(),
            max_processed=max_triggers,
            max_idle_polls=max_idle_polls,
        )

    def collect_garbage(self) -> list[str]:
        """Delete pipeline runs whose owner request is terminal or gone.

        Covers deletions that failed after the request completed. Nothing is
        deleted while the services config has debug enabled.
        """

        if self.config_loader.load().debug:
            logger.info("Debug enabled, skipping pipeline run garbage collection")
            return []

        deleted: list[str] = []
        for run in self.runs.list_runs(limit=None):
            owner = self.repository.get_request(
                namespace=run.request_namespace,
                name=run.request_name,
            )
            orphaned = owner is None or owner.uid != run.request_uid
            if not orphaned and not owner.has_completed():
                continue
            try:
                self.runs.delete_run(run.name)
            except PipelineRunNotFoundError:
                continue
            logger.info(
                "Garbage collected pipeline run %s (owner %s/%s %s)",
                run.name,
                run.request_namespace,
                run.request_name,
                "missing" if orphaned else "completed",
            )
            deleted.append(run.name)
        return deleted

    def _compute_requeue_delay(self, *, attempt: int, hint: float | None) -> float:
        if hint is not None:
            return max(0.0, hint)
        max_delay = min(
            self.requeue_max_seconds,
            self.requeue_base_seconds * (2 ** max(attempt, 0)),
        )
        return self._random.uniform(max_delay / 2, max_delay)

    def _adapter(self, request: InternalRequestView) -> InternalRequestAdapter:
        return InternalRequestAdapter(
            request=request,
            repository=self.repository,
            config_loader=self.config_loader,
            policy=self.policy,
            templates=self.catalog,
            correlator=self.correlator,
            listener=self.listener,
        )
