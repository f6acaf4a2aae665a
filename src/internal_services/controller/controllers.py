"""Controllers for internal request and reconcile CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from internal_services.config import Settings
from internal_services.controller.conditions import LifecyclePhase
from internal_services.controller.loader import ConfigLoader
from internal_services.controller.metrics import build_controller_metrics, render_stats_lines
from internal_services.controller.models import InternalRequestCreate, InvalidRequestError
from internal_services.controller.reconciler import InternalRequestController
from internal_services.controller.repository import RequestRepository
from internal_services.controller.triggers import TRIGGER_CREATED, TriggerQueue
from internal_services.pipelines.catalog import PipelineCatalog
from internal_services.pipelines.runs import PipelineRunStore


@dataclass(slots=True)
class RequestCreateCommand:
    """CLI input for internal request creation."""

    db_path: Path | None
    namespace: str
    name: str
    pipeline: str
    params: tuple[str, ...]


@dataclass(slots=True)
class RequestListCommand:
    """CLI input for internal request listing."""

    db_path: Path | None
    namespace: str | None
    phase: str | None
    limit: int


@dataclass(slots=True)
class RequestRefCommand:
    """CLI input addressing one internal request."""

    db_path: Path | None
    namespace: str
    name: str


@dataclass(slots=True)
class ControllerRunCommand:
    """CLI input for the reconcile loop."""

    db_path: Path | None
    once: bool
    max_triggers: int | None
    max_idle_polls: int


@dataclass(slots=True)
class ControllerDbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class ControllerStores:
    """Storage facades opened for one CLI command."""

    requests: RequestRepository
    triggers: TriggerQueue
    catalog: PipelineCatalog
    runs: PipelineRunStore


class RequestCliController:
    """Coordinates internal request creation and inspection."""

    def create(self, command: RequestCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = InternalRequestCreate(
            namespace=command.namespace,
            name=command.name,
            request=command.pipeline,
            params=parse_params(command.params),
        )
        with open_stores(settings) as stores:
            request = stores.requests.create_request(payload)
            stores.triggers.enqueue(
                namespace=request.namespace,
                name=request.name,
                reason=TRIGGER_CREATED,
            )

        return [
            f"Internal request created: {request.identity} uid={request.uid} "
            f"pipeline={request.request} params={len(request.params)}",
        ]

    def list_requests(self, command: RequestListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        phase = _parse_phase(command.phase)
        with open_stores(settings) as stores:
            requests = stores.requests.list_requests(
                namespace=command.namespace,
                phase=phase,
                limit=command.limit,
            )

        lines = [f"Internal requests: {len(requests)}"]
        for request in requests:
            condition = request.status.condition
            lines.append(
                f"  {request.identity} pipeline={request.request} "
                f"phase={request.status.phase.value} "
                f"message={condition.message if condition and condition.message else '-'}",
            )
        return lines

    def inspect(self, command: RequestRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            details = stores.requests.get_request_details(
                namespace=command.namespace,
                name=command.name,
            )
        if details is None:
            return [f"Internal request not found: {command.namespace}/{command.name}"]

        request = details.request
        status = request.status
        condition = status.condition
        lines = [
            f"Internal request: {request.identity}",
            f"UID: {request.uid}",
            f"Pipeline: {request.request}",
            f"Phase: {status.phase.value}",
            f"Condition: {condition.status.value if condition else '-'}"
            f"/{condition.reason.value if condition else '-'}",
            f"Message: {condition.message if condition and condition.message else '-'}",
            f"Start time: {status.start_time.isoformat() if status.start_time else '-'}",
            "Completion time: "
            f"{status.completion_time.isoformat() if status.completion_time else '-'}",
            f"Resource version: {request.resource_version}",
            f"Params: {len(request.params)}",
        ]
        for key, value in sorted(request.params.items()):
            lines.append(f"  {key}={value}")
        lines.append(f"Results: {len(status.results)}")
        for key, value in sorted(status.results.items()):
            lines.append(f"  {key}={value}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.reason_from.value if event.reason_from else '-'} -> "
                f"{event.reason_to.value if event.reason_to else '-'}",
            )
        return lines


class ReconcileCliController:
    """Coordinates the reconcile loop, garbage collection and stats."""

    def reconcile(self, command: RequestRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            report = _controller(settings, stores).reconcile(command.namespace, command.name)

        if report.after is None:
            return [f"Internal request not found: {command.namespace}/{command.name}"]
        outcome = report.outcome
        return [
            f"Reconciled {report.after.identity}: directive={outcome.directive.value} "
            f"phase={report.after.status.phase.value}",
            f"Steps: {', '.join(outcome.executed) or '-'}",
            f"Message: {outcome.result.message or '-'}",
        ]

    def run(self, command: ControllerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            controller = _controller(settings, stores)
            summary = (
                controller.run_once()
                if command.once
                else controller.run_loop(
                    max_triggers=command.max_triggers,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Controller summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} rejected={summary.rejected} "
            f"requeued={summary.requeued} idle_polls={summary.idle_polls}",
        ]

    def gc(self, command: ControllerDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            deleted = _controller(settings, stores).collect_garbage()

        lines = [f"Pipeline runs deleted: {len(deleted)}"]
        lines.extend(f"  {name}" for name in deleted)
        return lines

    def stats(self, command: ControllerDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            snapshot = build_controller_metrics(
                requests=stores.requests.list_requests(limit=None),
                runs=stores.runs.list_runs(limit=None),
                pending_triggers=stores.triggers.pending_count(),
            )
        return render_stats_lines(snapshot=snapshot)


def parse_params(raw_params: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``key=value`` options; later keys win."""

    params: dict[str, str] = {}
    for raw in raw_params:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise InvalidRequestError(f"Invalid param {raw!r}: expected key=value.")
        params[key.strip()] = value
    return params


def parse_request_ref(value: str) -> tuple[str, str]:
    """Split ``namespace/name`` into its parts."""

    namespace, separator, name = value.partition("/")
    if not separator or not namespace or not name or "/" in name:
        raise ValueError(f"Expected NAMESPACE/NAME, got {value!r}.")
    return namespace, name


def _parse_phase(value: str | None) -> LifecyclePhase | None:
    if value is None:
        return None
    for phase in LifecyclePhase:
        if phase.value.lower() == value.strip().lower():
            return phase
    raise ValueError(f"Unsupported phase: {value}")


def _controller(settings: Settings, stores: ControllerStores) -> InternalRequestController:
    return InternalRequestController(
        repository=stores.requests,
        triggers=stores.triggers,
        catalog=stores.catalog,
        runs=stores.runs,
        config_loader=ConfigLoader(settings.controller.config_path),
        controller_id=settings.controller.controller_id,
        poll_interval_seconds=settings.controller.poll_interval_seconds,
        requeue_base_seconds=settings.controller.requeue_base_seconds,
        requeue_max_seconds=settings.controller.requeue_max_seconds,
    )


@contextmanager
def open_stores(settings: Settings) -> Iterator[ControllerStores]:
    settings.validate()
    stores = ControllerStores(
        requests=RequestRepository(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
        triggers=TriggerQueue(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            lease_seconds=settings.controller.trigger_lease_seconds,
        ),
        catalog=PipelineCatalog(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
        runs=PipelineRunStore(
            db_path=settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
    )
    stores.requests.init_schema()
    try:
        yield stores
    finally:
        stores.requests.close()
        stores.triggers.close()
        stores.catalog.close()
        stores.runs.close()
