"""Persistent storage for internal requests and their status."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from internal_services.controller.conditions import (
    Condition,
    ConditionReason,
    ConditionStatus,
    LifecyclePhase,
    RequestStatus,
)
from internal_services.controller.models import (
    InternalRequestCreate,
    InternalRequestDetails,
    InternalRequestEventView,
    InternalRequestView,
    InvalidRequestError,
    RequestIdentity,
    StatusConflictError,
)
from internal_services.storage.alembic_runner import upgrade_head
from internal_services.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from internal_services.storage.sqlmodel_models import InternalRequestEventRow, InternalRequestRow

_PHASE_FILTERS: dict[LifecyclePhase, tuple[str | None, str | None]] = {
    LifecyclePhase.UNKNOWN: (None, None),
    LifecyclePhase.RUNNING: (ConditionStatus.FALSE.value, ConditionReason.RUNNING.value),
    LifecyclePhase.SUCCEEDED: (ConditionStatus.TRUE.value, ConditionReason.SUCCEEDED.value),
    LifecyclePhase.FAILED: (ConditionStatus.FALSE.value, ConditionReason.FAILED.value),
    LifecyclePhase.REJECTED: (ConditionStatus.FALSE.value, ConditionReason.REJECTED.value),
}


class RequestRepository:
    """Internal request persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_request(self, payload: InternalRequestCreate) -> InternalRequestView:
        """Validate and persist a new internal request with an empty status."""

        payload.validate()
        now = utc_now()
        row = InternalRequestRow(
            uid=str(uuid4()),
            namespace=payload.namespace,
            name=payload.name,
            request=payload.request,
            params_json=json.dumps(payload.params, ensure_ascii=False, sort_keys=True),
            resource_version=1,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise InvalidRequestError(
                    f"Internal request already exists: {payload.namespace}/{payload.name}",
                ) from error
            self._add_event(
                session=session,
                request_uid=row.uid,
                event_type="created",
                reason_from=None,
                reason_to=None,
                details={"request": payload.request, "params": sorted(payload.params)},
            )
            session.commit()
            session.refresh(row)
            return _to_request_view(row)

    def get_request(self, *, namespace: str, name: str) -> InternalRequestView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(InternalRequestRow).where(
                    InternalRequestRow.namespace == namespace,
                    InternalRequestRow.name == name,
                ),
            ).one_or_none()
        return _to_request_view(row) if row is not None else None

    def list_requests(
        self,
        *,
        namespace: str | None = None,
        phase: LifecyclePhase | None = None,
        limit: int | None = 50,
    ) -> list[InternalRequestView]:
        """List recent requests, optionally filtered by namespace and phase."""

        with Session(self.engine) as session:
            statement = select(InternalRequestRow).order_by(
                col(InternalRequestRow.created_at).desc(),
            )
            if namespace is not None:
                statement = statement.where(InternalRequestRow.namespace == namespace)
            if phase is not None:
                status, reason = _PHASE_FILTERS[phase]
                if status is None:
                    statement = statement.where(col(InternalRequestRow.condition_status).is_(None))
                else:
                    statement = statement.where(
                        InternalRequestRow.condition_status == status,
                        InternalRequestRow.condition_reason == reason,
                    )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_request_view(row) for row in rows]

    def update_status(
        self,
        *,
        request: InternalRequestView,
        status: RequestStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> InternalRequestView:
        """Write all status fields at once if nobody else wrote since ``request`` was read."""

        now = utc_now()
        condition = status.condition
        reason_from = request.status.condition.reason if request.status.condition else None
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(InternalRequestRow)
                .where(
                    col(InternalRequestRow.uid) == request.uid,
                    col(InternalRequestRow.resource_version) == request.resource_version,
                )
                .values(
                    condition_status=condition.status.value if condition else None,
                    condition_reason=condition.reason.value if condition else None,
                    condition_message=condition.message if condition else None,
                    condition_last_transition_time=(
                        to_db_datetime(condition.last_transition_time)
                        if condition is not None and condition.last_transition_time is not None
                        else None
                    ),
                    start_time=_optional_db(status.start_time),
                    completion_time=_optional_db(status.completion_time),
                    results_json=(
                        json.dumps(dict(status.results), ensure_ascii=False, sort_keys=True)
                        if status.results
                        else None
                    ),
                    resource_version=request.resource_version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StatusConflictError(
                    f"Internal request {request.identity} was modified concurrently "
                    f"(resource_version={request.resource_version}).",
                )
            self._add_event(
                session=session,
                request_uid=request.uid,
                event_type=event_type,
                reason_from=reason_from,
                reason_to=condition.reason if condition else None,
                details={
                    **(details or {}),
                    **({"message": condition.message} if condition and condition.message else {}),
                },
            )
            session.commit()

        return InternalRequestView(
            identity=request.identity,
            request=request.request,
            params=dict(request.params),
            status=status,
            resource_version=request.resource_version + 1,
            created_at=request.created_at,
            updated_at=now,
        )

    def get_request_details(self, *, namespace: str, name: str) -> InternalRequestDetails | None:
        """Return request snapshot with event trail."""

        with Session(self.engine) as session:
            row = session.exec(
                select(InternalRequestRow).where(
                    InternalRequestRow.namespace == namespace,
                    InternalRequestRow.name == name,
                ),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(InternalRequestEventRow)
                .where(InternalRequestEventRow.request_uid == row.uid)
                .order_by(col(InternalRequestEventRow.id).asc()),
            ).all()

        events: list[InternalRequestEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                InternalRequestEventView(
                    event_id=event_row.id or 0,
                    request_uid=event_row.request_uid,
                    event_type=event_row.event_type,
                    reason_from=_optional_reason(event_row.reason_from),
                    reason_to=_optional_reason(event_row.reason_to),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return InternalRequestDetails(request=_to_request_view(row), events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        request_uid: str,
        event_type: str,
        reason_from: ConditionReason | None,
        reason_to: ConditionReason | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            InternalRequestEventRow(
                request_uid=request_uid,
                event_type=event_type,
                reason_from=reason_from.value if reason_from is not None else None,
                reason_to=reason_to.value if reason_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _optional_db(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_reason(value: str | None) -> ConditionReason | None:
    return ConditionReason(value) if value is not None else None


def _to_status(row: InternalRequestRow) -> RequestStatus:
    condition = None
    if row.condition_status is not None and row.condition_reason is not None:
        condition = Condition(
            status=ConditionStatus(row.condition_status),
            reason=ConditionReason(row.condition_reason),
            message=row.condition_message or "",
            last_transition_time=optional_utc(row.condition_last_transition_time),
        )
    results: dict[str, str] = {}
    if row.results_json:
        parsed = json.loads(row.results_json)
        if isinstance(parsed, dict):
            results = {str(key): str(value) for key, value in parsed.items()}
    return RequestStatus(
        condition=condition,
        start_time=optional_utc(row.start_time),
        completion_time=optional_utc(row.completion_time),
        results=results,
    )


def _to_request_view(row: InternalRequestRow) -> InternalRequestView:
    params = json.loads(row.params_json) if row.params_json else {}
    return InternalRequestView(
        identity=RequestIdentity(namespace=row.namespace, name=row.name, uid=row.uid),
        request=row.request,
        params={str(key): str(value) for key, value in params.items()},
        status=_to_status(row),
        resource_version=row.resource_version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
