"""Persistent pipeline run store used as the job execution backend."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from internal_services.pipelines.models import (
    PipelineRunAlreadyExists,
    PipelineRunCreate,
    PipelineRunNotFoundError,
    PipelineRunStatus,
    PipelineRunView,
)
from internal_services.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from internal_services.storage.sqlmodel_models import PipelineRunRow


class PipelineRunStore:
    """Pipeline run persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def create_run(self, payload: PipelineRunCreate) -> PipelineRunView:
        """Insert a pending run; the primary key on ``name`` rejects duplicates."""

        now = utc_now()
        row = PipelineRunRow(
            name=payload.name,
            namespace=payload.namespace,
            pipeline_name=payload.pipeline_name,
            command_template=payload.command_template,
            timeout_seconds=payload.timeout_seconds,
            params_json=json.dumps(payload.params, ensure_ascii=False, sort_keys=True),
            request_namespace=payload.request_namespace,
            request_name=payload.request_name,
            request_uid=payload.request_uid,
            status=PipelineRunStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise PipelineRunAlreadyExists(
                    f"Pipeline run already exists: {payload.name}",
                ) from error
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, name: str) -> PipelineRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PipelineRunRow).where(PipelineRunRow.name == name),
            ).one_or_none()
        return _to_run_view(row) if row is not None else None

    def find_runs_for_request(self, *, request_uid: str) -> list[PipelineRunView]:
        """Return runs labeled with the given owner request uid."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PipelineRunRow)
                .where(PipelineRunRow.request_uid == request_uid)
                .order_by(col(PipelineRunRow.created_at).asc()),
            ).all()
        return [_to_run_view(row) for row in rows]

    def list_runs(
        self,
        *,
        status: PipelineRunStatus | None = None,
        limit: int | None = 50,
    ) -> list[PipelineRunView]:
        with Session(self.engine) as session:
            statement = select(PipelineRunRow).order_by(col(PipelineRunRow.created_at).desc())
            if status is not None:
                statement = statement.where(PipelineRunRow.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def delete_run(self, name: str) -> None:
        """Delete a run, raising PipelineRunNotFoundError when it is already gone."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(PipelineRunRow).where(col(PipelineRunRow.name) == name),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PipelineRunNotFoundError(f"Pipeline run not found: {name}")
            session.commit()

    def claim_next_pending(self, *, worker_id: str) -> PipelineRunView | None:
        """Atomically claim the oldest pending run."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(PipelineRunRow)
                    .where(PipelineRunRow.status == PipelineRunStatus.PENDING.value)
                    .order_by(col(PipelineRunRow.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(PipelineRunRow)
                    .where(
                        col(PipelineRunRow.name) == candidate.name,
                        col(PipelineRunRow.status) == PipelineRunStatus.PENDING.value,
                    )
                    .values(
                        status=PipelineRunStatus.RUNNING.value,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(PipelineRunRow).where(PipelineRunRow.name == candidate.name),
                ).one()
                return _to_run_view(claimed)

    def finish_run(  # noqa: PLR0913
        self,
        *,
        name: str,
        status: PipelineRunStatus,
        message: str | None,
        results: dict[str, str],
        exit_code: int | None,
    ) -> bool:
        """Mark a running run as succeeded/failed. Returns False if it is no longer running."""

        if not status.is_done:
            raise ValueError(f"Unsupported terminal status: {status}")
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PipelineRunRow)
                .where(
                    col(PipelineRunRow.name) == name,
                    col(PipelineRunRow.status) == PipelineRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    message=message,
                    results_json=json.dumps(results, ensure_ascii=False, sort_keys=True)
                    if results
                    else None,
                    exit_code=exit_code,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_runs(self, *, grace: timedelta) -> list[PipelineRunView]:
        """Fail running runs whose runner stopped reporting past timeout + grace."""

        now = utc_now()
        recovered: list[PipelineRunView] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(PipelineRunRow).where(
                    PipelineRunRow.status == PipelineRunStatus.RUNNING.value,
                ),
            ).all()
            for row in rows:
                started_at = row.started_at or row.created_at
                deadline = to_utc_aware_datetime(started_at) + timedelta(
                    seconds=row.timeout_seconds,
                )
                if deadline + grace > now:
                    continue
                result = session.exec(
                    sa_update(PipelineRunRow)
                    .where(
                        col(PipelineRunRow.name) == row.name,
                        col(PipelineRunRow.status) == PipelineRunStatus.RUNNING.value,
                    )
                    .values(
                        status=PipelineRunStatus.FAILED.value,
                        message="Pipeline run lost its runner before completion.",
                        finished_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount == 1:
                    recovered.append(_to_run_view(row))
            session.commit()
        return recovered


def _json_mapping(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return {str(key): str(value) for key, value in parsed.items()}


def _to_run_view(row: PipelineRunRow) -> PipelineRunView:
    return PipelineRunView(
        name=row.name,
        namespace=row.namespace,
        pipeline_name=row.pipeline_name,
        command_template=row.command_template,
        timeout_seconds=row.timeout_seconds,
        params=_json_mapping(row.params_json),
        request_namespace=row.request_namespace,
        request_name=row.request_name,
        request_uid=row.request_uid,
        status=PipelineRunStatus(row.status),
        message=row.message,
        results=_json_mapping(row.results_json),
        exit_code=row.exit_code,
        worker_id=row.worker_id,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
