"""Pipeline template catalog backed by the ``pipelines`` table."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, col, select

from internal_services.pipelines.models import PipelineView, PipelineWrite
from internal_services.storage.common import build_sqlite_engine, to_utc_aware_datetime, utc_now
from internal_services.storage.sqlmodel_models import PipelineRow


class PipelineCatalog:
    """Registers and resolves executable pipeline templates."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def register(self, payload: PipelineWrite) -> PipelineView:
        """Create or replace a pipeline template."""

        if not payload.command_template.strip():
            raise ValueError("Pipeline command template must not be empty.")
        if payload.timeout_seconds <= 0:
            raise ValueError("Pipeline timeout must be > 0 seconds.")

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(PipelineRow).where(
                    PipelineRow.namespace == payload.namespace,
                    PipelineRow.name == payload.name,
                ),
            ).one_or_none()
            if row is None:
                row = PipelineRow(
                    namespace=payload.namespace,
                    name=payload.name,
                    command_template=payload.command_template,
                    timeout_seconds=payload.timeout_seconds,
                    description=payload.description,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.command_template = payload.command_template
                row.timeout_seconds = payload.timeout_seconds
                row.description = payload.description
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_pipeline_view(row)

    def resolve(self, name: str, namespace: str) -> PipelineView | None:
        """Return the template named ``name`` in ``namespace`` or None."""

        with Session(self.engine) as session:
            row = session.exec(
                select(PipelineRow).where(
                    PipelineRow.namespace == namespace,
                    PipelineRow.name == name,
                ),
            ).one_or_none()
        return _to_pipeline_view(row) if row is not None else None

    def list_pipelines(self, *, namespace: str | None = None) -> list[PipelineView]:
        with Session(self.engine) as session:
            statement = select(PipelineRow).order_by(
                col(PipelineRow.namespace).asc(),
                col(PipelineRow.name).asc(),
            )
            if namespace is not None:
                statement = statement.where(PipelineRow.namespace == namespace)
            rows = session.exec(statement).all()
        return [_to_pipeline_view(row) for row in rows]


def _to_pipeline_view(row: PipelineRow) -> PipelineView:
    return PipelineView(
        namespace=row.namespace,
        name=row.name,
        command_template=row.command_template,
        timeout_seconds=row.timeout_seconds,
        description=row.description,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
