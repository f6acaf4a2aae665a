"""SQLModel ORM tables for internal request storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class InternalRequestRow(SQLModel, table=True):
    __tablename__ = "internal_requests"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_internal_requests_namespace_name"),
        Index("idx_internal_requests_reason", "condition_reason", "updated_at"),
    )

    uid: str = Field(primary_key=True)
    namespace: str = Field(index=True)
    name: str
    request: str = Field(index=True)
    params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    resource_version: int = Field(default=1)
    condition_status: str | None = None
    condition_reason: str | None = None
    condition_message: str | None = Field(default=None, sa_column=Column(Text))
    condition_last_transition_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    start_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completion_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    results_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class InternalRequestEventRow(SQLModel, table=True):
    __tablename__ = "internal_request_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_internal_request_events_uid_time", "request_uid", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    request_uid: str = Field(
        sa_column=Column(
            ForeignKey("internal_requests.uid", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    reason_from: str | None = None
    reason_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRow(SQLModel, table=True):
    __tablename__ = "pipelines"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("namespace", "name", name="uq_pipelines_namespace_name"),)

    id: int | None = Field(default=None, primary_key=True)
    namespace: str = Field(index=True)
    name: str
    command_template: str = Field(sa_column=Column(Text, nullable=False))
    timeout_seconds: int = Field(default=600)
    description: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRunRow(SQLModel, table=True):
    __tablename__ = "pipeline_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_pipeline_runs_owner", "request_namespace", "request_name"),
        Index("idx_pipeline_runs_queue", "status", "created_at"),
    )

    name: str = Field(primary_key=True)
    namespace: str = Field(index=True)
    pipeline_name: str
    command_template: str = Field(sa_column=Column(Text, nullable=False))
    timeout_seconds: int = Field(default=600)
    params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    request_namespace: str
    request_name: str
    request_uid: str = Field(index=True)
    status: str = Field(index=True)
    message: str | None = Field(default=None, sa_column=Column(Text))
    results_json: str | None = Field(default=None, sa_column=Column(Text))
    exit_code: int | None = None
    worker_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReconcileTriggerRow(SQLModel, table=True):
    __tablename__ = "reconcile_triggers"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_reconcile_triggers_ready", "claimed_by", "run_after"),)

    trigger_id: int | None = Field(default=None, primary_key=True)
    namespace: str
    name: str
    reason: str
    attempt: int = Field(default=0)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_by: str | None = None
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
