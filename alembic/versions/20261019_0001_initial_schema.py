"""Initial internal services schema: requests, events, pipelines, runs, triggers."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "internal_requests",
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("request", sa.String(), nullable=False),
        sa.Column("params_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("condition_status", sa.String(), nullable=True),
        sa.Column("condition_reason", sa.String(), nullable=True),
        sa.Column("condition_message", sa.Text(), nullable=True),
        sa.Column("condition_last_transition_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("results_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("uid"),
        sa.UniqueConstraint(
            "namespace",
            "name",
            name="uq_internal_requests_namespace_name",
        ),
    )
    op.create_index("ix_internal_requests_namespace", "internal_requests", ["namespace"])
    op.create_index("ix_internal_requests_request", "internal_requests", ["request"])
    op.create_index(
        "idx_internal_requests_reason",
        "internal_requests",
        ["condition_reason", "updated_at"],
    )

    op.create_table(
        "internal_request_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_uid", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("reason_from", sa.String(), nullable=True),
        sa.Column("reason_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["request_uid"],
            ["internal_requests.uid"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_internal_request_events_request_uid",
        "internal_request_events",
        ["request_uid"],
    )
    op.create_index(
        "ix_internal_request_events_event_type",
        "internal_request_events",
        ["event_type"],
    )
    op.create_index(
        "idx_internal_request_events_uid_time",
        "internal_request_events",
        ["request_uid", "created_at"],
    )

    op.create_table(
        "pipelines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("command_template", sa.Text(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="600"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("namespace", "name", name="uq_pipelines_namespace_name"),
    )
    op.create_index("ix_pipelines_namespace", "pipelines", ["namespace"])

    op.create_table(
        "pipeline_runs",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("pipeline_name", sa.String(), nullable=False),
        sa.Column("command_template", sa.Text(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="600"),
        sa.Column("params_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("request_namespace", sa.String(), nullable=False),
        sa.Column("request_name", sa.String(), nullable=False),
        sa.Column("request_uid", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("results_json", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )
    op.create_index("ix_pipeline_runs_namespace", "pipeline_runs", ["namespace"])
    op.create_index("ix_pipeline_runs_request_uid", "pipeline_runs", ["request_uid"])
    op.create_index("ix_pipeline_runs_status", "pipeline_runs", ["status"])
    op.create_index(
        "idx_pipeline_runs_owner",
        "pipeline_runs",
        ["request_namespace", "request_name"],
    )
    op.create_index("idx_pipeline_runs_queue", "pipeline_runs", ["status", "created_at"])

    op.create_table(
        "reconcile_triggers",
        sa.Column("trigger_id", sa.Integer(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("trigger_id"),
    )
    op.create_index(
        "idx_reconcile_triggers_ready",
        "reconcile_triggers",
        ["claimed_by", "run_after"],
    )


def downgrade() -> None:
    op.drop_table("reconcile_triggers")
    op.drop_table("pipeline_runs")
    op.drop_table("pipelines")
    op.drop_table("internal_request_events")
    op.drop_table("internal_requests")
