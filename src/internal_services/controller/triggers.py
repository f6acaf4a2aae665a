"""Durable reconcile trigger queue.

Delivery is at-least-once: a claimed trigger stays in the table until it is
acknowledged, and a claim whose lease expired can be taken again by another
controller.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, func, select

from internal_services.controller.models import ReconcileTrigger
from internal_services.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from internal_services.storage.sqlmodel_models import ReconcileTriggerRow

TRIGGER_CREATED = "created"
TRIGGER_REQUEUE = "requeue"
TRIGGER_PIPELINE_RUN_CHANGED = "pipeline_run_changed"
TRIGGER_CLEANUP = "cleanup"


class TriggerQueue:
    """Reconcile trigger persistence backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        lease_seconds: int = 300,
    ) -> None:
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(
        self,
        *,
        namespace: str,
        name: str,
        reason: str,
        attempt: int = 0,
        run_after: datetime | None = None,
    ) -> int:
        """Add one reconcile trigger and return its id."""

        now = utc_now()
        row = ReconcileTriggerRow(
            namespace=namespace,
            name=name,
            reason=reason,
            attempt=attempt,
            run_after=to_db_datetime(run_after or now),
            created_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.trigger_id or 0

    def claim_next(self, *, worker_id: str) -> ReconcileTrigger | None:
        """Claim the oldest ready trigger that is unclaimed or whose lease expired."""

        while True:
            now = utc_now()
            lease_cutoff = now - timedelta(seconds=self.lease_seconds)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ReconcileTriggerRow)
                    .where(
                        ReconcileTriggerRow.run_after <= to_db_datetime(now),
                        or_(
                            col(ReconcileTriggerRow.claimed_by).is_(None),
                            col(ReconcileTriggerRow.claimed_at) < to_db_datetime(lease_cutoff),
                        ),
                    )
                    .order_by(
                        col(ReconcileTriggerRow.run_after).asc(),
                        col(ReconcileTriggerRow.trigger_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                claim_guard = (
                    col(ReconcileTriggerRow.claimed_by).is_(None)
                    if candidate.claimed_by is None
                    else col(ReconcileTriggerRow.claimed_at) == candidate.claimed_at
                )
                result = session.exec(
                    sa_update(ReconcileTriggerRow)
                    .where(
                        col(ReconcileTriggerRow.trigger_id) == candidate.trigger_id,
                        claim_guard,
                    )
                    .values(claimed_by=worker_id, claimed_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return ReconcileTrigger(
                    trigger_id=candidate.trigger_id or 0,
                    namespace=candidate.namespace,
                    name=candidate.name,
                    reason=candidate.reason,
                    attempt=candidate.attempt,
                    run_after=to_utc_aware_datetime(candidate.run_after),
                    created_at=to_utc_aware_datetime(candidate.created_at),
                )

    def acknowledge(self, trigger_id: int) -> None:
        """Remove a processed trigger."""

        with Session(self.engine) as session:
            session.exec(
                sa_delete(ReconcileTriggerRow).where(
                    col(ReconcileTriggerRow.trigger_id) == trigger_id,
                ),
            )
            session.commit()

    def pending_count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(ReconcileTriggerRow)).one())
