from __future__ import annotations

import time
from datetime import timedelta

import allure

from internal_services.controller.triggers import (
    TRIGGER_CREATED,
    TRIGGER_REQUEUE,
    TriggerQueue,
)
from internal_services.storage.common import utc_now

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Reconcile Triggers"),
]


def test_claim_returns_oldest_ready_trigger(harness) -> None:
    first = harness.triggers.enqueue(
        namespace="tenant-a",
        name="release-1",
        reason=TRIGGER_CREATED,
    )
    harness.triggers.enqueue(namespace="tenant-a", name="release-2", reason=TRIGGER_REQUEUE)

    claimed = harness.triggers.claim_next(worker_id="controller-a")

    assert claimed is not None
    assert claimed.trigger_id == first
    assert (claimed.namespace, claimed.name, claimed.reason) == (
        "tenant-a",
        "release-1",
        TRIGGER_CREATED,
    )
    assert claimed.attempt == 0


def test_claimed_trigger_is_hidden_until_lease_expires(harness) -> None:
    harness.triggers.enqueue(namespace="tenant-a", name="release-1", reason=TRIGGER_CREATED)

    assert harness.triggers.claim_next(worker_id="controller-a") is not None
    assert harness.triggers.claim_next(worker_id="controller-b") is None
    assert harness.triggers.pending_count() == 1


def test_expired_lease_is_claimed_again(harness) -> None:
    queue = TriggerQueue(harness.db_path, lease_seconds=0)
    try:
        trigger_id = queue.enqueue(namespace="tenant-a", name="release-1", reason=TRIGGER_CREATED)
        assert queue.claim_next(worker_id="controller-a") is not None
        time.sleep(0.01)

        reclaimed = queue.claim_next(worker_id="controller-b")
    finally:
        queue.close()

    assert reclaimed is not None
    assert reclaimed.trigger_id == trigger_id


def test_future_trigger_waits_for_run_after(harness) -> None:
    harness.triggers.enqueue(
        namespace="tenant-a",
        name="release-1",
        reason=TRIGGER_REQUEUE,
        attempt=2,
        run_after=utc_now() + timedelta(minutes=5),
    )

    assert harness.triggers.claim_next(worker_id="controller-a") is None
    assert harness.triggers.pending_count() == 1


def test_acknowledge_removes_trigger(harness) -> None:
    harness.triggers.enqueue(namespace="tenant-a", name="release-1", reason=TRIGGER_CREATED)
    claimed = harness.triggers.claim_next(worker_id="controller-a")
    assert claimed is not None

    harness.triggers.acknowledge(claimed.trigger_id)

    assert harness.triggers.pending_count() == 0
    assert harness.triggers.claim_next(worker_id="controller-a") is None


def test_duplicate_triggers_are_kept(harness) -> None:
    for _ in range(3):
        harness.triggers.enqueue(namespace="tenant-a", name="release-1", reason=TRIGGER_CREATED)

    claimed = [harness.triggers.claim_next(worker_id="controller-a") for _ in range(3)]

    assert all(item is not None for item in claimed)
    assert len({item.trigger_id for item in claimed if item is not None}) == 3
