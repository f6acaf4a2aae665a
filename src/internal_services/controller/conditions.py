"""Succeeded-condition state machine for internal requests.

The request status is an immutable value. Every transition returns a new
``RequestStatus`` and is a no-op once the request has completed, so replayed
or concurrent reconciliations can never move a request out of a terminal state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from internal_services.storage.common import utc_now


class ConditionStatus(str, Enum):
    """Tri-state value of the Succeeded condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(str, Enum):
    """Reason codes carried by the Succeeded condition."""

    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REJECTED = "Rejected"


class LifecyclePhase(str, Enum):
    """Flattened view of the condition used by listings and metrics."""

    UNKNOWN = "Unknown"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REJECTED = "Rejected"


@dataclass(frozen=True, slots=True)
class Condition:
    """Single Succeeded condition slot."""

    status: ConditionStatus
    reason: ConditionReason
    message: str = ""
    last_transition_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class RequestStatus:
    """Observed state of one internal request."""

    condition: Condition | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None
    results: Mapping[str, str] = field(default_factory=dict)

    def has_completed(self) -> bool:
        condition = self.condition
        if condition is None:
            return False
        if condition.status == ConditionStatus.TRUE:
            return True
        return (
            condition.status == ConditionStatus.FALSE
            and condition.reason != ConditionReason.RUNNING
        )

    def has_failed(self) -> bool:
        condition = self.condition
        if condition is None or condition.status == ConditionStatus.TRUE:
            return False
        return (
            condition.status == ConditionStatus.FALSE
            and condition.reason != ConditionReason.RUNNING
        )

    def has_succeeded(self) -> bool:
        return self.condition is not None and self.condition.status == ConditionStatus.TRUE

    def is_running(self) -> bool:
        condition = self.condition
        return (
            condition is not None
            and condition.status != ConditionStatus.TRUE
            and condition.reason == ConditionReason.RUNNING
        )

    @property
    def phase(self) -> LifecyclePhase:
        if self.condition is None:
            return LifecyclePhase.UNKNOWN
        if self.has_succeeded():
            return LifecyclePhase.SUCCEEDED
        if self.is_running():
            return LifecyclePhase.RUNNING
        if self.condition.reason == ConditionReason.REJECTED:
            return LifecyclePhase.REJECTED
        if self.condition.reason == ConditionReason.FAILED:
            return LifecyclePhase.FAILED
        return LifecyclePhase.UNKNOWN

    def mark_running(self, *, now: datetime | None = None) -> RequestStatus:
        """Move to Running and register the start time on first entry."""

        if self.has_completed() or self.is_running():
            return self
        timestamp = now or utc_now()
        return replace(
            self,
            condition=Condition(
                status=ConditionStatus.FALSE,
                reason=ConditionReason.RUNNING,
                last_transition_time=timestamp,
            ),
            start_time=timestamp,
        )

    def mark_succeeded(
        self,
        *,
        results: Mapping[str, str] | None = None,
        now: datetime | None = None,
    ) -> RequestStatus:
        """Register the completion time and set the condition to True."""

        if self.has_completed():
            return self
        timestamp = now or utc_now()
        return replace(
            self,
            condition=Condition(
                status=ConditionStatus.TRUE,
                reason=ConditionReason.SUCCEEDED,
                last_transition_time=timestamp,
            ),
            completion_time=timestamp,
            results=dict(results) if results is not None else dict(self.results),
        )

    def mark_failed(
        self,
        message: str,
        *,
        results: Mapping[str, str] | None = None,
        now: datetime | None = None,
    ) -> RequestStatus:
        """Register the completion time and set the condition to False/Failed."""

        if self.has_completed():
            return self
        timestamp = now or utc_now()
        return replace(
            self,
            condition=Condition(
                status=ConditionStatus.FALSE,
                reason=ConditionReason.FAILED,
                message=message,
                last_transition_time=timestamp,
            ),
            completion_time=timestamp,
            results=dict(results) if results is not None else dict(self.results),
        )

    def mark_rejected(self, message: str, *, now: datetime | None = None) -> RequestStatus:
        """Set the condition to False/Rejected without touching timestamps.

        A started request is never rejected; only its run decides how it ends.
        """

        if self.has_completed() or self.is_running():
            return self
        return replace(
            self,
            condition=Condition(
                status=ConditionStatus.FALSE,
                reason=ConditionReason.REJECTED,
                message=message,
                last_transition_time=now or utc_now(),
            ),
        )


def completed_with_execution(before: RequestStatus, after: RequestStatus) -> bool:
    """True when a transition just finished an executed request (Succeeded or Failed)."""

    if before.has_completed() or not after.has_completed():
        return False
    return after.phase in {LifecyclePhase.SUCCEEDED, LifecyclePhase.FAILED}
