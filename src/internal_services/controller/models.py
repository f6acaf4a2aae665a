"""Domain models for internal requests and their reconciliation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from internal_services.controller.conditions import ConditionReason, RequestStatus

REQUEST_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class InvalidRequestError(ValueError):
    """Internal request rejected at creation time."""


class StatusConflictError(RuntimeError):
    """Status write lost an optimistic concurrency race."""


@dataclass(frozen=True, slots=True)
class RequestIdentity:
    """Stable identity of one internal request."""

    namespace: str
    name: str
    uid: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(slots=True)
class InternalRequestCreate:
    """Input payload for creating an internal request."""

    namespace: str
    name: str
    request: str
    params: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise InvalidRequestError when names or params are malformed."""

        for label, value in (
            ("namespace", self.namespace),
            ("name", self.name),
            ("request", self.request),
        ):
            if not REQUEST_NAME_PATTERN.fullmatch(value or ""):
                raise InvalidRequestError(
                    f"Invalid {label} {value!r}: must match {REQUEST_NAME_PATTERN.pattern}",
                )
        for key, value in self.params.items():
            if not isinstance(key, str) or not key:
                raise InvalidRequestError(f"Invalid param name: {key!r}")
            if not isinstance(value, str):
                raise InvalidRequestError(f"Param {key!r} must be a string, got {value!r}")


@dataclass(slots=True)
class InternalRequestView:
    """Snapshot of one internal request as read from storage."""

    identity: RequestIdentity
    request: str
    params: dict[str, str]
    status: RequestStatus
    resource_version: int
    created_at: datetime
    updated_at: datetime

    @property
    def namespace(self) -> str:
        return self.identity.namespace

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def uid(self) -> str:
        return self.identity.uid

    def has_completed(self) -> bool:
        return self.status.has_completed()

    def has_failed(self) -> bool:
        return self.status.has_failed()

    def has_succeeded(self) -> bool:
        return self.status.has_succeeded()

    def is_running(self) -> bool:
        return self.status.is_running()


@dataclass(slots=True)
class InternalRequestEventView:
    """Status transition entry for the audit trail."""

    event_id: int
    request_uid: str
    event_type: str
    reason_from: ConditionReason | None
    reason_to: ConditionReason | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InternalRequestDetails:
    """Request snapshot with its event trail."""

    request: InternalRequestView
    events: list[InternalRequestEventView]


@dataclass(slots=True)
class ReconcileTrigger:
    """Claimed reconcile trigger."""

    trigger_id: int
    namespace: str
    name: str
    reason: str
    attempt: int
    run_after: datetime
    created_at: datetime
