"""Best-effort completion notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestCompletion:
    """Completion event emitted once per executed request."""

    namespace: str
    name: str
    request: str
    reason: str
    start_time: datetime | None
    completion_time: datetime | None

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.completion_time is None:
            return None
        return max(0.0, (self.completion_time - self.start_time).total_seconds())


class CompletionListener(Protocol):
    """Receives completion events after the terminal status is persisted."""

    def request_completed(self, completion: RequestCompletion) -> None:
        """Handle one completion event."""


class LoggingCompletionListener:
    """Write completion events to the log."""

    def request_completed(self, completion: RequestCompletion) -> None:
        duration = completion.duration_seconds
        logger.info(
            "Internal request %s/%s (%s) completed: reason=%s duration=%s",
            completion.namespace,
            completion.name,
            completion.request,
            completion.reason,
            f"{duration:.3f}s" if duration is not None else "n/a",
        )


def notify_completion(listener: CompletionListener, completion: RequestCompletion) -> None:
    """Deliver ``completion``; listener failures are logged and dropped."""

    try:
        listener.request_completed(completion)
    except Exception:
        logger.exception(
            "Completion listener failed for %s/%s",
            completion.namespace,
            completion.name,
        )
