"""Ordered reconcile steps with early-exit control directives."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class Directive(str, Enum):
    """Control signal returned by one reconcile step."""

    CONTINUE = "continue"
    STOP = "stop"
    REQUEUE = "requeue"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Result of one reconcile step."""

    directive: Directive
    message: str = ""
    requeue_delay_seconds: float | None = None
    error: BaseException | None = None

    @property
    def cancel_request(self) -> bool:
        return self.directive != Directive.CONTINUE

    @property
    def requeue(self) -> bool:
        return self.directive in {Directive.REQUEUE, Directive.ERROR}


Operation = Callable[[], OperationResult]


def continue_processing() -> OperationResult:
    return OperationResult(directive=Directive.CONTINUE)


def stop_processing(message: str = "") -> OperationResult:
    return OperationResult(directive=Directive.STOP, message=message)


def requeue(
    message: str = "",
    *,
    delay_seconds: float | None = None,
    error: BaseException | None = None,
) -> OperationResult:
    return OperationResult(
        directive=Directive.REQUEUE,
        message=message or (str(error) if error is not None else ""),
        requeue_delay_seconds=delay_seconds,
        error=error,
    )


@dataclass(slots=True)
class ReconcileOutcome:
    """Aggregate result of one reconcile invocation."""

    result: OperationResult
    executed: list[str] = field(default_factory=list)

    @property
    def directive(self) -> Directive:
        return self.result.directive

    @property
    def requeue(self) -> bool:
        return self.result.requeue


def reconcile_handler(operations: Sequence[Operation]) -> ReconcileOutcome:
    """Run ``operations`` in order and stop at the first non-continue result.

    An operation raising an unexpected exception ends the invocation with an
    ``ERROR`` directive, which callers retry like ``REQUEUE``.
    """

    executed: list[str] = []
    for operation in operations:
        name = getattr(operation, "__name__", repr(operation))
        executed.append(name)
        try:
            result = operation()
        except Exception as error:
            logger.exception("Reconcile step %s failed unexpectedly", name)
            return ReconcileOutcome(
                result=OperationResult(
                    directive=Directive.ERROR,
                    message=f"{type(error).__name__}: {error}",
                    error=error,
                ),
                executed=executed,
            )
        if result.cancel_request:
            return ReconcileOutcome(result=result, executed=executed)
    return ReconcileOutcome(result=continue_processing(), executed=executed)
