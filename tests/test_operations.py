from __future__ import annotations

import allure

from internal_services.controller.operations import (
    Directive,
    OperationResult,
    continue_processing,
    reconcile_handler,
    requeue,
    stop_processing,
)

pytestmark = [
    allure.epic("Request Lifecycle"),
    allure.feature("Reconcile Steps"),
]


def _step(name: str, result: OperationResult, calls: list[str]):
    def _operation() -> OperationResult:
        calls.append(name)
        return result

    _operation.__name__ = name
    return _operation


def test_handler_runs_all_steps_when_each_continues() -> None:
    calls: list[str] = []
    outcome = reconcile_handler(
        [
            _step("first", continue_processing(), calls),
            _step("second", continue_processing(), calls),
        ],
    )

    assert calls == ["first", "second"]
    assert outcome.directive == Directive.CONTINUE
    assert outcome.executed == ["first", "second"]
    assert not outcome.requeue


def test_handler_stops_at_first_stop() -> None:
    calls: list[str] = []
    outcome = reconcile_handler(
        [
            _step("first", continue_processing(), calls),
            _step("second", stop_processing("done"), calls),
            _step("third", continue_processing(), calls),
        ],
    )

    assert calls == ["first", "second"]
    assert outcome.directive == Directive.STOP
    assert outcome.result.message == "done"
    assert not outcome.requeue


def test_handler_returns_requeue_with_delay() -> None:
    calls: list[str] = []
    error = TimeoutError("config backend timed out")
    outcome = reconcile_handler(
        [
            _step("first", requeue(error=error, delay_seconds=3.0), calls),
            _step("second", continue_processing(), calls),
        ],
    )

    assert calls == ["first"]
    assert outcome.directive == Directive.REQUEUE
    assert outcome.requeue
    assert outcome.result.requeue_delay_seconds == 3.0
    assert outcome.result.error is error
    assert outcome.result.message == "config backend timed out"


def test_handler_turns_unexpected_exception_into_error() -> None:
    calls: list[str] = []

    def exploding() -> OperationResult:
        raise KeyError("missing")

    outcome = reconcile_handler(
        [
            _step("first", continue_processing(), calls),
            exploding,
            _step("third", continue_processing(), calls),
        ],
    )

    assert calls == ["first"]
    assert outcome.directive == Directive.ERROR
    assert outcome.requeue
    assert outcome.executed == ["first", "exploding"]
    assert isinstance(outcome.result.error, KeyError)
