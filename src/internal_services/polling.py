"""Poll loop shared by the reconcile controller and the pipeline runner."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import fields
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)


class LoopSummary(Protocol):
    processed: int


SummaryT = TypeVar("SummaryT", bound=LoopSummary)


class PollingLoop:
    """Repeats a unit of work until its source is idle or a stop is requested.

    SIGINT and SIGTERM request a stop while ``run`` is active; the unit of work
    in progress is allowed to finish.
    """

    def __init__(self, *, name: str, poll_interval_seconds: float) -> None:
        self.name = name
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, reason: str) -> None:
        logger.info("Received %s, stopping %s", reason, self.name)
        self._stop_requested = True

    def run(
        self,
        step: Callable[[], SummaryT],
        aggregate: SummaryT,
        *,
        max_processed: int | None = None,
        max_idle_polls: int = 1,
    ) -> SummaryT:
        """Call ``step`` and add its counters into ``aggregate`` until done.

        Args:
            step: One poll; a summary with ``processed == 0`` counts as idle.
            aggregate: Summary the integer counters of every step are added to.
            max_processed: Stop once this many items were processed (None = unlimited).
            max_idle_polls: How many consecutive idle polls before exiting.
        """

        consecutive_idle = 0
        with self.signal_handlers():
            while not self._stop_requested:
                if max_processed is not None and aggregate.processed >= max_processed:
                    break

                summary = step()
                _accumulate(aggregate, summary)

                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    break
                self.sleep(self.poll_interval_seconds)
        return aggregate

    def sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Route SIGINT and SIGTERM to ``request_stop`` for the duration of the block."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False

        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _accumulate(aggregate: object, summary: object) -> None:
    for item in fields(summary):  # type: ignore[arg-type]
        setattr(aggregate, item.name, getattr(aggregate, item.name) + getattr(summary, item.name))
