"""Aggregated request and pipeline run metrics for the stats command."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from internal_services.controller.conditions import LifecyclePhase
from internal_services.controller.models import InternalRequestView
from internal_services.pipelines.models import PipelineRunView


@dataclass(slots=True)
class DurationPercentiles:
    """Execution duration percentiles of completed requests."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    max_seconds: float


@dataclass(slots=True)
class ControllerMetricsSnapshot:
    """Counters rendered by ``controller stats``."""

    request_total: int
    phase_counts: dict[str, int]
    run_status_counts: dict[str, int]
    pending_triggers: int
    durations: DurationPercentiles | None

    @property
    def completed_total(self) -> int:
        return sum(
            self.phase_counts.get(phase.value, 0)
            for phase in (
                LifecyclePhase.SUCCEEDED,
                LifecyclePhase.FAILED,
                LifecyclePhase.REJECTED,
            )
        )


def build_controller_metrics(
    *,
    requests: list[InternalRequestView],
    runs: list[PipelineRunView],
    pending_triggers: int,
) -> ControllerMetricsSnapshot:
    phase_counts = Counter(request.status.phase.value for request in requests)
    run_status_counts = Counter(run.status.value for run in runs)

    durations: list[float] = []
    for request in requests:
        start_time = request.status.start_time
        completion_time = request.status.completion_time
        if start_time is None or completion_time is None:
            continue
        durations.append(max(0.0, (completion_time - start_time).total_seconds()))

    return ControllerMetricsSnapshot(
        request_total=len(requests),
        phase_counts=dict(sorted(phase_counts.items())),
        run_status_counts=dict(sorted(run_status_counts.items())),
        pending_triggers=pending_triggers,
        durations=(
            DurationPercentiles(
                sample_size=len(durations),
                p50_seconds=_percentile(durations, 0.5),
                p90_seconds=_percentile(durations, 0.9),
                max_seconds=max(durations),
            )
            if durations
            else None
        ),
    )


def render_stats_lines(*, snapshot: ControllerMetricsSnapshot) -> list[str]:
    lines = [
        f"Requests: {snapshot.request_total} (completed={snapshot.completed_total})",
    ]
    for phase in LifecyclePhase:
        lines.append(f"  {phase.value}: {snapshot.phase_counts.get(phase.value, 0)}")
    lines.append(f"Pipeline runs: {sum(snapshot.run_status_counts.values())}")
    for status, count in snapshot.run_status_counts.items():
        lines.append(f"  {status}: {count}")
    lines.append(f"Pending reconcile triggers: {snapshot.pending_triggers}")
    if snapshot.durations is None:
        lines.append("Execution duration: n/a")
    else:
        durations = snapshot.durations
        lines.append(
            f"Execution duration: n={durations.sample_size} "
            f"p50={durations.p50_seconds:.3f}s p90={durations.p90_seconds:.3f}s "
            f"max={durations.max_seconds:.3f}s",
        )
    return lines


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
