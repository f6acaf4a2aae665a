"""Local execution engine for pending pipeline runs."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import IO

from internal_services.controller.triggers import TRIGGER_PIPELINE_RUN_CHANGED, TriggerQueue
from internal_services.pipelines.models import PipelineRunStatus, PipelineRunView
from internal_services.pipelines.runs import PipelineRunStore
from internal_services.polling import PollingLoop

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_STDERR_TAIL_CHARS = 400


class PipelineCommandError(RuntimeError):
    """Pipeline command could not be rendered or started."""


@dataclass(slots=True)
class RunnerRunSummary:
    """Aggregate runner counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    recovered: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class CommandResult:
    """Exit status of one pipeline command."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path


@dataclass(slots=True)
class RunExecution:
    """Terminal outcome reported back to the run store."""

    status: PipelineRunStatus
    message: str | None
    exit_code: int | None
    timed_out: bool = False
    results: dict[str, str] = field(default_factory=dict)


class PipelineRunner:
    """Claims pending pipeline runs and executes their command templates.

    A run's command template is rendered with the run parameters plus
    ``{results_dir}`` and ``{run_name}``. The command writes results as files
    into ``$RESULTS_DIR``: the file name is the result key and the file content
    is the value. After a run finishes, a reconcile trigger is enqueued for
    the owning internal request.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        runs: PipelineRunStore,
        triggers: TriggerQueue,
        runner_id: str,
        workdir_root: Path,
        poll_interval_seconds: float = 2.0,
        graceful_shutdown_seconds: int = 30,
        stale_grace_seconds: int = 60,
    ) -> None:
        self.runs = runs
        self.triggers = triggers
        self.runner_id = runner_id
        self.workdir_root = workdir_root
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.loop = PollingLoop(
            name=f"runner {runner_id}",
            poll_interval_seconds=poll_interval_seconds,
        )

    def run_once(self) -> RunnerRunSummary:
        """Recover stale runs, then execute at most one pending run."""

        summary = RunnerRunSummary()
        if self.loop.stop_requested:
            summary.idle_polls = 1
            return summary

        grace = timedelta(seconds=self.stale_grace_seconds)
        for stale in self.runs.recover_stale_runs(grace=grace):
            logger.warning("Pipeline run %s lost its runner %s", stale.name, stale.worker_id)
            self._notify_owner(stale)
            summary.recovered += 1

        run = self.runs.claim_next_pending(worker_id=self.runner_id)
        if run is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._notify_owner(run)
        logger.info("Runner %s started pipeline run %s", self.runner_id, run.name)
        execution = self.execute(run)
        finished = self.runs.finish_run(
            name=run.name,
            status=execution.status,
            message=execution.message,
            results=execution.results,
            exit_code=execution.exit_code,
        )
        if not finished:
            logger.warning("Pipeline run %s was deleted or recovered while running", run.name)
        else:
            logger.info(
                "Pipeline run %s finished: status=%s exit_code=%s",
                run.name,
                execution.status.value,
                execution.exit_code,
            )
            if execution.status == PipelineRunStatus.SUCCEEDED:
                summary.succeeded = 1
            else:
                summary.failed = 1
            if execution.timed_out:
                summary.timeouts = 1
        self._notify_owner(run)
        return summary

    def run_loop(
        self,
        *,
        max_runs: int | None = None,
        max_idle_polls: int = 1,
    ) -> RunnerRunSummary:
        """Run until no pending runs remain or ``max_runs`` were executed."""

        return self.loop.run(
            self.run_once,
            RunnerRunSummary(),
            max_processed=max_runs,
            max_idle_polls=max_idle_polls,
        )

    def execute(self, run: PipelineRunView) -> RunExecution:
        """Run the command of ``run`` in its own workdir and collect results."""

        workdir = self.workdir_root / run.name
        results_dir = workdir / "results"
        results_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"

        try:
            run_args = render_command(
                run.command_template,
                params=run.params,
                builtins={"results_dir": str(results_dir), "run_name": run.name},
            )
        except PipelineCommandError as error:
            return RunExecution(
                status=PipelineRunStatus.FAILED,
                message=str(error),
                exit_code=None,
            )

        env = os.environ.copy()
        env["RESULTS_DIR"] = str(results_dir)
        env["PIPELINE_RUN_NAME"] = run.name
        env["INTERNAL_REQUEST"] = f"{run.request_namespace}/{run.request_name}"

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    cwd=workdir,
                    env=env,
                    timeout_seconds=run.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=lambda: self.loop.stop_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )
        except FileNotFoundError:
            return RunExecution(
                status=PipelineRunStatus.FAILED,
                message=f"Pipeline command not found: {run_args[0]}",
                exit_code=None,
            )
        except OSError as error:
            return RunExecution(
                status=PipelineRunStatus.FAILED,
                message=f"Pipeline command failed to start: {error}",
                exit_code=None,
            )

        results = collect_results(results_dir)
        if result.timed_out:
            return RunExecution(
                status=PipelineRunStatus.FAILED,
                message=f"Pipeline command timed out after {run.timeout_seconds}s",
                exit_code=result.exit_code,
                timed_out=True,
                results=results,
            )
        if result.exit_code != 0:
            stderr_tail = _tail(result.stderr_path)
            message = f"Pipeline command exited with code {result.exit_code}"
            return RunExecution(
                status=PipelineRunStatus.FAILED,
                message=f"{message}: {stderr_tail}" if stderr_tail else message,
                exit_code=result.exit_code,
                results=results,
            )
        return RunExecution(
            status=PipelineRunStatus.SUCCEEDED,
            message=None,
            exit_code=result.exit_code,
            results=results,
        )

    def _notify_owner(self, run: PipelineRunView) -> None:
        self.triggers.enqueue(
            namespace=run.request_namespace,
            name=run.request_name,
            reason=TRIGGER_PIPELINE_RUN_CHANGED,
        )


def render_command(
    template: str,
    *,
    params: Mapping[str, str],
    builtins: Mapping[str, str] | None = None,
) -> list[str]:
    """Substitute shell-quoted ``{name}`` placeholders and split into argv."""

    stripped = template.strip()
    if not stripped:
        raise PipelineCommandError("Pipeline command template is empty.")
    values = {key: shlex.quote(value) for key, value in params.items()}
    values.update({key: shlex.quote(value) for key, value in (builtins or {}).items()})
    try:
        rendered = stripped.format(**values)
    except KeyError as error:
        raise PipelineCommandError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    except (IndexError, ValueError) as error:
        raise PipelineCommandError(f"Malformed command template: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise PipelineCommandError("Pipeline command template rendered empty command.")
    return argv


def collect_results(results_dir: Path) -> dict[str, str]:
    """Read one result per file; trailing newlines are dropped."""

    if not results_dir.is_dir():
        return {}
    results: dict[str, str] = {}
    for path in sorted(results_dir.iterdir()):
        if not path.is_file() or path.name.startswith("."):
            continue
        results[path.name] = path.read_text("utf-8", errors="replace").rstrip("\n")
    return results


def _tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace").strip()
    except OSError:
        return ""
    return text[-_STDERR_TAIL_CHARS:]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool],
    graceful_shutdown_seconds: int,
    stdout_path: Path,
    stderr_path: Path,
) -> CommandResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return CommandResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        if shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return CommandResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
