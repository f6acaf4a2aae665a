"""Controllers for pipeline catalog and runner CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from internal_services.config import Settings
from internal_services.controller.controllers import open_stores
from internal_services.controller.loader import ConfigLoader
from internal_services.pipelines.models import PipelineRunStatus, PipelineWrite
from internal_services.pipelines.runner import PipelineRunner


@dataclass(slots=True)
class PipelineRegisterCommand:
    """CLI input for pipeline template registration."""

    db_path: Path | None
    name: str
    namespace: str | None
    command_template: str
    timeout_seconds: int | None
    description: str | None


@dataclass(slots=True)
class PipelineListCommand:
    """CLI input for pipeline template listing."""

    db_path: Path | None
    namespace: str | None


@dataclass(slots=True)
class PipelineRunsCommand:
    """CLI input for pipeline run listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class RunnerRunCommand:
    """CLI input for the local pipeline runner."""

    db_path: Path | None
    once: bool
    max_runs: int | None
    max_idle_polls: int


class PipelineCliController:
    """Coordinates pipeline templates, runs and the local runner."""

    def register(self, command: PipelineRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        namespace = (
            command.namespace
            or ConfigLoader(settings.controller.config_path).load().pipeline_namespace
        )
        with open_stores(settings) as stores:
            pipeline = stores.catalog.register(
                PipelineWrite(
                    namespace=namespace,
                    name=command.name,
                    command_template=command.command_template,
                    timeout_seconds=command.timeout_seconds
                    or settings.runner.default_timeout_seconds,
                    description=command.description,
                ),
            )
        return [
            f"Pipeline registered: {pipeline.namespace}/{pipeline.name} "
            f"timeout={pipeline.timeout_seconds}s",
        ]

    def list_pipelines(self, command: PipelineListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            pipelines = stores.catalog.list_pipelines(namespace=command.namespace)

        lines = [f"Pipelines: {len(pipelines)}"]
        for pipeline in pipelines:
            lines.append(
                f"  {pipeline.namespace}/{pipeline.name} timeout={pipeline.timeout_seconds}s "
                f"command={pipeline.command_template}",
            )
            if pipeline.description:
                lines.append(f"    {pipeline.description}")
        return lines

    def list_runs(self, command: PipelineRunsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = PipelineRunStatus(command.status) if command.status else None
        with open_stores(settings) as stores:
            runs = stores.runs.list_runs(status=status, limit=command.limit)

        lines = [f"Pipeline runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.name} pipeline={run.namespace}/{run.pipeline_name} "
                f"request={run.request_namespace}/{run.request_name} "
                f"status={run.status.value} exit_code={run.exit_code} "
                f"results={len(run.results)}",
            )
            if run.message:
                lines.append(f"    {run.message}")
        return lines

    def run_runner(self, command: RunnerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_stores(settings) as stores:
            runner = PipelineRunner(
                runs=stores.runs,
                triggers=stores.triggers,
                runner_id=settings.runner.runner_id,
                workdir_root=settings.runner.workdir_root,
                poll_interval_seconds=settings.runner.poll_interval_seconds,
                graceful_shutdown_seconds=settings.runner.graceful_shutdown_seconds,
                stale_grace_seconds=settings.runner.stale_grace_seconds,
            )
            summary = (
                runner.run_once()
                if command.once
                else runner.run_loop(
                    max_runs=command.max_runs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Runner summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]
