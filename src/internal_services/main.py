"""CLI entrypoint for internal-services."""

import logging
import os
from pathlib import Path

import rich_click as click

from internal_services import __version__
from internal_services.controller.controllers import (
    ControllerDbCommand,
    ControllerRunCommand,
    ReconcileCliController,
    RequestCliController,
    RequestCreateCommand,
    RequestListCommand,
    RequestRefCommand,
    parse_request_ref,
)
from internal_services.controller.loader import ConfigLoadError
from internal_services.controller.models import InvalidRequestError
from internal_services.pipelines.controllers import (
    PipelineCliController,
    PipelineListCommand,
    PipelineRegisterCommand,
    PipelineRunsCommand,
    RunnerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
REQUEST_CONTROLLER = RequestCliController()
RECONCILE_CONTROLLER = ReconcileCliController()
PIPELINE_CONTROLLER = PipelineCliController()
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="internal-services")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level (defaults to INTERNAL_SERVICES_LOG_LEVEL or INFO).",
)
def internal_services(log_level: str | None) -> None:
    """Internal services controller CLI."""

    level = (log_level or os.getenv("INTERNAL_SERVICES_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=_LOG_FORMAT)


def _request_ref(_ctx: click.Context, _param: click.Parameter, value: str) -> tuple[str, str]:
    try:
        return parse_request_ref(value)
    except ValueError as error:
        raise click.BadParameter(str(error)) from error


@internal_services.group()
def request() -> None:
    """Internal request commands."""


@request.command("create")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--namespace", required=True, help="Requester namespace.")
@click.option("--pipeline", required=True, help="Name of the pipeline to run.")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Pipeline parameter as key=value. Can be repeated.",
)
def request_create(
    name: str,
    db_path: Path | None,
    namespace: str,
    pipeline: str,
    params: tuple[str, ...],
) -> None:
    """Create an internal request and queue it for reconciliation."""

    try:
        lines = REQUEST_CONTROLLER.create(
            RequestCreateCommand(
                db_path=db_path,
                namespace=namespace,
                name=name,
                pipeline=pipeline,
                params=params,
            ),
        )
    except InvalidRequestError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@request.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--namespace", default=None, help="Optional requester namespace filter.")
@click.option(
    "--reason",
    type=click.Choice(
        ["unknown", "running", "succeeded", "failed", "rejected"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional lifecycle filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of requests to print.",
)
def request_list(
    db_path: Path | None,
    namespace: str | None,
    reason: str | None,
    limit: int,
) -> None:
    """List recent internal requests."""

    _emit_lines(
        REQUEST_CONTROLLER.list_requests(
            RequestListCommand(
                db_path=db_path,
                namespace=namespace,
                phase=reason,
                limit=limit,
            ),
        ),
    )


@request.command("inspect")
@click.argument("ref", callback=_request_ref, metavar="NAMESPACE/NAME")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def request_inspect(ref: tuple[str, str], db_path: Path | None) -> None:
    """Show request status, results and event trail."""

    namespace, name = ref
    _emit_lines(
        REQUEST_CONTROLLER.inspect(
            RequestRefCommand(db_path=db_path, namespace=namespace, name=name),
        ),
    )


@internal_services.group()
def pipeline() -> None:
    """Pipeline template and run commands."""


@pipeline.command("register")
@click.argument("name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--command",
    "command_template",
    required=True,
    help="Command template; `{param}` placeholders are replaced by request params.",
)
@click.option(
    "--namespace",
    default=None,
    help="Pipeline namespace (defaults to pipelineNamespace from the services config).",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Run timeout in seconds.",
)
@click.option("--description", default=None, help="Optional description.")
def pipeline_register(  # noqa: PLR0913
    name: str,
    db_path: Path | None,
    command_template: str,
    namespace: str | None,
    timeout_seconds: int | None,
    description: str | None,
) -> None:
    """Create or replace a pipeline template."""

    try:
        lines = PIPELINE_CONTROLLER.register(
            PipelineRegisterCommand(
                db_path=db_path,
                name=name,
                namespace=namespace,
                command_template=command_template,
                timeout_seconds=timeout_seconds,
                description=description,
            ),
        )
    except (ValueError, ConfigLoadError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@pipeline.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--namespace", default=None, help="Optional pipeline namespace filter.")
def pipeline_list(db_path: Path | None, namespace: str | None) -> None:
    """List registered pipeline templates."""

    _emit_lines(
        PIPELINE_CONTROLLER.list_pipelines(
            PipelineListCommand(db_path=db_path, namespace=namespace),
        ),
    )


@pipeline.command("runs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "succeeded", "failed"]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of runs to print.",
)
def pipeline_runs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List pipeline runs."""

    _emit_lines(
        PIPELINE_CONTROLLER.list_runs(
            PipelineRunsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@internal_services.group()
def controller() -> None:
    """Reconcile controller commands."""


@controller.command("reconcile")
@click.argument("ref", callback=_request_ref, metavar="NAMESPACE/NAME")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def controller_reconcile(ref: tuple[str, str], db_path: Path | None) -> None:
    """Reconcile one internal request right now."""

    namespace, name = ref
    _emit_lines(
        RECONCILE_CONTROLLER.reconcile(
            RequestRefCommand(db_path=db_path, namespace=namespace, name=name),
        ),
    )


@controller.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one trigger or loop until idle.",
)
@click.option(
    "--max-triggers",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed triggers in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def controller_run(
    db_path: Path | None,
    once: bool,
    max_triggers: int | None,
    max_idle_polls: int,
) -> None:
    """Run the reconcile controller."""

    _emit_lines(
        RECONCILE_CONTROLLER.run(
            ControllerRunCommand(
                db_path=db_path,
                once=once,
                max_triggers=max_triggers,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@controller.command("gc")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def controller_gc(db_path: Path | None) -> None:
    """Delete pipeline runs of completed or deleted requests."""

    try:
        lines = RECONCILE_CONTROLLER.gc(ControllerDbCommand(db_path=db_path))
    except ConfigLoadError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@controller.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def controller_stats(db_path: Path | None) -> None:
    """Show request, pipeline run and queue counters."""

    _emit_lines(RECONCILE_CONTROLLER.stats(ControllerDbCommand(db_path=db_path)))


@internal_services.group()
def runner() -> None:
    """Local pipeline runner commands."""


@runner.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Execute one pending run or loop until idle.",
)
@click.option(
    "--max-runs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for executed runs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def runner_run(
    db_path: Path | None,
    once: bool,
    max_runs: int | None,
    max_idle_polls: int,
) -> None:
    """Execute pending pipeline runs."""

    _emit_lines(
        PIPELINE_CONTROLLER.run_runner(
            RunnerRunCommand(
                db_path=db_path,
                once=once,
                max_runs=max_runs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    internal_services()
