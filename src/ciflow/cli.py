"""CLI interface for the ciflow pipeline engine."""

from __future__ import annotations

import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer

from ciflow import __version__
from ciflow.config import CiflowConfig
from ciflow.exceptions import CiflowError, ConfigError, DefinitionError, GraphError
from ciflow.paths import RunPaths
from ciflow.pipeline.definition import PipelineDefinition
from ciflow.pipeline.engine import ExecutionEngine
from ciflow.pipeline.graph import PipelineGraph
from ciflow.pipeline.report import Report, finalize, write_report
from ciflow.state import PipelineRun

logger = structlog.get_logger()

app = typer.Typer(
    name="ciflow",
    help="Run CI/CD pipelines as validated stage graphs",
    no_args_is_help=True,
)


def configure_logging(level: str = "info", *, json_logs: bool = False) -> None:
    """Configure structlog for CLI output.

    Logs go to stderr so that stdout carries only command output.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


@contextmanager
def _termination_signals() -> Iterator[None]:
    """Convert SIGTERM/SIGINT into KeyboardInterrupt so the engine can abort."""
    old_term = signal.getsignal(signal.SIGTERM)
    old_int = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: Any) -> None:  # noqa: ARG001
        raise KeyboardInterrupt(f"Received signal {signum}")

    try:
        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not the main thread: signals stay with the host
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, old_term)
        signal.signal(signal.SIGINT, old_int)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"ciflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ciflow - pipeline orchestration engine."""
    pass


def _load_graph(definition: Path) -> tuple[PipelineDefinition, PipelineGraph]:
    pipeline = PipelineDefinition.load(definition)
    return pipeline, PipelineGraph.build(pipeline.stages)


def _fail_diagnostic(error: CiflowError) -> None:
    typer.echo(typer.style(f"{error.kind}: {error}", fg=typer.colors.RED), err=True)


def _echo_outcome(report: Report) -> None:
    """Print the warning banners, root cause and summary of a run."""
    for warning in report.warnings:
        typer.echo(
            typer.style(
                f"WARNING: stage '{warning.stage}' failed "
                f"({warning.status}) - continuing",
                fg=typer.colors.YELLOW,
            )
        )

    typer.echo("")
    typer.echo(report.render_text(), nl=False)
    typer.echo("")

    if report.succeeded:
        typer.echo(typer.style("Pipeline succeeded.", fg=typer.colors.GREEN))
    elif report.root_cause:
        rc = report.root_cause
        typer.echo(
            typer.style(f"Pipeline failed at stage '{rc.stage}'.", fg=typer.colors.RED)
        )
    else:
        typer.echo(typer.style("Pipeline aborted.", fg=typer.colors.RED))


@app.command()
def run(
    definition: Annotated[
        Path,
        typer.Argument(help="Path to the pipeline definition (YAML)"),
    ],
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to ciflow.yaml config file",
        ),
    ] = None,
    runs_dir: Annotated[
        Path | None,
        typer.Option(
            "--runs-dir",
            help="Directory for run state and logs (overrides config)",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Don't execute commands, just log them",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Print the report as JSON",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Log level (debug, info, warning, error)",
        ),
    ] = None,
    json_logs: Annotated[
        bool,
        typer.Option(
            "--json-logs",
            help="Emit logs as JSON lines",
        ),
    ] = False,
) -> None:
    """Run a pipeline.

    Exit codes: 0 when the pipeline succeeded, 1 when a required stage
    failed (or the definition is invalid), 2 when the run was aborted.
    """
    try:
        cfg = CiflowConfig.discover(config)
    except ConfigError as e:
        configure_logging(log_level or "info", json_logs=json_logs)
        _fail_diagnostic(e)
        raise typer.Exit(1) from e

    overrides: dict[str, Any] = {}
    if runs_dir is not None:
        overrides["runs_dir"] = runs_dir
    if log_level is not None:
        overrides["log_level"] = log_level.lower()
    if overrides:
        cfg = cfg.model_copy(update=overrides)

    configure_logging(cfg.log_level, json_logs=json_logs)
    log = logger.bind(command="run", definition=str(definition))
    log.info("Starting ciflow run")

    try:
        pipeline, graph = _load_graph(definition)
    except (DefinitionError, GraphError) as e:
        log.error("Pipeline definition rejected", kind=e.kind, error=str(e))
        _fail_diagnostic(e)
        raise typer.Exit(1) from e

    engine = ExecutionEngine(cfg, dry_run=dry_run)
    with _termination_signals():
        pipeline_run = engine.run(pipeline, graph)

    report = finalize(pipeline_run)
    if engine.paths:
        write_report(report, engine.paths)

    if json_output:
        typer.echo(report.to_json())
    else:
        typer.echo(f"Run ID: {pipeline_run.id}")
        if engine.paths:
            typer.echo(f"Run directory: {engine.paths.run_dir}")
        _echo_outcome(report)

    raise typer.Exit(report.exit_code)


@app.command()
def validate(
    definition: Annotated[
        Path,
        typer.Argument(help="Path to the pipeline definition (YAML)"),
    ],
) -> None:
    """Validate a pipeline definition without running anything."""
    configure_logging("warning")
    try:
        pipeline, graph = _load_graph(definition)
    except (DefinitionError, GraphError) as e:
        _fail_diagnostic(e)
        raise typer.Exit(1) from e

    typer.echo(
        typer.style(
            f"Pipeline '{pipeline.name}' is valid ({len(graph)} stages).",
            fg=typer.colors.GREEN,
        )
    )


@app.command()
def plan(
    definition: Annotated[
        Path,
        typer.Argument(help="Path to the pipeline definition (YAML)"),
    ],
) -> None:
    """Print the execution order of a pipeline."""
    configure_logging("warning")
    try:
        pipeline, graph = _load_graph(definition)
    except (DefinitionError, GraphError) as e:
        _fail_diagnostic(e)
        raise typer.Exit(1) from e

    typer.echo(f"Pipeline: {pipeline.name}")
    for position, stage in enumerate(graph, start=1):
        deps = ", ".join(stage.depends_on) or "-"
        line = f"{position:>3}. {stage.name} [{stage.policy.value}] after: {deps}"
        if stage.condition.when.value != "always":
            line += f" when: {stage.condition.when.value}"
            line += f"({', '.join(stage.condition_stages())})"
        typer.echo(line)


@app.command()
def report(
    run_dir: Annotated[
        Path,
        typer.Argument(help="Run directory containing state.json"),
    ],
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Print the report as JSON",
        ),
    ] = False,
) -> None:
    """Re-render the report of a previous run."""
    configure_logging("warning")
    try:
        paths = RunPaths.from_run_dir(run_dir)
        pipeline_run = PipelineRun.load(paths.state_json)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    except CiflowError as e:
        _fail_diagnostic(e)
        raise typer.Exit(1) from e

    result = finalize(pipeline_run)
    if json_output:
        typer.echo(result.to_json())
    else:
        typer.echo(result.render_text(), nl=False)


if __name__ == "__main__":
    app()
