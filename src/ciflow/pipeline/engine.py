"""Execution engine - walks the stage graph and applies stage policy."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from pathlib import Path

import structlog

from ciflow.config import CiflowConfig
from ciflow.exceptions import ErrorKind, StateError
from ciflow.infra.command import CommandResult, CommandRunner
from ciflow.paths import RunPaths, generate_run_id
from ciflow.pipeline.artifacts import ArtifactStore
from ciflow.pipeline.definition import (
    CommandSpec,
    ConditionKind,
    PipelineDefinition,
    StageDefinition,
    StagePolicy,
    StageStrategy,
)
from ciflow.pipeline.graph import PipelineGraph
from ciflow.pipeline.templating import expand_args, expand_text
from ciflow.state import PipelineRun, RunOutcome, StageResult, StageStatus

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


class RunAborted(Exception):
    """Raised inside the engine when an abort was requested."""


class ExecutionEngine:
    """Sequential pipeline execution engine.

    Walks the graph in its deterministic order and drives each stage
    through ``blocked -> ready -> running -> terminal``. The engine is the
    only writer of the ``PipelineRun`` it returns.

    A failing ``required`` stage halts traversal: every stage not yet
    reached stays ``blocked``. A failing ``continue-on-error`` stage is
    recorded as ``failed_ignored`` and its dependents still run.

    Example:
        >>> engine = ExecutionEngine(CiflowConfig(persist_state=False))
        >>> run = engine.run(PipelineDefinition.load(Path("pipeline.yaml")))
        >>> run.outcome
        <RunOutcome.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        config: CiflowConfig | None = None,
        runner: CommandRunner | None = None,
        *,
        dry_run: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration.
            runner: Command runner (built from config if omitted).
            dry_run: Log commands without executing them.
        """
        self.config = config or CiflowConfig()
        self.runner = runner or CommandRunner(
            dry_run=dry_run,
            heartbeat_interval=self.config.heartbeat_interval,
            kill_grace_seconds=self.config.kill_grace_seconds,
        )
        self.paths: RunPaths | None = None
        self._abort_requested = threading.Event()

    def abort(self) -> None:
        """Request cancellation of the current run.

        Safe to call from a signal handler or another thread. The in-flight
        command is terminated and every non-terminal stage becomes
        ``aborted``.
        """
        logger.warning("Abort requested")
        self._abort_requested.set()
        self.runner.terminate_active()

    def run(
        self,
        pipeline: PipelineDefinition,
        graph: PipelineGraph | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        """Execute a pipeline.

        Args:
            pipeline: Pipeline definition.
            graph: Pre-built graph (built from the definition if omitted).
            run_id: Run identifier (generated if omitted).

        Returns:
            The finished PipelineRun.

        Raises:
            GraphError: If the definition is structurally invalid. Nothing
                runs in that case.
        """
        if graph is None:
            graph = PipelineGraph.build(pipeline.stages)

        run_id = run_id or generate_run_id()
        self._abort_requested.clear()
        self.paths = None
        if self.config.persist_state:
            self.paths = RunPaths.create_new(self.config.runs_dir.resolve(), run_id)

        store = ArtifactStore(
            manifest_path=self.paths.artifacts_json if self.paths else None
        )
        run = PipelineRun(id=run_id, pipeline=pipeline.name, stages=graph.order)
        workdir = pipeline.resolve_workdir()

        log = logger.bind(run_id=run_id, pipeline=pipeline.name)
        log.info("Starting pipeline execution", stage_count=len(graph))

        start_time = time.perf_counter()
        run.start()
        self._save(run)

        outcome = RunOutcome.SUCCEEDED
        try:
            for stage in graph:
                if self._abort_requested.is_set():
                    raise RunAborted

                stage_log = log.bind(stage=stage.name)
                self._promote(run, stage)

                if not self._condition_holds(stage, run):
                    stage_log.info(
                        "Stage skipped by condition", condition=stage.condition.when.value
                    )
                    now = _now()
                    self._record(
                        run,
                        stage.name,
                        StageResult(
                            status=StageStatus.SKIPPED,
                            started_at=now,
                            finished_at=now,
                            policy=stage.policy.value,
                        ),
                    )
                    continue

                result = self._execute_stage(run, stage, store, pipeline, workdir)

                if self._abort_requested.is_set():
                    raise RunAborted

                self._record(run, stage.name, result)
                run.record_artifacts(stage.name, store.list(stage.name))
                self._save(run)

                if self._halts(stage, result):
                    stage_log.error(
                        "Required stage failed - halting pipeline",
                        status=result.status.value,
                        exit_code=result.exit_code,
                        command=result.failed_command,
                    )
                    outcome = RunOutcome.FAILED_REQUIRED
                    break

                if result.status.is_failure:
                    stage_log.warning(
                        "Stage failed - continuing",
                        status=result.status.value,
                        exit_code=result.exit_code,
                        command=result.failed_command,
                    )
                else:
                    stage_log.info(
                        "Stage completed",
                        status=result.status.value,
                        duration_ms=result.duration_ms,
                    )

        except (RunAborted, KeyboardInterrupt):
            log.warning("Pipeline aborted")
            self._abort_remaining(run)
            outcome = RunOutcome.ABORTED

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        run.finish(outcome, duration_ms)
        self._save(run)

        log.info(
            "Pipeline execution completed",
            outcome=outcome.value,
            duration_ms=duration_ms,
        )
        return run

    def _promote(self, run: PipelineRun, stage: StageDefinition) -> None:
        """Move a stage from blocked to ready once its dependencies are terminal."""
        pending = [d for d in stage.depends_on if not run.status_of(d).is_terminal]
        if pending:
            msg = f"Stage '{stage.name}' reached with unresolved dependencies: {pending}"
            raise StateError(msg, run_id=run.id, stage=stage.name)
        self._record(
            run,
            stage.name,
            StageResult(status=StageStatus.READY, policy=stage.policy.value),
        )

    @staticmethod
    def _condition_holds(stage: StageDefinition, run: PipelineRun) -> bool:
        names = stage.condition_stages()
        when = stage.condition.when
        if when == ConditionKind.ALL_SUCCEEDED:
            return all(run.status_of(n) == StageStatus.SUCCEEDED for n in names)
        if when == ConditionKind.ANY_FAILED:
            return any(run.status_of(n).is_failure for n in names)
        return True

    @staticmethod
    def _halts(stage: StageDefinition, result: StageResult) -> bool:
        if stage.policy != StagePolicy.REQUIRED:
            return False
        return result.status in (StageStatus.FAILED_REQUIRED, StageStatus.TIMED_OUT)

    def _execute_stage(
        self,
        run: PipelineRun,
        stage: StageDefinition,
        store: ArtifactStore,
        pipeline: PipelineDefinition,
        workdir: Path,
    ) -> StageResult:
        """Run the commands of one stage and build its terminal result."""
        log = logger.bind(run_id=run.id, stage=stage.name)
        timeout = stage.timeout_seconds or self.config.default_timeout_seconds
        log.info(
            "Executing stage",
            commands=len(stage.commands),
            policy=stage.policy.value,
            strategy=stage.strategy.value,
            timeout_seconds=timeout,
        )

        started_at = _now()
        self._record(
            run,
            stage.name,
            StageResult(
                status=StageStatus.RUNNING,
                started_at=started_at,
                policy=stage.policy.value,
            ),
        )
        self._save(run)

        variables = {
            "run_id": run.id,
            "run_dir": str(self.paths.run_dir) if self.paths else "",
        }
        stage_start = time.perf_counter()
        deadline = time.monotonic() + timeout
        refs: list[str] = []
        last: CommandResult | None = None
        failed: CommandResult | None = None
        failed_spec: CommandSpec | None = None
        timed_out = False

        for index, spec in enumerate(stage.commands):
            if self._abort_requested.is_set():
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                failed_spec = spec
                break

            argv = expand_args(spec.argv, store.list, variables)
            cwd = self._resolve_cwd(spec, store, variables, workdir)
            env = {
                key: expand_text(value, store.list, variables)
                for key, value in {**pipeline.env, **stage.env, **spec.env}.items()
            }

            result = self.runner.run(argv, cwd=cwd, env=env, timeout=remaining)
            refs.extend(self._write_output(stage.name, index, result))
            last = result

            if result.error_kind == ErrorKind.ABORTED:
                self._abort_requested.set()
            if self._abort_requested.is_set():
                break

            if result.error_kind == ErrorKind.TIMEOUT:
                timed_out = True
                failed, failed_spec = result, spec
                break

            if stage.strategy == StageStrategy.FALLBACK:
                if result.ok:
                    failed = failed_spec = None
                    break
                log.warning(
                    "Command failed, trying fallback",
                    index=index,
                    exit_code=result.exit_code,
                )
                failed, failed_spec = result, spec
            elif not result.ok:
                failed, failed_spec = result, spec
                break

        duration_ms = int((time.perf_counter() - stage_start) * 1000)
        stage_result = StageResult(
            started_at=started_at,
            duration_ms=duration_ms,
            captured_output_refs=refs,
            policy=stage.policy.value,
        )

        if timed_out:
            stage_result.status = StageStatus.TIMED_OUT
            stage_result.error_kind = ErrorKind.TIMEOUT
            stage_result.exit_code = failed.exit_code if failed else None
            stage_result.stderr_tail = (
                failed.stderr_tail(self.config.stderr_tail_lines)
                if failed
                else f"{ErrorKind.TIMEOUT.value}: stage exceeded {timeout}s"
            )
        elif failed is not None:
            stage_result.status = (
                StageStatus.FAILED_REQUIRED
                if stage.policy == StagePolicy.REQUIRED
                else StageStatus.FAILED_IGNORED
            )
            stage_result.error_kind = failed.error_kind
            stage_result.exit_code = failed.exit_code
            stage_result.stderr_tail = failed.stderr_tail(self.config.stderr_tail_lines)
        else:
            stage_result.status = StageStatus.SUCCEEDED
            stage_result.exit_code = last.exit_code if last else 0

        if failed_spec is not None and stage_result.status != StageStatus.SUCCEEDED:
            stage_result.failed_command = failed_spec.display()

        if self._abort_requested.is_set():
            # Aborted stages register no artifacts
            return stage_result

        resolved = store.resolve(stage.artifacts, workdir)
        store.register(stage.name, resolved.paths)
        stage_result.missing_artifacts = resolved.missing
        for pattern in resolved.missing:
            log.warning(
                "Declared artifact missing",
                error_kind=ErrorKind.ARTIFACT_MISSING.value,
                pattern=pattern,
            )

        stage_result.finished_at = _now()
        return stage_result

    @staticmethod
    def _resolve_cwd(
        spec: CommandSpec,
        store: ArtifactStore,
        variables: dict[str, str],
        workdir: Path,
    ) -> Path:
        if not spec.cwd:
            return workdir
        cwd = Path(expand_text(spec.cwd, store.list, variables)).expanduser()
        return cwd if cwd.is_absolute() else workdir / cwd

    def _write_output(self, stage: str, index: int, result: CommandResult) -> list[str]:
        """Persist captured output and return the log file references."""
        if not self.paths:
            return []
        stdout_path, stderr_path = self.paths.command_log_paths(stage, index)
        try:
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            stdout_path.write_text(result.stdout)
            stderr_path.write_text(result.stderr)
        except OSError as e:
            logger.warning("Failed to write command output", stage=stage, error=str(e))
            return []
        return [str(stdout_path), str(stderr_path)]

    def _abort_remaining(self, run: PipelineRun) -> None:
        """Mark every non-terminal stage as aborted."""
        now = _now()
        for name in run.stages:
            current = run.results[name]
            if current.status.is_terminal:
                continue
            self._record(
                run,
                name,
                StageResult(
                    status=StageStatus.ABORTED,
                    started_at=current.started_at,
                    finished_at=now,
                    error_kind=ErrorKind.ABORTED,
                    policy=current.policy,
                ),
            )

    def _record(self, run: PipelineRun, name: str, result: StageResult) -> None:
        """Single recording point for stage transitions."""
        run.record(name, result)
        logger.debug("Stage transition", run_id=run.id, stage=name, status=result.status.value)

    def _save(self, run: PipelineRun) -> None:
        if self.paths:
            run.save(self.paths.state_json)
