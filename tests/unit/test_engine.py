"""Unit tests for ExecutionEngine with a mocked command runner."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from ciflow.config import CiflowConfig
from ciflow.exceptions import CycleDetectedError, ErrorKind
from ciflow.infra.command import CommandResult, CommandRunner
from ciflow.pipeline.definition import PipelineDefinition
from ciflow.pipeline.engine import ExecutionEngine
from ciflow.state import PipelineRun, RunOutcome, StageStatus

Outcome = int | ErrorKind | Callable[[], Any]


def scripted_runner(outcomes: dict[str, Outcome] | None = None) -> MagicMock:
    """Mock runner whose results are keyed by program name.

    Unlisted programs exit 0. An int is used as the exit code, an ErrorKind
    produces that failure, and a callable is invoked first (for side effects).
    """
    outcomes = outcomes or {}
    mock = MagicMock(spec=CommandRunner)

    def run(command, *, cwd=None, env=None, timeout=None):
        outcome = outcomes.get(command[0], 0)
        if callable(outcome) and not isinstance(outcome, ErrorKind):
            outcome = outcome()
        if outcome == ErrorKind.TIMEOUT:
            return CommandResult(
                exit_code=-15,
                stderr="Timeout: command exceeded",
                command=command,
                error_kind=ErrorKind.TIMEOUT,
            )
        if outcome == ErrorKind.ABORTED:
            return CommandResult(exit_code=-15, command=command, error_kind=ErrorKind.ABORTED)
        if outcome == ErrorKind.LAUNCH_FAILURE:
            return CommandResult(
                exit_code=-1,
                stderr="LaunchFailure: not found",
                command=command,
                error_kind=ErrorKind.LAUNCH_FAILURE,
            )
        return CommandResult(
            exit_code=outcome,
            stderr="" if outcome == 0 else f"{command[0]} failed\n",
            command=command,
            error_kind=None if outcome == 0 else ErrorKind.NON_ZERO_EXIT,
        )

    mock.run.side_effect = run
    return mock


def pipeline(*stages: dict[str, Any], **kwargs: Any) -> PipelineDefinition:
    return PipelineDefinition.model_validate({"name": "test", "stages": list(stages), **kwargs})


def programs_run(runner: MagicMock) -> list[str]:
    return [c.args[0][0] for c in runner.run.call_args_list]


@pytest.fixture
def web_pipeline(tmp_path: Path) -> PipelineDefinition:
    """build -> lint (continue-on-error) -> deploy on both."""
    return pipeline(
        {"name": "build", "commands": ["build-app"]},
        {
            "name": "lint",
            "commands": ["lint-app"],
            "depends_on": ["build"],
            "policy": "continue-on-error",
        },
        {"name": "deploy", "commands": ["deploy-app"], "depends_on": ["build", "lint"]},
        workdir=str(tmp_path),
    )


class TestPolicies:
    """Stage policy propagation."""

    def test_all_stages_succeed(self, memory_config, web_pipeline):
        runner = scripted_runner()
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)

        assert run.outcome == RunOutcome.SUCCEEDED
        assert all(r.status == StageStatus.SUCCEEDED for r in run.results.values())
        assert programs_run(runner) == ["build-app", "lint-app", "deploy-app"]

    def test_ignored_failure_does_not_block_dependents(self, memory_config, web_pipeline):
        """A continue-on-error failure is a warning and deploy still runs."""
        runner = scripted_runner({"lint-app": 1})
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)

        assert run.outcome == RunOutcome.SUCCEEDED
        assert run.status_of("lint") == StageStatus.FAILED_IGNORED
        assert run.results["lint"].error_kind == ErrorKind.NON_ZERO_EXIT
        assert run.results["lint"].failed_command == "lint-app"
        assert run.status_of("deploy") == StageStatus.SUCCEEDED
        assert "deploy-app" in programs_run(runner)

    def test_required_failure_halts(self, memory_config, web_pipeline):
        """Nothing after a failed required stage runs."""
        runner = scripted_runner({"build-app": 2})
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)

        assert run.outcome == RunOutcome.FAILED_REQUIRED
        assert run.status_of("build") == StageStatus.FAILED_REQUIRED
        assert run.results["build"].exit_code == 2
        assert run.results["build"].stderr_tail == "build-app failed"
        assert run.status_of("lint") == StageStatus.BLOCKED
        assert run.status_of("deploy") == StageStatus.BLOCKED
        assert programs_run(runner) == ["build-app"]

    def test_launch_failure_is_a_stage_failure(self, memory_config, web_pipeline):
        runner = scripted_runner({"build-app": ErrorKind.LAUNCH_FAILURE})
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)

        assert run.outcome == RunOutcome.FAILED_REQUIRED
        assert run.results["build"].error_kind == ErrorKind.LAUNCH_FAILURE
        assert run.results["build"].exit_code == -1

    @pytest.mark.parametrize(
        ("policy", "outcome"),
        [
            ("required", RunOutcome.FAILED_REQUIRED),
            ("continue-on-error", RunOutcome.SUCCEEDED),
        ],
    )
    def test_timeout_follows_policy(self, memory_config, policy, outcome):
        runner = scripted_runner({"slow": ErrorKind.TIMEOUT})
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "scan", "commands": ["slow"], "policy": policy, "timeout": 1},
                {"name": "after", "commands": ["next"], "depends_on": ["scan"]},
            )
        )

        assert run.outcome == outcome
        assert run.status_of("scan") == StageStatus.TIMED_OUT
        assert run.results["scan"].error_kind == ErrorKind.TIMEOUT
        expected_after = (
            StageStatus.BLOCKED if policy == "required" else StageStatus.SUCCEEDED
        )
        assert run.status_of("after") == expected_after

    def test_stage_without_commands_succeeds(self, memory_config):
        runner = scripted_runner()
        run = ExecutionEngine(memory_config, runner).run(pipeline({"name": "noop"}))
        assert run.status_of("noop") == StageStatus.SUCCEEDED
        assert run.results["noop"].exit_code == 0
        runner.run.assert_not_called()

    def test_empty_expanded_command_is_launch_failure(self, memory_config, tmp_path):
        """A command expanding to nothing fails the stage instead of the run."""
        runner = CommandRunner(heartbeat_interval=0)
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "build"},
                {
                    "name": "publish",
                    "depends_on": ["build"],
                    "commands": [["${artifacts:build}"]],
                },
                workdir=str(tmp_path),
            )
        )

        assert run.outcome == RunOutcome.FAILED_REQUIRED
        assert run.status_of("publish") == StageStatus.FAILED_REQUIRED
        assert run.results["publish"].error_kind == ErrorKind.LAUNCH_FAILURE
        assert run.results["publish"].exit_code == -1


class TestStrategies:
    """Command list strategies."""

    def test_sequence_stops_at_first_failure(self, memory_config):
        runner = scripted_runner({"second": 3})
        run = ExecutionEngine(memory_config, runner).run(
            pipeline({"name": "build", "commands": ["first", "second --flag", "third"]})
        )

        assert programs_run(runner) == ["first", "second"]
        assert run.results["build"].failed_command == "second --flag"
        assert run.results["build"].exit_code == 3

    def test_fallback_first_success_wins(self, memory_config):
        runner = scripted_runner({"npm": 1})
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {
                    "name": "test",
                    "strategy": "fallback",
                    "commands": ["npm test", "yarn test", "pnpm test"],
                }
            )
        )

        assert run.status_of("test") == StageStatus.SUCCEEDED
        assert run.results["test"].failed_command is None
        assert programs_run(runner) == ["npm", "yarn"]

    def test_fallback_all_fail(self, memory_config):
        runner = scripted_runner({"npm": 1, "yarn": 4})
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {
                    "name": "test",
                    "strategy": "fallback",
                    "policy": "continue-on-error",
                    "commands": ["npm test", "yarn test"],
                }
            )
        )

        assert run.status_of("test") == StageStatus.FAILED_IGNORED
        assert run.results["test"].failed_command == "yarn test"
        assert run.results["test"].exit_code == 4

    def test_stage_timeout_is_a_budget(self, memory_config):
        """Each command gets at most the stage's remaining time."""
        runner = scripted_runner()
        ExecutionEngine(memory_config, runner).run(
            pipeline({"name": "build", "commands": ["a", "b"], "timeout_seconds": 30})
        )
        for call in runner.run.call_args_list:
            assert 0 < call.kwargs["timeout"] <= 30

    def test_default_timeout_from_config(self):
        config = CiflowConfig(persist_state=False, default_timeout_seconds=7)
        runner = scripted_runner()
        ExecutionEngine(config, runner).run(pipeline({"name": "build", "commands": ["a"]}))
        assert runner.run.call_args.kwargs["timeout"] <= 7


class TestConditions:
    """Stage conditions over prior outcomes."""

    def notify_pipeline(self, when: str) -> PipelineDefinition:
        return pipeline(
            {"name": "lint", "commands": ["lint-app"], "policy": "continue-on-error"},
            {
                "name": "notify",
                "commands": ["send-mail"],
                "depends_on": ["lint"],
                "condition": when,
            },
        )

    def test_any_failed_runs_after_failure(self, memory_config):
        runner = scripted_runner({"lint-app": 1})
        run = ExecutionEngine(memory_config, runner).run(self.notify_pipeline("any_failed"))
        assert run.status_of("notify") == StageStatus.SUCCEEDED

    def test_any_failed_skipped_on_success(self, memory_config):
        runner = scripted_runner()
        run = ExecutionEngine(memory_config, runner).run(self.notify_pipeline("any_failed"))
        assert run.status_of("notify") == StageStatus.SKIPPED
        assert programs_run(runner) == ["lint-app"]

    def test_all_succeeded_skipped_on_failure(self, memory_config):
        runner = scripted_runner({"lint-app": 1})
        run = ExecutionEngine(memory_config, runner).run(
            self.notify_pipeline("all_succeeded")
        )
        assert run.status_of("notify") == StageStatus.SKIPPED
        assert run.outcome == RunOutcome.SUCCEEDED

    def test_always_runs(self, memory_config):
        runner = scripted_runner({"lint-app": 1})
        run = ExecutionEngine(memory_config, runner).run(self.notify_pipeline("always"))
        assert run.status_of("notify") == StageStatus.SUCCEEDED


class TestCommandContext:
    """Environment, working directory and placeholders passed to commands."""

    def test_environment_layers(self, memory_config, tmp_path):
        """Command env overrides stage env, which overrides pipeline env."""
        runner = scripted_runner()
        ExecutionEngine(memory_config, runner).run(
            pipeline(
                {
                    "name": "build",
                    "env": {"MODE": "stage", "STAGE_ONLY": 1},
                    "commands": [{"run": "make", "env": {"MODE": "command"}}],
                },
                env={"MODE": "pipeline", "CI": True},
                workdir=str(tmp_path),
            )
        )
        env = runner.run.call_args.kwargs["env"]
        assert env == {"MODE": "command", "STAGE_ONLY": "1", "CI": "true"}

    def test_working_directory(self, memory_config, tmp_path):
        runner = scripted_runner()
        ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "root", "commands": ["ls"]},
                {"name": "web", "commands": [{"run": "ls", "cwd": "web"}]},
                workdir=str(tmp_path),
            )
        )
        cwds = [c.kwargs["cwd"] for c in runner.run.call_args_list]
        assert cwds == [tmp_path.resolve(), tmp_path.resolve() / "web"]

    def test_artifact_placeholders(self, memory_config, tmp_path):
        """Upstream artifacts are substituted into downstream commands."""
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "app.js").write_text("//")
        runner = scripted_runner()
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "build", "commands": ["build-app"], "artifacts": ["dist/*.js"]},
                {
                    "name": "publish",
                    "depends_on": ["build"],
                    "commands": ["upload ${artifacts:build} --run ${run_id}"],
                },
                workdir=str(tmp_path),
            ),
            run_id="run-1",
        )

        expected = str(tmp_path.resolve() / "dist" / "app.js")
        assert run.artifacts["build"] == [expected]
        assert runner.run.call_args.args[0] == ["upload", expected, "--run", "run-1"]

    def test_missing_artifact_is_a_warning(self, memory_config, tmp_path):
        runner = scripted_runner()
        run = ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "build", "commands": ["build-app"], "artifacts": ["dist/*.js"]},
                workdir=str(tmp_path),
            )
        )
        assert run.outcome == RunOutcome.SUCCEEDED
        assert run.status_of("build") == StageStatus.SUCCEEDED
        assert run.results["build"].missing_artifacts == ["dist/*.js"]


class TestAbort:
    """Cancellation of a run."""

    def test_abort_during_stage(self, memory_config, web_pipeline):
        """The in-flight stage and everything after it become aborted."""
        engine: ExecutionEngine

        def abort() -> ErrorKind:
            engine.abort()
            return ErrorKind.ABORTED

        runner = scripted_runner({"lint-app": abort})
        engine = ExecutionEngine(memory_config, runner)
        run = engine.run(web_pipeline)

        assert run.outcome == RunOutcome.ABORTED
        assert run.status_of("build") == StageStatus.SUCCEEDED
        assert run.status_of("lint") == StageStatus.ABORTED
        assert run.status_of("deploy") == StageStatus.ABORTED
        runner.terminate_active.assert_called_once()

    def test_aborted_command_result_aborts_run(self, memory_config, web_pipeline):
        runner = scripted_runner({"build-app": ErrorKind.ABORTED})
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)
        assert run.outcome == RunOutcome.ABORTED
        assert run.status_of("build") == StageStatus.ABORTED

    def test_keyboard_interrupt(self, memory_config, web_pipeline):
        def interrupt() -> int:
            raise KeyboardInterrupt

        runner = scripted_runner({"deploy-app": interrupt})
        run = ExecutionEngine(memory_config, runner).run(web_pipeline)

        assert run.outcome == RunOutcome.ABORTED
        assert run.status_of("lint") == StageStatus.SUCCEEDED
        assert run.status_of("deploy") == StageStatus.ABORTED
        assert run.results["deploy"].error_kind == ErrorKind.ABORTED

    def test_abort_between_commands(self, memory_config):
        """A command not yet started when abort() arrives never starts."""
        engine: ExecutionEngine

        def finish_then_abort() -> int:
            engine.abort()
            return 0

        runner = scripted_runner({"first": finish_then_abort})
        engine = ExecutionEngine(memory_config, runner)
        run = engine.run(pipeline({"name": "build", "commands": ["first", "second"]}))

        assert programs_run(runner) == ["first"]
        assert run.outcome == RunOutcome.ABORTED
        assert run.status_of("build") == StageStatus.ABORTED

    def test_abort_before_first_command(self, memory_config, monkeypatch):
        """abort() with nothing in flight still stops the stage's commands."""
        runner = scripted_runner()
        engine = ExecutionEngine(memory_config, runner)
        record = engine._record

        def record_then_abort(run, name, result):
            record(run, name, result)
            if result.status == StageStatus.RUNNING:
                engine.abort()

        monkeypatch.setattr(engine, "_record", record_then_abort)
        run = engine.run(pipeline({"name": "build", "commands": ["first", "second"]}))

        runner.run.assert_not_called()
        assert run.outcome == RunOutcome.ABORTED
        assert run.status_of("build") == StageStatus.ABORTED

    def test_aborted_stage_registers_no_artifacts(self, config, tmp_path):
        """Artifacts of an aborted stage reach neither the run nor the manifest."""
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "app.js").write_text("//")
        engine: ExecutionEngine

        def abort() -> ErrorKind:
            engine.abort()
            return ErrorKind.ABORTED

        runner = scripted_runner({"build-app": abort})
        engine = ExecutionEngine(config, runner)
        run = engine.run(
            pipeline(
                {"name": "build", "commands": ["build-app"], "artifacts": ["dist/*.js"]},
                workdir=str(tmp_path),
            )
        )

        assert run.outcome == RunOutcome.ABORTED
        assert "build" not in run.artifacts
        assert engine.paths is not None
        assert not engine.paths.artifacts_json.exists()


class TestPersistence:
    """State and logs written under the runs directory."""

    def test_state_and_logs_written(self, config, web_pipeline):
        runner = scripted_runner({"lint-app": 1})
        engine = ExecutionEngine(config, runner)
        run = engine.run(web_pipeline, run_id="run-1")

        assert engine.paths is not None
        assert engine.paths.run_dir == (config.runs_dir / "run-1").resolve()
        saved = PipelineRun.load(engine.paths.state_json)
        assert saved.to_dict() == run.to_dict()

        refs = run.results["lint"].captured_output_refs
        assert len(refs) == 2
        assert Path(refs[1]).read_text() == "lint-app failed\n"

    def test_nothing_written_in_memory_mode(self, memory_config, web_pipeline, tmp_path):
        engine = ExecutionEngine(memory_config, scripted_runner())
        run = engine.run(web_pipeline)
        assert engine.paths is None
        assert run.results["build"].captured_output_refs == []


def test_invalid_graph_runs_nothing(memory_config):
    runner = scripted_runner()
    with pytest.raises(CycleDetectedError):
        ExecutionEngine(memory_config, runner).run(
            pipeline(
                {"name": "b", "commands": ["x"], "depends_on": ["c"]},
                {"name": "c", "commands": ["y"], "depends_on": ["b"]},
            )
        )
    runner.run.assert_not_called()
