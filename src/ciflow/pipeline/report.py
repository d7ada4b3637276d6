"""Run report - deterministic summary of a finished pipeline run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from ciflow.paths import RunPaths
from ciflow.state import PipelineRun, RunOutcome, StageResult, StageStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class StageRow:
    """One line of the per-stage status table."""

    name: str
    status: str
    policy: str
    exit_code: int | None
    duration_ms: int
    error_kind: str | None = None


@dataclass(frozen=True)
class Finding:
    """A failed stage surfaced as root cause or warning."""

    stage: str
    status: str
    error_kind: str | None
    exit_code: int | None
    command: str | None
    stderr_tail: str = ""
    output_refs: tuple[str, ...] = ()


@dataclass(frozen=True)
class Report:
    """Aggregated result of a pipeline run.

    Attributes:
        run_id: Run identifier.
        pipeline: Pipeline name.
        outcome: Terminal outcome value.
        duration_ms: Total run duration.
        stages: Per-stage rows in execution order.
        root_cause: First stage whose failure halted the run, if any.
        warnings: Failed stages whose policy tolerated the failure.
        missing_artifacts: (stage, pattern) pairs for declared artifacts not found.
        artifacts: Stage name to registered artifact paths.
    """

    run_id: str
    pipeline: str
    outcome: str
    duration_ms: int
    stages: tuple[StageRow, ...]
    root_cause: Finding | None = None
    warnings: tuple[Finding, ...] = ()
    missing_artifacts: tuple[tuple[str, str], ...] = ()
    artifacts: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        """CLI exit code for this outcome."""
        return RunOutcome(self.outcome).exit_code

    @property
    def succeeded(self) -> bool:
        """Whether the run succeeded."""
        return self.outcome == RunOutcome.SUCCEEDED.value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "outcome": self.outcome,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "stages": [_row_dict(r) for r in self.stages],
            "root_cause": _finding_dict(self.root_cause) if self.root_cause else None,
            "warnings": [_finding_dict(w) for w in self.warnings],
            "missing_artifacts": [
                {"stage": stage, "pattern": pattern}
                for stage, pattern in self.missing_artifacts
            ],
            "artifacts": {k: list(v) for k, v in self.artifacts.items()},
        }

    def to_json(self) -> str:
        """Serialize to JSON with stable key order."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def render_text(self) -> str:
        """Human-readable summary.

        Returns:
            The same string for the same report, every time.
        """
        lines = [
            f"Pipeline: {self.pipeline}",
            f"Run: {self.run_id}",
            f"Outcome: {self.outcome.upper()} (exit {self.exit_code})",
            f"Duration: {_format_ms(self.duration_ms)}",
            "",
        ]

        header = ("STAGE", "STATUS", "POLICY", "EXIT", "DURATION")
        table = [header] + [
            (
                r.name,
                r.status,
                r.policy,
                "-" if r.exit_code is None else str(r.exit_code),
                _format_ms(r.duration_ms),
            )
            for r in self.stages
        ]
        widths = [max(len(row[i]) for row in table) for i in range(len(header))]
        for row in table:
            lines.append(
                "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()
            )

        if self.root_cause:
            rc = self.root_cause
            lines += ["", f"Root cause: stage '{rc.stage}' {_describe(rc)}"]
            if rc.command:
                lines.append(f"  command: {rc.command}")
            if rc.stderr_tail:
                lines.append("  stderr:")
                lines += [f"    {line}" for line in rc.stderr_tail.splitlines()]

        if self.warnings:
            lines += ["", f"Warnings ({len(self.warnings)}):"]
            for w in self.warnings:
                suffix = f": {w.command}" if w.command else ""
                lines.append(f"  - {w.stage} {_describe(w)}{suffix}")

        if self.missing_artifacts:
            lines += ["", "Missing artifacts:"]
            lines += [f"  - {stage}: {pattern}" for stage, pattern in self.missing_artifacts]

        return "\n".join(lines) + "\n"


def _describe(finding: Finding) -> str:
    details = [d for d in (finding.error_kind, _exit(finding.exit_code)) if d]
    text = finding.status
    if details:
        text += f" ({', '.join(details)})"
    return text


def _exit(code: int | None) -> str:
    return "" if code is None else f"exit {code}"


def _format_ms(ms: int) -> str:
    return f"{ms / 1000:.2f}s"


def _row_dict(row: StageRow) -> dict[str, Any]:
    return {
        "name": row.name,
        "status": row.status,
        "policy": row.policy,
        "exit_code": row.exit_code,
        "duration_ms": row.duration_ms,
        "error_kind": row.error_kind,
    }


def _finding_dict(finding: Finding) -> dict[str, Any]:
    return {
        "stage": finding.stage,
        "status": finding.status,
        "error_kind": finding.error_kind,
        "exit_code": finding.exit_code,
        "command": finding.command,
        "stderr_tail": finding.stderr_tail,
        "output_refs": list(finding.output_refs),
    }


def _finding(name: str, result: StageResult) -> Finding:
    return Finding(
        stage=name,
        status=result.status.value,
        error_kind=result.error_kind.value if result.error_kind else None,
        exit_code=result.exit_code,
        command=result.failed_command,
        stderr_tail=result.stderr_tail,
        output_refs=tuple(result.captured_output_refs),
    )


def _is_required(result: StageResult) -> bool:
    return result.policy == "required"


def finalize(run: PipelineRun) -> Report:
    """Build the report of a run.

    Pure: reads only the run state and never mutates it.

    Args:
        run: The pipeline run (normally finished).

    Returns:
        The Report.
    """
    rows: list[StageRow] = []
    root_cause: Finding | None = None
    warnings: list[Finding] = []
    missing: list[tuple[str, str]] = []

    for name in run.stages:
        result = run.results[name]
        rows.append(
            StageRow(
                name=name,
                status=result.status.value,
                policy=result.policy,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                error_kind=result.error_kind.value if result.error_kind else None,
            )
        )

        halting = result.status == StageStatus.FAILED_REQUIRED or (
            result.status == StageStatus.TIMED_OUT and _is_required(result)
        )
        tolerated = result.status == StageStatus.FAILED_IGNORED or (
            result.status == StageStatus.TIMED_OUT and not _is_required(result)
        )
        if halting and root_cause is None:
            root_cause = _finding(name, result)
        elif tolerated:
            warnings.append(_finding(name, result))

        missing += [(name, pattern) for pattern in result.missing_artifacts]

    return Report(
        run_id=run.id,
        pipeline=run.pipeline,
        outcome=run.outcome.value,
        duration_ms=run.duration_ms,
        stages=tuple(rows),
        root_cause=root_cause,
        warnings=tuple(warnings),
        missing_artifacts=tuple(missing),
        artifacts={
            name: tuple(run.artifacts[name]) for name in run.stages if run.artifacts.get(name)
        },
    )


def write_report(report: Report, paths: RunPaths) -> None:
    """Write report.json and report.txt into the run directory."""
    paths.run_dir.mkdir(parents=True, exist_ok=True)
    paths.report_json.write_text(report.to_json())
    paths.report_txt.write_text(report.render_text())
    logger.debug("Wrote run report", path=str(paths.report_json))
