"""Pipeline engine for policy-governed stage execution."""

from ciflow.pipeline.artifacts import ArtifactStore
from ciflow.pipeline.definition import (
    CommandSpec,
    ConditionKind,
    PipelineDefinition,
    StageCondition,
    StageDefinition,
    StagePolicy,
    StageStrategy,
)
from ciflow.pipeline.engine import ExecutionEngine
from ciflow.pipeline.graph import PipelineGraph
from ciflow.pipeline.report import Report, finalize

__all__ = [
    "ArtifactStore",
    "CommandSpec",
    "ConditionKind",
    "ExecutionEngine",
    "PipelineDefinition",
    "PipelineGraph",
    "Report",
    "StageCondition",
    "StageDefinition",
    "StagePolicy",
    "StageStrategy",
    "finalize",
]
