"""Validated stage dependency graph with a deterministic linearization."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import structlog

from ciflow.exceptions import (
    CycleDetectedError,
    DuplicateStageNameError,
    InvalidConditionError,
    UnknownDependencyError,
)
from ciflow.pipeline.definition import StageDefinition
from ciflow.pipeline.templating import referenced_stages

logger = structlog.get_logger()


class PipelineGraph:
    """DAG of stages, validated at construction time.

    Use :meth:`build` rather than the constructor. Once built, traversal can
    never meet a cycle or an unresolved name.

    The linear order is Kahn's algorithm with ties among ready stages broken
    by declaration order, so the same definition always yields the same
    order.

    Example:
        >>> graph = PipelineGraph.build([
        ...     StageDefinition(name="deploy", depends_on=["build"]),
        ...     StageDefinition(name="build"),
        ... ])
        >>> graph.order
        ['build', 'deploy']
    """

    def __init__(
        self,
        ordered: list[StageDefinition],
        dependents: dict[str, list[str]],
    ) -> None:
        self._ordered = ordered
        self._by_name = {s.name: s for s in ordered}
        self._position = {s.name: i for i, s in enumerate(ordered)}
        self._dependents = dependents

    @classmethod
    def build(cls, stage_defs: Iterable[StageDefinition]) -> PipelineGraph:
        """Validate stage definitions and linearize them.

        Args:
            stage_defs: Stages in declaration order.

        Returns:
            A validated PipelineGraph.

        Raises:
            DuplicateStageNameError: If two stages share a name.
            UnknownDependencyError: If depends_on or an artifact reference
                names a stage that does not exist or is not upstream.
            InvalidConditionError: If a condition references a stage
                outside depends_on.
            CycleDetectedError: If the dependencies form a cycle.
        """
        declared = list(stage_defs)
        by_name: dict[str, StageDefinition] = {}
        for stage in declared:
            if stage.name in by_name:
                msg = f"Duplicate stage name: '{stage.name}'"
                raise DuplicateStageNameError(msg, stages=[stage.name])
            by_name[stage.name] = stage

        for stage in declared:
            for dep in stage.depends_on:
                if dep not in by_name:
                    msg = f"Stage '{stage.name}' depends on unknown stage '{dep}'"
                    raise UnknownDependencyError(msg, stages=[stage.name, dep])

        for stage in declared:
            for ref in stage.condition.stages:
                if ref not in stage.depends_on:
                    msg = (
                        f"Condition of stage '{stage.name}' references '{ref}', "
                        "which is not in depends_on"
                    )
                    raise InvalidConditionError(msg, stages=[stage.name, ref])

        # Kahn's algorithm, declaration order as tie-breaker
        declaration_index = {s.name: i for i, s in enumerate(declared)}
        remaining = {s.name: len(s.depends_on) for s in declared}
        dependents: dict[str, list[str]] = {s.name: [] for s in declared}
        for stage in declared:
            for dep in stage.depends_on:
                dependents[dep].append(stage.name)

        ready = [s.name for s in declared if remaining[s.name] == 0]
        order: list[str] = []
        while ready:
            name = min(ready, key=declaration_index.__getitem__)
            ready.remove(name)
            order.append(name)
            for child in dependents[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)

        if len(order) != len(declared):
            cycle = _find_cycle(
                {n: by_name[n].depends_on for n in by_name if remaining[n] > 0}
            )
            msg = f"Cycle detected in stage dependencies: {' -> '.join(cycle)}"
            raise CycleDetectedError(msg, stages=cycle)

        graph = cls([by_name[n] for n in order], dependents)
        graph._validate_artifact_references()

        logger.debug("Built pipeline graph", order=order)
        return graph

    def _validate_artifact_references(self) -> None:
        for stage in self._ordered:
            upstream = self.ancestors(stage.name)
            for command in stage.commands:
                texts = [*command.argv, command.cwd or "", *command.env.values()]
                for text in texts:
                    for ref in referenced_stages(text):
                        if ref not in upstream:
                            msg = (
                                f"Stage '{stage.name}' references artifacts of "
                                f"'{ref}', which is not an upstream stage"
                            )
                            raise UnknownDependencyError(msg, stages=[stage.name, ref])

    @property
    def order(self) -> list[str]:
        """Stage names in execution order."""
        return [s.name for s in self._ordered]

    @property
    def stages(self) -> list[StageDefinition]:
        """Stage definitions in execution order."""
        return list(self._ordered)

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def stage(self, name: str) -> StageDefinition:
        """Get a stage definition by name."""
        return self._by_name[name]

    def dependencies(self, name: str) -> tuple[str, ...]:
        """Direct dependencies of a stage."""
        return self._by_name[name].depends_on

    def dependents(self, name: str) -> list[str]:
        """Stages that directly depend on ``name``, in execution order."""
        return sorted(self._dependents[name], key=self._position.__getitem__)

    def ancestors(self, name: str) -> set[str]:
        """All stages ``name`` depends on, directly or transitively."""
        seen: set[str] = set()
        stack = list(self._by_name[name].depends_on)
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self._by_name[current].depends_on)
        return seen

    def descendants(self, name: str) -> set[str]:
        """All stages depending on ``name``, directly or transitively."""
        seen: set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self._dependents[current])
        return seen

    def ready_after(self, done: Iterable[str]) -> list[str]:
        """Stages not yet done whose dependencies are all done.

        Every stage returned is independent of the others, so a concurrent
        engine could dispatch them together.
        """
        finished = set(done)
        return [
            s.name
            for s in self._ordered
            if s.name not in finished and all(d in finished for d in s.depends_on)
        ]


def _find_cycle(deps: dict[str, tuple[str, ...]]) -> list[str]:
    """Return one cycle among the stages Kahn's algorithm could not order.

    Every stage in ``deps`` has at least one dependency that is also in
    ``deps``, so walking dependencies must eventually revisit a stage.
    """
    start = next(iter(deps))
    path: list[str] = []
    index: dict[str, int] = {}
    current = start
    while current not in index:
        index[current] = len(path)
        path.append(current)
        current = next(d for d in deps[current] if d in deps)
    cycle = path[index[current]:]
    cycle.reverse()
    return [*cycle, cycle[0]]
