"""Artifact registry for pipeline execution."""

from __future__ import annotations

import glob
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

logger = structlog.get_logger()


@dataclass
class ResolvedArtifacts:
    """Outcome of resolving declared artifact patterns.

    Attributes:
        paths: Matched paths, in pattern order then sorted per pattern.
        missing: Patterns that matched nothing.
    """

    paths: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


@dataclass
class ArtifactStore:
    """Registry mapping stage names to the artifacts they produced.

    Registration is append-only and idempotent: registering a stage again
    merges new paths after the existing ones, and a path already present
    is not added twice.

    Attributes:
        manifest_path: Optional JSON file the registry is mirrored to.
    """

    manifest_path: Path | None = None
    _entries: dict[str, list[str]] = field(default_factory=dict)

    def register(self, stage: str, paths: Iterable[str | Path]) -> list[str]:
        """Register artifact paths for a stage.

        Args:
            stage: Stage name.
            paths: Paths produced by the stage.

        Returns:
            The paths that were newly added.
        """
        entry = self._entries.setdefault(stage, [])
        added: list[str] = []
        for path in paths:
            value = str(path)
            if value not in entry:
                entry.append(value)
                added.append(value)

        if added:
            logger.debug("Registered artifacts", stage=stage, count=len(added))
            self._persist()
        return added

    def list(self, stage: str) -> list[str]:
        """Paths registered by a stage, in registration order."""
        return list(self._entries.get(stage, []))

    def all(self) -> dict[str, list[str]]:
        """Copy of the whole registry."""
        return {stage: list(paths) for stage, paths in self._entries.items()}

    def __contains__(self, stage: object) -> bool:
        return stage in self._entries

    @staticmethod
    def resolve(patterns: Iterable[str], base_dir: Path) -> ResolvedArtifacts:
        """Expand declared artifact patterns against a directory.

        Args:
            patterns: Glob patterns (``**`` allowed), absolute or relative.
            base_dir: Directory relative patterns are resolved against.

        Returns:
            ResolvedArtifacts with matched paths and unmatched patterns.
        """
        resolved = ResolvedArtifacts()
        for pattern in patterns:
            full = Path(pattern).expanduser()
            if not full.is_absolute():
                full = base_dir / full
            matches = sorted(glob.glob(str(full), recursive=True))
            if not matches:
                resolved.missing.append(pattern)
                continue
            for match in matches:
                if match not in resolved.paths:
                    resolved.paths.append(match)
        return resolved

    def _persist(self) -> None:
        """Mirror the registry to disk."""
        if not self.manifest_path:
            return

        try:
            self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
            self.manifest_path.write_text(json.dumps(self._entries, indent=2))
        except OSError as e:
            logger.warning(
                "Failed to persist artifact manifest",
                path=str(self.manifest_path),
                error=str(e),
            )

