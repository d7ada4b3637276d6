"""Placeholder expansion for command arguments.

Supported placeholders:

- ``${artifacts:<stage>}``: artifact paths registered by ``<stage>``. When
  the placeholder is a whole argument it expands to one argument per path;
  embedded in a larger string the paths are joined with spaces.
- ``${run_id}``: the current run identifier.
- ``${run_dir}``: the current run directory.

``$${`` escapes a literal ``${``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping

_PLACEHOLDER = re.compile(r"\$\$\{|\$\{(?P<kind>artifacts:)?(?P<name>[A-Za-z0-9_.-]+)\}")


def referenced_stages(text: str) -> list[str]:
    """Stage names referenced through ``${artifacts:...}`` in a string."""
    return [
        m.group("name")
        for m in _PLACEHOLDER.finditer(text)
        if m.group("kind") is not None
    ]


def _substitute(
    text: str,
    artifacts: Callable[[str], list[str]],
    variables: Mapping[str, str],
) -> str:
    def _replace(match: re.Match[str]) -> str:
        if match.group(0) == "$${":
            return "${"
        name = match.group("name")
        if match.group("kind") is not None:
            return " ".join(artifacts(name))
        # Unknown variables are left for the tool to interpret
        return variables.get(name, match.group(0))

    return _PLACEHOLDER.sub(_replace, text)


def expand_args(
    args: Iterable[str],
    artifacts: Callable[[str], list[str]],
    variables: Mapping[str, str] | None = None,
) -> list[str]:
    """Expand placeholders in an argument vector.

    Args:
        args: Arguments to expand.
        artifacts: Lookup from stage name to its registered artifact paths.
        variables: Plain ``${name}`` substitutions.

    Returns:
        Expanded argument vector.

    Example:
        >>> expand_args(["tar", "czf", "out.tgz", "${artifacts:build}"],
        ...             lambda s: ["dist/a.js", "dist/b.js"])
        ['tar', 'czf', 'out.tgz', 'dist/a.js', 'dist/b.js']
    """
    variables = variables or {}
    expanded: list[str] = []
    for arg in args:
        whole = _PLACEHOLDER.fullmatch(arg)
        if whole and whole.group("kind") is not None:
            expanded.extend(artifacts(whole.group("name")))
            continue
        expanded.append(_substitute(arg, artifacts, variables))
    return expanded


def expand_text(
    text: str,
    artifacts: Callable[[str], list[str]],
    variables: Mapping[str, str] | None = None,
) -> str:
    """Expand placeholders in a single string (cwd, env values)."""
    return _substitute(text, artifacts, variables or {})
