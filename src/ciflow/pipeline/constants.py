"""Pipeline configuration constants."""

from __future__ import annotations

# Maximum stages per pipeline
MAX_STAGES_PER_PIPELINE: int = 200

# Pattern for stage names
STAGE_NAME_PATTERN: str = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"
