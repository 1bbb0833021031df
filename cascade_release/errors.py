"""Exception types for cascade-release.

Every error raised on purpose by the library derives from ReleaseError so
callers (and the CLI) can catch the whole family in one place.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .monotonic import ValidationResult


class ReleaseError(Exception):
    """Base class for all cascade-release errors."""


class ParseTitleError(ReleaseError):
    """A commit title is not a valid conventional commit."""

    def __init__(self, reason: str, title: str) -> None:
        super().__init__(f'{reason}: "{title}"')
        self.reason = reason
        self.title = title


class WorkspaceError(ReleaseError):
    """The workspace layout could not be read."""


class CommandError(ReleaseError):
    """An external command (git, uv, gh) exited with a non-zero status."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str = "") -> None:
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"`{' '.join(args)}` exited with {returncode}{detail}")
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr


class PlanningError(ReleaseError):
    """A plan could not be generated.

    Attributes:
        hint: What the user can do to fix the problem.
    """

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message if not hint else f"{message}\n  Hint: {hint}")
        self.hint = hint


class PlanFileError(ReleaseError):
    """The persisted plan file is unreadable or invalid."""


class HistoryError(ReleaseError):
    """A release history operation failed."""


class TagExistsError(HistoryError):
    """A release tag already exists at a different commit."""

    def __init__(self, tag: str, existing_sha: str, requested_sha: str) -> None:
        super().__init__(
            f"Tag {tag} already exists at {existing_sha[:7]} "
            f"(requested {requested_sha[:7]}). Pass move=True to relocate it."
        )
        self.tag = tag
        self.existing_sha = existing_sha
        self.requested_sha = requested_sha


class MonotonicViolationError(HistoryError):
    """Setting a version would break monotonic versioning.

    Carries the full validation result so every violation can be reported
    in one go.
    """

    def __init__(self, validation: ValidationResult) -> None:
        lines = [
            f"Cannot set {validation.version} at {validation.sha[:7]}",
            *(f"  {v.message}" for v in validation.violations),
            "  Hint: versions must increase with commit order.",
        ]
        super().__init__("\n".join(lines))
        self.validation = validation


class ActivityError(ReleaseError):
    """A workflow activity failed after exhausting its retries."""

    def __init__(self, activity: str, detail: str) -> None:
        super().__init__(f"{activity} failed: {detail}")
        self.activity = activity
        self.detail = detail


class CheckpointConflictError(ReleaseError):
    """A terminal checkpoint already exists for the given run and activity."""
