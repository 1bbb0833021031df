"""Release plan model and persistence.

A Plan is the only durable artifact of planning. It is written to
`.release/plan.json` and is, together with the checkpoint store, all the
executor needs to resume an interrupted release.
"""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import PlanFileError
from .models import Bump, Commit, Package
from .versions import format_tag, pr_version, preview_version, parse_version

DEFAULT_PLAN_PATH = Path(".release") / "plan.json"


class Lifecycle(str, Enum):
    """Release kind governing how the next version is packaged."""

    OFFICIAL = "official"
    CANDIDATE = "candidate"
    EPHEMERAL = "ephemeral"

    @classmethod
    def _missing_(cls, value: object) -> Lifecycle | None:
        if isinstance(value, str):
            return _LIFECYCLE_ALIASES.get(value.lower())
        return None


_LIFECYCLE_ALIASES = {
    "official": Lifecycle.OFFICIAL,
    "stable": Lifecycle.OFFICIAL,
    "candidate": Lifecycle.CANDIDATE,
    "preview": Lifecycle.CANDIDATE,
    "ephemeral": Lifecycle.EPHEMERAL,
}


# ── Official version kinds ──────────────────────────────────────────────────


class OfficialFirst(BaseModel):
    """First ever release of a package."""

    type: Literal["first"] = "first"
    version: str
    bump: Bump


class OfficialIncrement(BaseModel):
    """Release that moves an existing version forward."""

    type: Literal["increment"] = "increment"
    from_version: str
    to_version: str
    bump: Bump


OfficialVersion = Annotated[
    Union[OfficialFirst, OfficialIncrement], Field(discriminator="type")
]


# ── Release items ───────────────────────────────────────────────────────────


class _BaseItem(BaseModel, ABC):
    """Fields shared by every release item.

    Attributes:
        commits: Commits that caused the release (empty for cascades).
        triggered_by: Scopes whose release forced this one. Only set on
                      cascade items.
    """

    package: Package
    bump: Bump
    commits: list[Commit] = Field(default_factory=list)
    triggered_by: list[str] = Field(default_factory=list)

    @property
    @abstractmethod
    def next_version(self) -> str: ...

    @property
    @abstractmethod
    def current_version(self) -> str | None: ...

    @property
    def bump_type(self) -> Bump:
        return self.bump

    @property
    def tag(self) -> str:
        return format_tag(self.package.scope, self.next_version)

    @property
    def is_cascade(self) -> bool:
        return bool(self.triggered_by)


class OfficialItem(_BaseItem):
    kind: Literal["official"] = "official"
    version: OfficialVersion

    @property
    def next_version(self) -> str:
        if isinstance(self.version, OfficialFirst):
            return self.version.version
        return self.version.to_version

    @property
    def current_version(self) -> str | None:
        if isinstance(self.version, OfficialIncrement):
            return self.version.from_version
        return None


StableItem = OfficialItem


class CandidateItem(_BaseItem):
    """`<base>-next.<iteration>` preview of the next official version."""

    kind: Literal["candidate"] = "candidate"
    base_version: str
    iteration: int = Field(ge=1)
    from_version: str | None = None

    @property
    def next_version(self) -> str:
        return str(preview_version(parse_version(self.base_version), self.iteration))

    @property
    def current_version(self) -> str | None:
        return self.from_version


class EphemeralItem(_BaseItem):
    """`0.0.0-pr.<pr_number>.<iteration>.<sha>` build for one pull request."""

    kind: Literal["ephemeral"] = "ephemeral"
    pr_number: int = Field(ge=1)
    iteration: int = Field(ge=1)
    sha: str
    from_version: str | None = None

    @property
    def next_version(self) -> str:
        return str(pr_version(self.pr_number, self.iteration, self.sha))

    @property
    def current_version(self) -> str | None:
        return self.from_version


ReleaseItem = Annotated[
    Union[OfficialItem, CandidateItem, EphemeralItem], Field(discriminator="kind")
]


class Plan(BaseModel):
    """Concrete versions for every package that will be released.

    Attributes:
        head: Commit the plan was computed at. Tags are created there.
        releases: Packages with direct changes.
        cascades: Packages released because a dependency is released.
    """

    lifecycle: Lifecycle
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    head: str | None = None
    releases: list[ReleaseItem] = Field(default_factory=list)
    cascades: list[ReleaseItem] = Field(default_factory=list)

    @model_validator(mode="after")
    def _releases_and_cascades_disjoint(self) -> Plan:
        overlap = {i.package.scope for i in self.releases} & {
            i.package.scope for i in self.cascades
        }
        if overlap:
            raise ValueError(
                f"Packages both released and cascaded: {', '.join(sorted(overlap))}"
            )
        return self

    @property
    def items(self) -> list[ReleaseItem]:
        return [*self.releases, *self.cascades]

    @property
    def is_empty(self) -> bool:
        return not self.releases and not self.cascades

    def versions_by_name(self) -> dict[str, str]:
        """Canonical package name → planned version, for dependency pinning."""
        return {i.package.name: i.next_version for i in self.items}


# ── Persistence ─────────────────────────────────────────────────────────────


def save_plan(plan: Plan, path: Path = DEFAULT_PLAN_PATH) -> None:
    """Write the plan as JSON atomically using temp file + replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(plan.model_dump_json(indent=2))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


def load_plan(path: Path = DEFAULT_PLAN_PATH) -> Plan | None:
    """Load a saved plan.

    Returns:
        The plan, or None when no plan file exists.

    Raises:
        PlanFileError: If the file can't be read or doesn't hold a valid plan.
    """
    if not path.exists():
        return None
    try:
        return Plan.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PlanFileError(f"Cannot read plan file {path}: {exc}") from exc
    except ValidationError as exc:
        raise PlanFileError(f"Invalid plan file {path}:\n{exc}") from exc
