"""Data models for cascade-release.

These Pydantic models represent the workspace, the commit history and the
result of analyzing it. Versions are kept as strings so every model
serializes to plain JSON; use versions.parse_version() to compare them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Package(BaseModel):
    """A package in the workspace.

    Attributes:
        scope: Directory name of the package. Used as the scope in commit
               titles and in release tags; unique within the workspace.
        name: Canonical (PEP 503) distribution name from [project].name.
        path: Path from the workspace root to the package directory.
        dependencies: Canonical names of the workspace packages this one
                      depends on. External deps are not tracked.
    """

    model_config = ConfigDict(frozen=True)

    scope: str
    name: str
    path: str
    dependencies: list[str] = Field(default_factory=list)


class Bump(str, Enum):
    """Severity of a version change, totally ordered patch < minor < major."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"

    @property
    def rank(self) -> int:
        return _BUMP_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Bump):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Bump):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Bump):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Bump):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def max(cls, a: Bump, b: Bump) -> Bump:
        return a if a.rank >= b.rank else b


_BUMP_RANK = {Bump.PATCH: 0, Bump.MINOR: 1, Bump.MAJOR: 2}


class Target(BaseModel):
    """One (type, scope) pair of a conventional commit title."""

    model_config = ConfigDict(frozen=True)

    type: str
    scope: str | None = None
    breaking: bool = False


class ConventionalCommit(BaseModel):
    """Parsed conventional commit title.

    A plain `feat(core): msg` yields one target; `feat(a, b)` or
    `feat(a), fix(b)` yield one target per scope.
    """

    model_config = ConfigDict(frozen=True)

    targets: list[Target] = Field(min_length=1)
    description: str

    @property
    def scopes(self) -> list[str]:
        return [t.scope for t in self.targets if t.scope]

    def target_for(self, scope: str) -> Target | None:
        return next((t for t in self.targets if t.scope == scope), None)


class Commit(BaseModel):
    """A git commit, optionally with its parsed conventional-commit title."""

    model_config = ConfigDict(frozen=True)

    hash: str
    author: str = ""
    date: datetime | None = None
    message: str
    parsed: ConventionalCommit | None = None

    @property
    def title(self) -> str:
        return self.message.split("\n", 1)[0].strip()

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class CommitImpact(BaseModel):
    """The effect of one commit on one package scope."""

    scope: str
    bump: Bump
    commit: Commit


class PackageImpact(BaseModel):
    """Aggregated direct impact on a package.

    Attributes:
        bump: Highest bump requested by any commit for this package.
        commits: Contributing commits, deduplicated by hash.
        current_version: Latest official version from tags, if any.
    """

    package: Package
    bump: Bump
    commits: list[Commit] = Field(default_factory=list)
    current_version: str | None = None


class CascadeImpact(BaseModel):
    """A package that must be re-released because a dependency changed.

    Attributes:
        triggered_by: Scopes of the impacted/cascaded dependencies that
                      reached this package.
    """

    package: Package
    triggered_by: list[str] = Field(default_factory=list)
    current_version: str | None = None


class Analysis(BaseModel):
    """Result of one Analyzer run. Recomputed per invocation, never persisted."""

    model_config = ConfigDict(frozen=True)

    impacts: list[PackageImpact] = Field(default_factory=list)
    cascades: list[CascadeImpact] = Field(default_factory=list)
    unchanged: list[Package] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
