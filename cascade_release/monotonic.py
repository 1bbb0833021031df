"""Monotonic versioning checks.

Versions must never decrease when walking forward through commit history,
and never increase when walking backward. Only official (non-prerelease)
tags take part; previews and PR builds are outside the ordering.

Reachability queries go through the injected git reader. They may cost a
graph walk each, so every validation or audit pass shares one
ReachabilityCache.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal, Protocol

import semver
from pydantic import BaseModel, Field

from .versions import is_official, parse_tag, parse_version

logger = logging.getLogger(__name__)


class AncestryReader(Protocol):
    def get_tag_sha(self, tag: str) -> str: ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...


class ReachabilityCache:
    """Memoizes is_ancestor() answers for the length of one pass."""

    def __init__(self, git: AncestryReader) -> None:
        self._git = git
        self._answers: dict[tuple[str, str], bool] = {}

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        key = (ancestor, descendant)
        if key not in self._answers:
            self._answers[key] = self._git.is_ancestor(ancestor, descendant)
        return self._answers[key]

    @property
    def lookups(self) -> int:
        return len(self._answers)


class TagInfo(BaseModel):
    tag: str
    version: str
    sha: str

    @property
    def parsed_version(self) -> semver.Version:
        return parse_version(self.version)


class Violation(BaseModel):
    """An existing tag that the requested version would contradict.

    Attributes:
        relationship: Where the existing tag's commit sits relative to the
                      requested commit.
    """

    tag: str
    existing_version: str
    existing_sha: str
    relationship: Literal["ancestor", "descendant"]
    message: str


class ValidationResult(BaseModel):
    scope: str
    version: str
    sha: str
    violations: list[Violation] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations


class AuditViolation(BaseModel):
    earlier: TagInfo
    later: TagInfo
    message: str


class AuditResult(BaseModel):
    scope: str
    releases: list[TagInfo] = Field(default_factory=list)
    violations: list[AuditViolation] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations


def get_package_tag_infos(scope: str, tags: Iterable[str], git: AncestryReader) -> list[TagInfo]:
    """Official release tags of one package with their commits.

    Returns:
        TagInfos sorted by version, highest first.
    """
    found: list[tuple[semver.Version, TagInfo]] = []
    for tag in tags:
        parsed = parse_tag(tag)
        if not parsed or parsed[0] != scope or not is_official(parsed[1]):
            continue
        sha = git.get_tag_sha(tag)
        found.append((parsed[1], TagInfo(tag=tag, version=str(parsed[1]), sha=sha)))
    found.sort(key=lambda pair: pair[0], reverse=True)
    return [info for _, info in found]


def validate_monotonic(
    sha: str,
    scope: str,
    version: str | semver.Version,
    tags: Iterable[str],
    git: AncestryReader,
    ignore: Iterable[str] = (),
    cache: ReachabilityCache | None = None,
) -> ValidationResult:
    """Check that `version` can be placed at commit `sha`.

    Every existing official tag E of the package is checked:

    - E's commit is an ancestor of sha   → require version >= version(E)
    - E's commit is a descendant of sha  → require version <= version(E)

    A tag on the same commit counts as an ancestor. Tags on unrelated
    branches impose nothing. All violations are collected.

    Args:
        ignore: Tags to leave out, typically the tag being (re)set.
    """
    new_version = parse_version(str(version))
    cache = cache or ReachabilityCache(git)
    ignored = set(ignore)
    violations: list[Violation] = []

    for info in get_package_tag_infos(scope, tags, git):
        if info.tag in ignored:
            continue
        existing = info.parsed_version
        if cache.is_ancestor(info.sha, sha):
            if new_version < existing:
                violations.append(
                    Violation(
                        tag=info.tag,
                        existing_version=info.version,
                        existing_sha=info.sha,
                        relationship="ancestor",
                        message=(
                            f"{info.tag} at {info.sha[:7]} is on an EARLIER commit "
                            f"but has version > {new_version}"
                        ),
                    )
                )
        elif cache.is_ancestor(sha, info.sha):
            if new_version > existing:
                violations.append(
                    Violation(
                        tag=info.tag,
                        existing_version=info.version,
                        existing_sha=info.sha,
                        relationship="descendant",
                        message=(
                            f"{info.tag} at {info.sha[:7]} is on a LATER commit "
                            f"but has version < {new_version}"
                        ),
                    )
                )

    logger.debug(
        "Validated %s@%s at %s: %d violation(s), %d reachability lookups",
        scope,
        new_version,
        sha[:7],
        len(violations),
        cache.lookups,
    )
    return ValidationResult(
        scope=scope, version=str(new_version), sha=sha, violations=violations
    )


def audit_package_history(
    scope: str,
    tags: Iterable[str],
    git: AncestryReader,
    cache: ReachabilityCache | None = None,
) -> AuditResult:
    """Verify that a package's versions strictly increase with commit order.

    Every pair of official releases is compared. Pairs on parallel branches
    (neither commit reaches the other) or on the same commit are not
    ordered and never violate.
    """
    cache = cache or ReachabilityCache(git)
    infos = get_package_tag_infos(scope, tags, git)
    violations: list[AuditViolation] = []

    for i, a in enumerate(infos):
        for b in infos[i + 1 :]:
            if a.sha == b.sha:
                continue
            if cache.is_ancestor(a.sha, b.sha):
                earlier, later = a, b
            elif cache.is_ancestor(b.sha, a.sha):
                earlier, later = b, a
            else:
                continue
            if earlier.parsed_version >= later.parsed_version:
                violations.append(
                    AuditViolation(
                        earlier=earlier,
                        later=later,
                        message=(
                            f"{earlier.version} at {earlier.sha[:7]} comes BEFORE "
                            f"{later.version} at {later.sha[:7]}, but has a "
                            "higher or equal version"
                        ),
                    )
                )

    return AuditResult(scope=scope, releases=infos, violations=violations)
