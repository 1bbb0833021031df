"""Manual release history operations: set (or move) a tag, audit tags."""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import semver
from pydantic import BaseModel

from .errors import CommandError, HistoryError, MonotonicViolationError, TagExistsError
from .monotonic import (
    AuditResult,
    ReachabilityCache,
    audit_package_history,
    validate_monotonic,
)
from .versions import format_tag, is_official, parse_tag, parse_version

logger = logging.getLogger(__name__)


class HistoryGit(Protocol):
    def commit_exists(self, sha: str) -> bool: ...

    def get_tags(self) -> list[str]: ...

    def get_tag_sha(self, tag: str) -> str: ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    def create_tag_at(self, tag: str, sha: str, message: str | None = None) -> None: ...

    def delete_tag(self, tag: str) -> None: ...

    def push_tag(self, tag: str, remote: str = "origin", force: bool = False) -> None: ...

    def delete_remote_tag(self, tag: str, remote: str = "origin") -> None: ...


class SetResult(BaseModel):
    tag: str
    sha: str
    version: str
    action: Literal["created", "moved", "unchanged"]
    pushed: bool = False


def same_commit(a: str, b: str) -> bool:
    """True if two SHAs name the same commit (either may be abbreviated)."""
    a, b = a.lower(), b.lower()
    return a.startswith(b) or b.startswith(a)


def set_release_tag(
    git: HistoryGit,
    sha: str,
    scope: str,
    version: str | semver.Version,
    push: bool = True,
    move: bool = False,
    remote: str = "origin",
    message: str | None = None,
) -> SetResult:
    """Tag `sha` as release `version` of `scope`.

    Nothing is written unless every check passes: the commit must exist,
    an existing tag may only be relocated with move=True, and the version
    must be monotonic with respect to the package's other releases.

    Returns:
        SetResult with action "unchanged" when the tag already points at
        sha, "moved" when it was relocated and "created" otherwise.

    Raises:
        HistoryError: The commit does not exist.
        TagExistsError: The tag exists elsewhere and move is False.
        MonotonicViolationError: The version breaks commit ordering.
    """
    if not git.commit_exists(sha):
        raise HistoryError(f"Commit {sha} does not exist")

    version = parse_version(str(version))
    if not is_official(version):
        raise HistoryError(f"Only official versions can be set manually, got {version}")
    tag = format_tag(scope, version)
    tags = git.get_tags()

    moving = False
    if tag in tags:
        existing_sha = git.get_tag_sha(tag)
        if same_commit(existing_sha, sha):
            logger.info("%s already points at %s", tag, sha[:7])
            return SetResult(tag=tag, sha=existing_sha, version=str(version), action="unchanged")
        if not move:
            raise TagExistsError(tag, existing_sha, sha)
        moving = True

    validation = validate_monotonic(
        sha, scope, version, tags, git, ignore=[tag], cache=ReachabilityCache(git)
    )
    if not validation.valid:
        raise MonotonicViolationError(validation)

    if moving:
        logger.info("Moving %s to %s", tag, sha[:7])
        git.delete_tag(tag)
        try:
            git.delete_remote_tag(tag, remote)
        except CommandError as exc:
            logger.warning("Could not delete %s on %s: %s", tag, remote, exc)

    git.create_tag_at(tag, sha, message or f"Release {tag}")
    if push:
        git.push_tag(tag, remote, force=moving)

    return SetResult(
        tag=tag,
        sha=sha,
        version=str(version),
        action="moved" if moving else "created",
        pushed=push,
    )


def audit(git: HistoryGit, scope: str | None = None) -> list[AuditResult]:
    """Audit the release history of one package, or of every tagged package."""
    tags = git.get_tags()
    if scope is not None:
        scopes = [scope]
    else:
        found = set()
        for tag in tags:
            parsed = parse_tag(tag)
            if parsed and is_official(parsed[1]):
                found.add(parsed[0])
        scopes = sorted(found)

    cache = ReachabilityCache(git)
    results = [audit_package_history(s, tags, git, cache=cache) for s in scopes]
    for result in results:
        for violation in result.violations:
            logger.warning("%s: %s", result.scope, violation.message)
    return results
