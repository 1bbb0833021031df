"""Conventional commit parsing and impact extraction.

Title grammar:

    type(scope[, scope...])? '!'? ': ' description

Commas inside parentheses separate scopes of one group; commas outside
parentheses separate independent `type(scope)` groups, so one commit can
target several packages with different types:

    feat(core, cli): shared change         two scopes, one type
    feat(core!), fix(cli): mixed change    core breaking feat, cli fix
    feat(core), fix(cli)!: all breaking    leading ! applies to every scope
"""

from __future__ import annotations

import logging
import re

from .errors import ParseTitleError
from .models import Bump, Commit, CommitImpact, ConventionalCommit, Target

logger = logging.getLogger(__name__)

_GROUP_PATTERN = re.compile(r"^([a-zA-Z]+)(?:\(([^()]+)\))?(!)?$")

# Standard (Angular) types and the bump they imply. None means no release.
STANDARD_TYPES: dict[str, Bump | None] = {
    "feat": Bump.MINOR,
    "fix": Bump.PATCH,
    "perf": Bump.PATCH,
    "docs": None,
    "style": None,
    "refactor": None,
    "test": None,
    "build": None,
    "ci": None,
    "chore": None,
    "revert": None,
}


def bump_for(type_: str, breaking: bool) -> Bump | None:
    """Bump implied by a commit type.

    Breaking changes are always major. Unknown custom types are treated as
    patch releases.
    """
    if breaking:
        return Bump.MAJOR
    type_ = type_.lower()
    if type_ in STANDARD_TYPES:
        return STANDARD_TYPES[type_]
    return Bump.PATCH


def parse_title(title: str) -> ConventionalCommit:
    """Parse a conventional commit title line.

    Raises:
        ParseTitleError: Missing colon, empty description, or a type/scope
            header that does not match the grammar.
    """
    trimmed = title.strip()
    header, colon, description = trimmed.partition(":")
    if not colon:
        raise ParseTitleError("Missing colon separator", title)
    header = header.strip()
    description = description.strip()
    if not description:
        raise ParseTitleError("Empty description", title)
    if not header:
        raise ParseTitleError("Missing type", title)

    global_breaking = header.endswith("!")
    if global_breaking:
        header = header[:-1].rstrip()

    groups = _split_groups(header)
    if not groups:
        raise ParseTitleError("Missing type", title)

    targets: list[Target] = []
    for group in groups:
        parsed = _parse_group(group)
        if parsed is None:
            raise ParseTitleError(f"Invalid type-scope group: {group}", title)
        type_, scopes = parsed
        if len(groups) > 1 and not scopes:
            raise ParseTitleError("Multi-target commits require scopes", title)
        if not scopes:
            targets.append(Target(type=type_, scope=None, breaking=global_breaking))
        for scope, breaking in scopes:
            targets.append(
                Target(type=type_, scope=scope, breaking=global_breaking or breaking)
            )

    return ConventionalCommit(targets=targets, description=description)


def _split_groups(header: str) -> list[str]:
    """Split a header into type-scope groups, respecting parentheses.

    "feat(core), fix(cli)" → ["feat(core)", "fix(cli)"]
    "feat(core, cli)" → ["feat(core, cli)"]
    """
    groups: list[str] = []
    current: list[str] = []
    depth = 0
    for char in header:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            groups.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    groups.append("".join(current).strip())
    return groups


def _parse_group(group: str) -> tuple[str, list[tuple[str, bool]]] | None:
    """Parse `type(scope!, scope2)!` into (type, [(scope, breaking), ...])."""
    match = _GROUP_PATTERN.match(group)
    if not match:
        return None
    type_, scopes_part, group_breaking = match.groups()
    if not scopes_part:
        return type_.lower(), []

    scopes: list[tuple[str, bool]] = []
    for raw in scopes_part.split(","):
        scope = raw.strip()
        breaking = bool(group_breaking)
        if scope.endswith("!"):
            scope = scope[:-1].strip()
            breaking = True
        if not scope:
            return None
        scopes.append((scope, breaking))
    return type_.lower(), scopes


def parse_commit(commit: Commit) -> Commit:
    """Return the commit with its parsed title attached (None if malformed)."""
    try:
        parsed = parse_title(commit.title)
    except ParseTitleError as exc:
        logger.debug("Skipping commit %s: %s", commit.short_hash, exc)
        parsed = None
    return commit.model_copy(update={"parsed": parsed})


def extract_impacts(commit: Commit) -> list[CommitImpact]:
    """Extract per-package impacts from one commit.

    Malformed titles and scopeless commits yield no impacts; they never
    raise.
    """
    commit = commit if commit.parsed is not None else parse_commit(commit)
    if commit.parsed is None:
        return []

    impacts: list[CommitImpact] = []
    for target in commit.parsed.targets:
        if not target.scope:
            continue
        bump = bump_for(target.type, target.breaking)
        if bump is None:
            continue
        impacts.append(CommitImpact(scope=target.scope, bump=bump, commit=commit))
    return impacts
