"""Version parsing, tag decoding and phase-aware version arithmetic.

Release tags have the form `<scope>@<version>`, where the version is a
semver string whose prerelease part, when present, is one of:

- `next.<n>`             candidate (preview) releases
- `pr.<id>.<n>.<sha>`    ephemeral per-pull-request releases
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

import semver

from .models import Bump

ZERO = semver.Version(0, 0, 0)

_PREVIEW_PATTERN = re.compile(r"^next\.(\d+)$")
_PR_PATTERN = re.compile(r"^pr\.(\d+)\.(\d+)\.([a-f0-9]{7,40})$", re.IGNORECASE)


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Incomplete versions are padded with zeros ("1.2" → "1.2.0"). A leading
    "v" is accepted.
    """
    text = version_str.strip().removeprefix("v")
    core, sep, rest = text.partition("-")
    if not sep:
        core, sep, rest = text.partition("+")
    parts = core.split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    return semver.Version.parse(".".join(parts[:3]) + (sep + rest if sep else ""))


def is_official(version: semver.Version) -> bool:
    """True for versions without a prerelease segment."""
    return version.prerelease is None


def stable_part(version: semver.Version) -> semver.Version:
    """Strip prerelease and build metadata."""
    return semver.Version(version.major, version.minor, version.patch)


# ── Tags ────────────────────────────────────────────────────────────────────


def format_tag(scope: str, version: semver.Version | str) -> str:
    """Format a release tag: `<scope>@<version>`."""
    return f"{scope}@{version}"


def parse_tag(tag: str) -> tuple[str, semver.Version] | None:
    """Decode a release tag into (scope, version), or None if it isn't one.

    The version is split at the last "@" so scopes may contain "@" themselves.
    """
    scope, sep, version_str = tag.rpartition("@")
    if not sep or not scope or not version_str:
        return None
    try:
        return scope, semver.Version.parse(version_str)
    except ValueError:
        return None


def tag_versions(scope: str, tags: Iterable[str]) -> list[semver.Version]:
    """All versions tagged for a scope, in tag order."""
    versions: list[semver.Version] = []
    for tag in tags:
        parsed = parse_tag(tag)
        if parsed and parsed[0] == scope:
            versions.append(parsed[1])
    return versions


def find_latest_tag_version(scope: str, tags: Iterable[str]) -> semver.Version | None:
    """Highest official version tagged for a scope, or None."""
    official = [v for v in tag_versions(scope, tags) if is_official(v)]
    return max(official) if official else None


# ── Prereleases ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PreviewPrerelease:
    """Decoded `next.<iteration>` prerelease."""

    iteration: int

    def __str__(self) -> str:
        return f"next.{self.iteration}"


@dataclass(frozen=True)
class PrPrerelease:
    """Decoded `pr.<pr_number>.<iteration>.<sha>` prerelease."""

    pr_number: int
    iteration: int
    sha: str

    def __str__(self) -> str:
        return f"pr.{self.pr_number}.{self.iteration}.{self.sha}"


def parse_preview_prerelease(value: str | None) -> PreviewPrerelease | None:
    match = _PREVIEW_PATTERN.match(value or "")
    if not match or int(match.group(1)) < 1:
        return None
    return PreviewPrerelease(int(match.group(1)))


def parse_pr_prerelease(value: str | None) -> PrPrerelease | None:
    match = _PR_PATTERN.match(value or "")
    if not match or int(match.group(1)) < 1 or int(match.group(2)) < 1:
        return None
    return PrPrerelease(int(match.group(1)), int(match.group(2)), match.group(3))


def find_latest_preview_number(
    scope: str, base_version: semver.Version, tags: Iterable[str]
) -> int:
    """Highest `next.<n>` counter among a scope's tags for exactly this base.

    Returns 0 when no preview of that base exists.
    """
    base = stable_part(base_version)
    highest = 0
    for version in tag_versions(scope, tags):
        if stable_part(version) != base:
            continue
        preview = parse_preview_prerelease(version.prerelease)
        if preview and preview.iteration > highest:
            highest = preview.iteration
    return highest


def find_latest_pr_number(scope: str, pr_number: int, tags: Iterable[str]) -> int:
    """Highest iteration among a scope's `0.0.0-pr.<pr_number>.*` tags (0 if none)."""
    highest = 0
    for version in tag_versions(scope, tags):
        if stable_part(version) != ZERO:
            continue
        pr = parse_pr_prerelease(version.prerelease)
        if pr and pr.pr_number == pr_number and pr.iteration > highest:
            highest = pr.iteration
    return highest


def preview_version(base: semver.Version, iteration: int) -> semver.Version:
    """`<base>-next.<iteration>`."""
    return stable_part(base).replace(prerelease=str(PreviewPrerelease(iteration)))


def short_sha(sha: str, length: int = 7) -> str:
    """Abbreviate a commit SHA for use as a prerelease identifier.

    Semver forbids leading zeros in numeric identifiers, so an all-digit
    abbreviation starting with 0 is extended until it contains a letter.
    """
    end = length
    while end < len(sha) and sha[:end].isdigit() and sha.startswith("0"):
        end += 1
    return sha[:end]


def pr_version(pr_number: int, iteration: int, sha: str) -> semver.Version:
    """`0.0.0-pr.<pr_number>.<iteration>.<sha>`.

    Raises:
        ValueError: `sha` is numeric with a leading zero (not valid semver).
    """
    if sha.isdigit() and sha.startswith("0") and sha != "0":
        raise ValueError(f"Commit id {sha!r} is not a valid prerelease identifier")
    return ZERO.replace(prerelease=str(PrPrerelease(pr_number, iteration, sha)))


def to_pep440(version: semver.Version | str) -> str:
    """Spell a release version the way Python packaging accepts it.

    Examples:
        1.3.0                  → 1.3.0
        1.3.0-next.2           → 1.3.0rc2
        0.0.0-pr.42.3.abc1234  → 0.0.0.post42.dev3

    Raises:
        ValueError: For prereleases that are neither previews nor PR builds.
    """
    version = parse_version(str(version))
    base = str(stable_part(version))
    if version.prerelease is None:
        return base
    preview = parse_preview_prerelease(version.prerelease)
    if preview:
        return f"{base}rc{preview.iteration}"
    pr = parse_pr_prerelease(version.prerelease)
    if pr:
        return f"{base}.post{pr.pr_number}.dev{pr.iteration}"
    raise ValueError(f"No PEP 440 spelling for {version}")


# ── Arithmetic ──────────────────────────────────────────────────────────────


def map_bump_for_phase(version: semver.Version, bump: Bump) -> Bump:
    """Remap a requested bump through the phase table.

    While major is 0 (initial phase) breaking changes only bump the minor
    number; from 1.0.0 on (public phase) bumps are taken as-is.
    """
    if version.major == 0 and bump is Bump.MAJOR:
        return Bump.MINOR
    return bump


def increment(version: semver.Version, bump: Bump) -> semver.Version:
    """Standard semver increment, dropping any prerelease segment."""
    base = stable_part(version)
    if bump is Bump.MAJOR:
        return base.bump_major()
    if bump is Bump.MINOR:
        return base.bump_minor()
    return base.bump_patch()


def calculate_next_version(current: semver.Version | None, bump: Bump) -> semver.Version:
    """Calculate the next official version.

    Examples:
        (None, major)  → 0.1.0
        (None, patch)  → 0.0.1
        (0.3.2, major) → 0.4.0
        (1.2.3, major) → 2.0.0
        (1.2.3, patch) → 1.2.4
    """
    if current is None:
        # First release always starts in the initial phase
        if bump is Bump.PATCH:
            return semver.Version(0, 0, 1)
        return semver.Version(0, 1, 0)
    return increment(current, map_bump_for_phase(current, bump))
