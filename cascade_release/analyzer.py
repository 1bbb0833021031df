"""Change analysis: commits → per-package impacts → cascades.

analyze() is the single entry point. Apart from the commit fetch through
the injected git reader it is a pure function of its inputs:

1. Resolve where the history window starts (explicit ref or latest tag)
2. Extract impacts from every commit in the window
3. Aggregate impacts per package (highest bump wins)
4. Apply include/exclude filters
5. Propagate the direct impacts to dependents through the reverse
   dependency graph
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from .commits import extract_impacts
from .graph import build_dependency_graph, propagate_cascades, triggers_for
from .models import (
    Analysis,
    Bump,
    CascadeImpact,
    Commit,
    CommitImpact,
    Package,
    PackageImpact,
)
from .versions import find_latest_tag_version, is_official, parse_tag

logger = logging.getLogger(__name__)


class CommitReader(Protocol):
    def get_commits_since(self, ref: str | None) -> list[Commit]: ...


def find_last_release_tag(packages: Iterable[Package], tags: Iterable[str]) -> str | None:
    """Find the tag with the greatest official version across all packages.

    Prerelease tags are ignored so a preview or PR build never moves the
    start of the history window.
    """
    scopes = {p.scope for p in packages}
    best: tuple | None = None
    for tag in tags:
        parsed = parse_tag(tag)
        if not parsed or parsed[0] not in scopes or not is_official(parsed[1]):
            continue
        if best is None or parsed[1] > best[1]:
            best = (tag, parsed[1])
    return best[0] if best else None


def aggregate_impacts(impacts: Iterable[CommitImpact]) -> dict[str, tuple[Bump, list[Commit]]]:
    """Combine commit impacts per scope.

    The bump of a scope is the maximum over its impacts. Commits are
    deduplicated by hash, keeping first-seen order, so feeding the same
    impact twice changes nothing.

    Returns:
        Map of scope → (bump, commits).
    """
    result: dict[str, tuple[Bump, list[Commit]]] = {}
    seen: dict[str, set[str]] = {}
    for impact in impacts:
        if impact.scope not in result:
            result[impact.scope] = (impact.bump, [])
            seen[impact.scope] = set()
        bump, commits = result[impact.scope]
        if impact.commit.hash not in seen[impact.scope]:
            seen[impact.scope].add(impact.commit.hash)
            commits.append(impact.commit)
        result[impact.scope] = (Bump.max(bump, impact.bump), commits)
    return result


def _matches(package: Package, selectors: set[str]) -> bool:
    return package.scope in selectors or package.name in selectors


def analyze(
    packages: Sequence[Package],
    tags: Sequence[str],
    git: CommitReader,
    since: str | None = None,
    filter: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
    max_workers: int = 8,
) -> Analysis:
    """Analyze the commits since the last release.

    Args:
        packages: Workspace packages from the workspace scan.
        tags: All tags in the repository.
        git: Reader providing get_commits_since().
        since: Start of the history window. Defaults to the latest
               official release tag; None there means all history.
        filter: Only report direct impacts on these scopes/names.
        exclude: Never release these scopes/names, directly or by cascade.
        max_workers: Threads used to extract impacts.

    Returns:
        The Analysis. Impacts, cascades and unchanged are disjoint.
    """
    packages = list(packages)
    tags = list(tags)
    by_scope = {p.scope: p for p in packages}
    include = set(filter) if filter else None
    excluded = {p.scope for p in packages if exclude and _matches(p, set(exclude))}

    if since is None:
        since = find_last_release_tag(packages, tags)
    logger.info("Analyzing commits since %s", since or "the beginning of history")

    commits = git.get_commits_since(since)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        per_commit = list(pool.map(extract_impacts, commits))
    aggregated = aggregate_impacts(i for impacts in per_commit for i in impacts)

    for scope in sorted(set(aggregated) - set(by_scope)):
        logger.debug("Ignoring impact on unknown scope %r", scope)

    def current(scope: str) -> str | None:
        version = find_latest_tag_version(scope, tags)
        return str(version) if version else None

    impacts: list[PackageImpact] = []
    for pkg in packages:
        if pkg.scope not in aggregated or pkg.scope in excluded:
            continue
        if include is not None and not _matches(pkg, include):
            continue
        bump, pkg_commits = aggregated[pkg.scope]
        impacts.append(
            PackageImpact(
                package=pkg,
                bump=bump,
                commits=pkg_commits,
                current_version=current(pkg.scope),
            )
        )

    graph = build_dependency_graph(packages)
    seeds = [i.package.scope for i in impacts]
    cascaded = propagate_cascades(graph, seeds, blocked=excluded)

    releasing = set(seeds) | set(cascaded)
    scope_by_name = {p.name: p.scope for p in packages}
    cascades = [
        CascadeImpact(
            package=by_scope[scope],
            triggered_by=triggers_for(by_scope[scope], scope_by_name, releasing),
            current_version=current(scope),
        )
        for scope in cascaded
    ]

    unchanged = [
        p
        for p in packages
        if p.scope not in releasing
        and p.scope not in excluded
        and (include is None or _matches(p, include))
    ]

    logger.info(
        "%d impacted, %d cascaded, %d unchanged",
        len(impacts),
        len(cascades),
        len(unchanged),
    )
    return Analysis(impacts=impacts, cascades=cascades, unchanged=unchanged, tags=tags)

