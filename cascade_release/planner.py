"""Turn an Analysis into a Plan with concrete versions.

All lifecycles share calculate_next_version(); they differ only in how the
computed version is packaged:

- official:  the next version as-is (1.3.0)
- candidate: the next version plus a preview counter (1.3.0-next.2)
- ephemeral: a throwaway build for one pull request (0.0.0-pr.42.1.abc1234)

Cascaded packages are packaged the same way as direct releases, with a
patch bump.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable, Mapping, Sequence

from .errors import PlanningError
from .graph import build_dependency_graph, propagate_cascades, triggers_for
from .models import Analysis, Bump, CascadeImpact, Commit, Package, PackageImpact
from .plan import (
    CandidateItem,
    EphemeralItem,
    Lifecycle,
    OfficialFirst,
    OfficialIncrement,
    OfficialItem,
    Plan,
    ReleaseItem,
)
from .versions import (
    calculate_next_version,
    find_latest_pr_number,
    find_latest_preview_number,
    find_latest_tag_version,
    map_bump_for_phase,
    parse_version,
    short_sha,
)

logger = logging.getLogger(__name__)

_PULL_URL_PATTERN = re.compile(r"/pull/(\d+)")
_PULL_REF_PATTERN = re.compile(r"^refs/pull/(\d+)/")

ItemFactory = Callable[[Package, Bump, list[Commit], "str | None", list[str]], ReleaseItem]


def detect_pr_number(env: Mapping[str, str] | None = None) -> int | None:
    """Find the pull request number from CI environment variables.

    Checks, in order: GITHUB_PR_NUMBER, PR_NUMBER, the CI_PULL_REQUEST URL
    (".../pull/<n>") and GITHUB_REF ("refs/pull/<n>/merge").
    """
    env = os.environ if env is None else env
    for key in ("GITHUB_PR_NUMBER", "PR_NUMBER"):
        value = env.get(key, "").strip()
        if value.isdigit() and int(value) > 0:
            return int(value)
    match = _PULL_URL_PATTERN.search(env.get("CI_PULL_REQUEST", ""))
    if match:
        return int(match.group(1))
    match = _PULL_REF_PATTERN.match(env.get("GITHUB_REF", ""))
    if match:
        return int(match.group(1))
    return None


# ── Item factories ──────────────────────────────────────────────────────────


def _official_factory() -> ItemFactory:
    def make(package, bump, commits, current, triggered_by) -> ReleaseItem:
        if current is None:
            version = calculate_next_version(None, bump)
            kind = OfficialFirst(version=str(version), bump=bump)
        else:
            current_v = parse_version(current)
            effective = map_bump_for_phase(current_v, bump)
            version = calculate_next_version(current_v, bump)
            kind = OfficialIncrement(
                from_version=current, to_version=str(version), bump=effective
            )
        return OfficialItem(
            package=package,
            bump=bump,
            commits=commits,
            triggered_by=triggered_by,
            version=kind,
        )

    return make


def _candidate_factory(tags: Sequence[str]) -> ItemFactory:
    def make(package, bump, commits, current, triggered_by) -> ReleaseItem:
        base = calculate_next_version(parse_version(current) if current else None, bump)
        iteration = find_latest_preview_number(package.scope, base, tags) + 1
        return CandidateItem(
            package=package,
            bump=bump,
            commits=commits,
            triggered_by=triggered_by,
            base_version=str(base),
            iteration=iteration,
            from_version=current,
        )

    return make


def _ephemeral_factory(tags: Sequence[str], pr_number: int, sha: str) -> ItemFactory:
    def make(package, bump, commits, current, triggered_by) -> ReleaseItem:
        iteration = find_latest_pr_number(package.scope, pr_number, tags) + 1
        return EphemeralItem(
            package=package,
            bump=bump,
            commits=commits,
            triggered_by=triggered_by,
            pr_number=pr_number,
            iteration=iteration,
            sha=sha,
            from_version=current,
        )

    return make


# ── Selection ───────────────────────────────────────────────────────────────


def _matches(package: Package, selectors: set[str]) -> bool:
    return package.scope in selectors or package.name in selectors


def _all_packages(analysis: Analysis) -> list[Package]:
    seen: dict[str, Package] = {}
    for pkg in (
        *(i.package for i in analysis.impacts),
        *(c.package for c in analysis.cascades),
        *analysis.unchanged,
    ):
        seen.setdefault(pkg.scope, pkg)
    return sorted(seen.values(), key=lambda p: p.scope)


def _select(
    analysis: Analysis,
    workspace: Sequence[Package] | None,
    packages: Iterable[str] | None,
    exclude: Iterable[str] | None,
) -> tuple[list[PackageImpact], list[CascadeImpact]]:
    """Narrow the analysis to the requested packages.

    Without include/exclude options the analysis is used unchanged.
    Otherwise cascades are recomputed from the surviving direct releases.
    """
    include = set(packages) if packages else None
    excluded_names = set(exclude) if exclude else set()
    if include is None and not excluded_names:
        return list(analysis.impacts), list(analysis.cascades)

    impacts = [
        i
        for i in analysis.impacts
        if not _matches(i.package, excluded_names)
        and (include is None or _matches(i.package, include))
    ]

    all_packages = list(workspace) if workspace is not None else _all_packages(analysis)
    by_scope = {p.scope: p for p in all_packages}
    blocked = {p.scope for p in all_packages if _matches(p, excluded_names)}
    seeds = [i.package.scope for i in impacts]
    cascaded = propagate_cascades(build_dependency_graph(all_packages), seeds, blocked)

    releasing = set(seeds) | set(cascaded)
    scope_by_name = {p.name: p.scope for p in all_packages}
    cascades = []
    for scope in cascaded:
        version = find_latest_tag_version(scope, analysis.tags)
        cascades.append(
            CascadeImpact(
                package=by_scope[scope],
                triggered_by=triggers_for(by_scope[scope], scope_by_name, releasing),
                current_version=str(version) if version else None,
            )
        )
    return impacts, cascades


def _build_plan(
    lifecycle: Lifecycle,
    analysis: Analysis,
    make_item: ItemFactory,
    head: str | None,
    workspace: Sequence[Package] | None,
    packages: Iterable[str] | None,
    exclude: Iterable[str] | None,
) -> Plan:
    impacts, cascades = _select(analysis, workspace, packages, exclude)
    releases = [
        make_item(i.package, i.bump, list(i.commits), i.current_version, [])
        for i in impacts
    ]
    cascade_items = [
        make_item(c.package, Bump.PATCH, [], c.current_version, list(c.triggered_by))
        for c in cascades
    ]
    plan = Plan(lifecycle=lifecycle, head=head, releases=releases, cascades=cascade_items)
    for item in plan.items:
        logger.info(
            "%s: %s → %s (%s)",
            item.package.scope,
            item.current_version or "none",
            item.next_version,
            item.bump_type.value,
        )
    return plan


# ── Lifecycles ──────────────────────────────────────────────────────────────


def plan_official(
    analysis: Analysis,
    head: str | None = None,
    workspace: Sequence[Package] | None = None,
    packages: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> Plan:
    """Plan official releases: the next version as-is."""
    return _build_plan(
        Lifecycle.OFFICIAL, analysis, _official_factory(), head, workspace, packages, exclude
    )


def plan_candidate(
    analysis: Analysis,
    head: str | None = None,
    workspace: Sequence[Package] | None = None,
    packages: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> Plan:
    """Plan preview releases of the next official versions.

    Example:
        Tags pkg@1.1.0-next.1 and pkg@1.1.0-next.2 exist and the next
        official version of pkg is 1.1.0 → pkg@1.1.0-next.3.
    """
    factory = _candidate_factory(analysis.tags)
    return _build_plan(
        Lifecycle.CANDIDATE, analysis, factory, head, workspace, packages, exclude
    )


def plan_ephemeral(
    analysis: Analysis,
    head: str | None,
    pr_number: int | None = None,
    workspace: Sequence[Package] | None = None,
    packages: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> Plan:
    """Plan throwaway per-pull-request builds rooted at 0.0.0.

    Raises:
        PlanningError: If no pull request number is given or detectable, or
            the head commit is unknown.
    """
    if pr_number is None:
        pr_number = detect_pr_number(env)
    if pr_number is None:
        raise PlanningError(
            "Ephemeral releases need a pull request number",
            hint="pass --pr <number> or set GITHUB_PR_NUMBER / PR_NUMBER",
        )
    if pr_number < 1:
        raise PlanningError(f"Invalid pull request number: {pr_number}")
    if not head:
        raise PlanningError(
            "Ephemeral releases need the head commit",
            hint="run inside a git checkout with at least one commit",
        )
    factory = _ephemeral_factory(analysis.tags, pr_number, short_sha(head))
    return _build_plan(
        Lifecycle.EPHEMERAL, analysis, factory, head, workspace, packages, exclude
    )


def plan_release(
    lifecycle: Lifecycle | str,
    analysis: Analysis,
    head: str | None = None,
    workspace: Sequence[Package] | None = None,
    packages: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
    pr_number: int | None = None,
    env: Mapping[str, str] | None = None,
) -> Plan:
    """Plan a release for the given lifecycle ("stable"/"preview" aliases accepted)."""
    try:
        lifecycle = Lifecycle(lifecycle)
    except ValueError as exc:
        raise PlanningError(
            f"Unknown lifecycle: {lifecycle}",
            hint="use official, candidate or ephemeral",
        ) from exc

    if lifecycle is Lifecycle.OFFICIAL:
        return plan_official(analysis, head, workspace, packages, exclude)
    if lifecycle is Lifecycle.CANDIDATE:
        return plan_candidate(analysis, head, workspace, packages, exclude)
    return plan_ephemeral(analysis, head, pr_number, workspace, packages, exclude, env)
