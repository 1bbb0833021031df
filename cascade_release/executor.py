"""Release execution: plan → durable workflow → per-package outcomes.

Every plan item becomes an independent chain of activities:

    Publish:<tag> → CreateTag:<tag> → PushTag:<tag> → CreateGHRelease:<tag>

Chains of different packages share no edges, so they run concurrently and
a failure in one chain never blocks another. Activity keys are stable for
a given plan, which makes re-applying the same plan resume the earlier run.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from .errors import ActivityError, TagExistsError
from .history import same_commit
from .models import Package
from .plan import Lifecycle, Plan, ReleaseItem
from .workflow import (
    ActivityState,
    CheckpointStore,
    Observer,
    Workflow,
    WorkflowEvent,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


class ActivityKind(str, Enum):
    PUBLISH = "Publish"
    CREATE_TAG = "CreateTag"
    PUSH_TAG = "PushTag"
    CREATE_RELEASE = "CreateGHRelease"

    def key(self, tag: str) -> str:
        return f"{self.value}:{tag}"


class Publisher(Protocol):
    def publish(
        self, package: Package, version: str, internal_versions: dict[str, str]
    ) -> None: ...


class TagWriter(Protocol):
    def get_tags(self) -> list[str]: ...

    def get_tag_sha(self, tag: str) -> str: ...

    def get_head_sha(self) -> str: ...

    def create_tag_at(self, tag: str, sha: str, message: str | None = None) -> None: ...

    def push_tag(self, tag: str, remote: str = "origin", force: bool = False) -> None: ...


class ReleaseCreator(Protocol):
    def create_release(
        self, tag: str, title: str, notes: str, prerelease: bool = False
    ) -> None: ...


@dataclass
class Collaborators:
    """Write-side services the release workflow drives."""

    git: TagWriter
    publisher: Publisher | None = None
    releases: ReleaseCreator | None = None


@dataclass
class ExecuteOptions:
    """Knobs for execute_plan().

    Attributes:
        retries: Extra attempts per activity after the first failure.
        concurrency: Maximum activities in flight (None = unbounded).
        dry_run: Log what would happen instead of calling collaborators.
        skip_publish: Start chains at CreateTag (packages published elsewhere).
        github_releases: Append a CreateGHRelease activity to each chain.
        retry_failed: Forget failed checkpoints of the run before resuming.
    """

    remote: str = "origin"
    retries: int = 2
    retry_delay: float = 0.0
    concurrency: int | None = None
    dry_run: bool = False
    skip_publish: bool = False
    github_releases: bool = True
    retry_failed: bool = False
    observers: list[Observer] = field(default_factory=list)


class PackageOutcome(BaseModel):
    scope: str
    tag: str
    status: Literal["released", "failed"]
    completed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed_activity: str | None = None
    error: str | None = None


class ExecutionResult(BaseModel):
    run_id: str
    outcomes: list[PackageOutcome] = Field(default_factory=list)
    events: list[WorkflowEvent] = Field(default_factory=list)

    @property
    def released(self) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.status == "released"]

    @property
    def failed(self) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise ActivityError describing every failed package, if any."""
        if self.ok:
            return
        first = self.failed[0]
        details = "; ".join(
            f"{o.scope}: {o.failed_activity} ({o.error})" for o in self.failed
        )
        raise ActivityError(first.failed_activity or first.tag, details)


def default_run_id(plan: Plan) -> str:
    """Stable run id derived from the plan content (timestamp excluded)."""
    payload = plan.model_dump_json(exclude={"timestamp"})
    digest = hashlib.sha256(payload.encode()).hexdigest()[:12]
    return f"{plan.lifecycle.value}-{digest}"


def release_notes(item: ReleaseItem) -> str:
    if item.triggered_by:
        return f"Released because dependencies changed: {', '.join(item.triggered_by)}"
    return "\n".join(f"- {c.title} ({c.short_hash})" for c in item.commits)


def _chain_keys(item: ReleaseItem, options: ExecuteOptions) -> list[str]:
    kinds = [ActivityKind.CREATE_TAG, ActivityKind.PUSH_TAG]
    if not options.skip_publish:
        kinds.insert(0, ActivityKind.PUBLISH)
    if options.github_releases:
        kinds.append(ActivityKind.CREATE_RELEASE)
    return [kind.key(item.tag) for kind in kinds]


def _dry(description: str, value: dict[str, Any]) -> Callable[[], dict[str, Any]]:
    def run() -> dict[str, Any]:
        logger.info("[dry-run] would %s", description)
        return {**value, "dry_run": True}

    return run


def build_release_workflow(
    plan: Plan,
    collaborators: Collaborators,
    head: str,
    options: ExecuteOptions | None = None,
) -> Workflow:
    """Build the per-package activity chains for a plan.

    Args:
        head: Commit the release tags are created at.
    """
    options = options or ExecuteOptions()
    git = collaborators.git
    versions_by_name = plan.versions_by_name()
    prerelease = plan.lifecycle is not Lifecycle.OFFICIAL
    wf = Workflow(name=f"release-{plan.lifecycle.value}")

    for item in plan.items:
        tag = item.tag
        version = item.next_version
        internal = {
            dep: versions_by_name[dep]
            for dep in item.package.dependencies
            if dep in versions_by_name
        }
        notes = release_notes(item)

        def publish(
            item: ReleaseItem = item,
            version: str = version,
            internal: dict[str, str] = internal,
        ) -> dict[str, Any]:
            if collaborators.publisher is None:
                raise ActivityError(ActivityKind.PUBLISH.key(item.tag), "no publisher configured")
            collaborators.publisher.publish(item.package, version, internal)
            return {"package": item.package.name, "version": version}

        def create_tag(tag: str = tag) -> dict[str, Any]:
            if tag in git.get_tags():
                existing = git.get_tag_sha(tag)
                if not same_commit(existing, head):
                    raise TagExistsError(tag, existing, head)
                logger.info("%s already exists at %s", tag, head[:7])
                return {"tag": tag, "sha": existing}
            git.create_tag_at(tag, head, f"Release {tag}")
            return {"tag": tag, "sha": head}

        def push_tag(tag: str = tag) -> dict[str, Any]:
            git.push_tag(tag, options.remote)
            return {"tag": tag, "remote": options.remote}

        def create_release(tag: str = tag, notes: str = notes) -> dict[str, Any]:
            if collaborators.releases is None:
                raise ActivityError(
                    ActivityKind.CREATE_RELEASE.key(tag), "no release service configured"
                )
            collaborators.releases.create_release(tag, tag, notes, prerelease=prerelease)
            return {"tag": tag}

        steps: dict[str, Callable[[], dict[str, Any]]] = {
            ActivityKind.PUBLISH.key(tag): publish,
            ActivityKind.CREATE_TAG.key(tag): create_tag,
            ActivityKind.PUSH_TAG.key(tag): push_tag,
            ActivityKind.CREATE_RELEASE.key(tag): create_release,
        }
        if options.dry_run:
            steps = {
                ActivityKind.PUBLISH.key(tag): _dry(
                    f"publish {item.package.name} {version}", {"version": version}
                ),
                ActivityKind.CREATE_TAG.key(tag): _dry(
                    f"tag {tag} at {head[:7]}", {"tag": tag}
                ),
                ActivityKind.PUSH_TAG.key(tag): _dry(
                    f"push {tag} to {options.remote}", {"tag": tag}
                ),
                ActivityKind.CREATE_RELEASE.key(tag): _dry(
                    f"create GitHub release {tag}", {"tag": tag}
                ),
            }

        previous: str | None = None
        for key in _chain_keys(item, options):
            wf.add(
                key,
                steps[key],
                after=[previous] if previous else None,
                retries=options.retries,
                retry_delay=options.retry_delay,
            )
            previous = key

    return wf


def summarize(plan: Plan, result: WorkflowResult, options: ExecuteOptions) -> list[PackageOutcome]:
    """One outcome per plan item, in plan order."""
    outcomes = []
    for item in plan.items:
        keys = _chain_keys(item, options)
        states = {k: result.states.get(k, ActivityState.PENDING) for k in keys}
        failed = next((k for k in keys if states[k] is ActivityState.FAILED), None)
        outcomes.append(
            PackageOutcome(
                scope=item.package.scope,
                tag=item.tag,
                status="released"
                if all(s is ActivityState.COMPLETED for s in states.values())
                else "failed",
                completed=[k for k in keys if states[k] is ActivityState.COMPLETED],
                skipped=[k for k in keys if states[k] is ActivityState.SKIPPED],
                failed_activity=failed,
                error=result.errors.get(failed) if failed else None,
            )
        )
    return outcomes


async def run_plan(
    plan: Plan,
    collaborators: Collaborators,
    store: CheckpointStore,
    run_id: str | None = None,
    options: ExecuteOptions | None = None,
) -> ExecutionResult:
    """Execute a plan inside a running event loop. See execute_plan()."""
    options = options or ExecuteOptions()
    run_id = run_id or default_run_id(plan)
    head = plan.head or collaborators.git.get_head_sha()

    if options.retry_failed:
        discarded = store.discard_failed(run_id)
        if discarded:
            logger.info("Retrying %d failed activities of run %s", discarded, run_id)

    wf = build_release_workflow(plan, collaborators, head, options)
    logger.info(
        "Run %s: %d packages, %d activities in %d layers",
        run_id,
        len(plan.items),
        len(wf),
        len(wf.layers()),
    )
    result = await wf.run(run_id, store, options.concurrency, options.observers)
    outcomes = summarize(plan, result, options)
    for outcome in outcomes:
        if outcome.status == "failed":
            logger.error(
                "%s failed at %s: %s", outcome.tag, outcome.failed_activity, outcome.error
            )
    return ExecutionResult(run_id=run_id, outcomes=outcomes, events=result.events)


def execute_plan(
    plan: Plan,
    collaborators: Collaborators,
    store: CheckpointStore,
    run_id: str | None = None,
    options: ExecuteOptions | None = None,
) -> ExecutionResult:
    """Execute a plan durably and report an outcome for every package.

    Failures never abort the run: each failed package is reported with the
    activity that failed, and a later call with the same run id resumes
    where this one stopped.

    Args:
        plan: The plan to release.
        collaborators: git/publisher/release services.
        store: Checkpoint store backing resumability.
        run_id: Run identity; defaults to default_run_id(plan).
        options: See ExecuteOptions.
    """
    return asyncio.run(run_plan(plan, collaborators, store, run_id, options))


def outcome_lines(outcomes: Iterable[PackageOutcome]) -> list[str]:
    lines = []
    for o in outcomes:
        mark = "✓" if o.status == "released" else "✗"
        detail = f" ({o.failed_activity}: {o.error})" if o.failed_activity else ""
        lines.append(f"  {mark} {o.tag}{detail}")
    return lines
