"""CLI entry point for cascade-release."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from .analyzer import analyze
from .config import ReleaseConfig, load_config
from .errors import ReleaseError
from .executor import Collaborators, ExecuteOptions, default_run_id, execute_plan, outcome_lines
from .git import GitRepo
from .github import GhReleases
from .history import audit, set_release_tag
from .plan import Lifecycle, load_plan, save_plan
from .planner import plan_release
from .publish import UvPublisher
from .shell import step
from .workflow import MemoryCheckpointStore, SqliteCheckpointStore
from .workspace import scan_packages

LIFECYCLES = ["official", "stable", "candidate", "preview", "ephemeral"]


@contextmanager
def _release_errors() -> Iterator[None]:
    try:
        yield
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc


def _config(ctx: click.Context) -> ReleaseConfig:
    return ctx.obj["config"]


@click.group()
@click.version_option(package_name="cascade-release")
@click.option("-v", "--verbose", count=True, help="Show progress (-v) or debug (-vv) logs.")
@click.pass_context
def cli(ctx: click.Context, verbose: int) -> None:
    """Plan and execute releases of a multi-package uv workspace."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        with _release_errors():
            ctx.obj["config"] = load_config(Path.cwd())


@cli.command()
@click.option(
    "--lifecycle",
    type=click.Choice(LIFECYCLES, case_sensitive=False),
    default="official",
    show_default=True,
    help="Kind of release to plan.",
)
@click.option(
    "--since", default=None, help="Start of the history window (default: latest release tag)."
)
@click.option("--package", "packages", multiple=True, help="Only release these packages.")
@click.option("--exclude", multiple=True, help="Never release these packages.")
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request number (ephemeral).")
@click.pass_context
def plan(
    ctx: click.Context,
    lifecycle: str,
    since: str | None,
    packages: tuple[str, ...],
    exclude: tuple[str, ...],
    pr_number: int | None,
) -> None:
    """Analyze commits and write the release plan."""
    config = _config(ctx)
    root = Path.cwd()
    repo = GitRepo(root)
    config.plan_file.unlink(missing_ok=True)

    with _release_errors():
        step("Discovering workspace packages")
        workspace = scan_packages(root)
        for pkg in workspace:
            deps = f" → [{', '.join(pkg.dependencies)}]" if pkg.dependencies else ""
            click.echo(f"  {pkg.scope} ({pkg.path}){deps}")

        step("Analyzing commits")
        analysis = analyze(
            workspace,
            repo.get_tags(),
            repo,
            since=since,
            filter=packages or None,
            exclude=exclude or None,
        )

        step(f"Planning {Lifecycle(lifecycle).value} release")
        result = plan_release(
            lifecycle,
            analysis,
            head=repo.get_head_sha(),
            workspace=workspace,
            pr_number=pr_number,
        )

    if result.is_empty:
        click.echo("  Nothing to release.")
        return

    for item in result.releases:
        click.echo(f"  {item.tag} ({item.bump_type.value}, {len(item.commits)} commits)")
    for item in result.cascades:
        click.echo(f"  {item.tag} (cascade from {', '.join(item.triggered_by)})")

    save_plan(result, config.plan_file)
    click.echo(f"\n✓ Wrote plan to {config.plan_file}")


@cli.command()
@click.option("--run-id", default=None, help="Run to resume (default: derived from the plan).")
@click.option("--dry-run", is_flag=True, help="Show what would happen without doing it.")
@click.option(
    "--retry-failed", is_flag=True, help="Retry activities that failed in an earlier run."
)
@click.option("--concurrency", type=int, default=None, help="Maximum activities in flight.")
@click.option("--retries", type=int, default=None, help="Extra attempts per activity.")
@click.option("--skip-publish", is_flag=True, help="Only tag and release.")
@click.option("--no-github-releases", is_flag=True, help="Do not create GitHub releases.")
@click.pass_context
def apply(
    ctx: click.Context,
    run_id: str | None,
    dry_run: bool,
    retry_failed: bool,
    concurrency: int | None,
    retries: int | None,
    skip_publish: bool,
    no_github_releases: bool,
) -> None:
    """Execute the saved release plan (resumable)."""
    config = _config(ctx)
    root = Path.cwd()

    with _release_errors():
        saved = load_plan(config.plan_file)
        if saved is None:
            raise click.ClickException(
                f"No plan at {config.plan_file}. Run `cascade-release plan` first."
            )
        if saved.is_empty:
            click.echo("Plan is empty, nothing to do.")
            return

        options = ExecuteOptions(
            remote=config.remote,
            retries=config.retries if retries is None else retries,
            concurrency=concurrency or config.concurrency,
            dry_run=dry_run,
            skip_publish=skip_publish or config.skip_publish,
            github_releases=config.github_releases and not no_github_releases,
            retry_failed=retry_failed,
        )
        collaborators = Collaborators(
            git=GitRepo(root),
            publisher=UvPublisher(root, publish_url=config.publish_url),
            releases=GhReleases(),
        )
        store = MemoryCheckpointStore() if dry_run else SqliteCheckpointStore(config.checkpoint_db)

        step(f"Releasing {len(saved.items)} packages{' (dry run)' if dry_run else ''}")
        result = execute_plan(saved, collaborators, store, run_id=run_id, options=options)
        for line in outcome_lines(result.outcomes):
            click.echo(line)
        click.echo(f"\nRun id: {result.run_id}")
        result.raise_for_failures()


@cli.command()
@click.option("--run-id", default=None, help="Run to show (default: the saved plan's run).")
@click.pass_context
def status(ctx: click.Context, run_id: str | None) -> None:
    """Show recorded checkpoints of a release run."""
    config = _config(ctx)
    with _release_errors():
        if run_id is None:
            saved = load_plan(config.plan_file)
            if saved is None:
                raise click.ClickException("No plan found; pass --run-id.")
            run_id = default_run_id(saved)
        if not config.checkpoint_db.exists():
            click.echo(f"No checkpoints recorded for {run_id}.")
            return
        checkpoints = SqliteCheckpointStore(config.checkpoint_db).checkpoints(run_id)

    if not checkpoints:
        click.echo(f"No checkpoints recorded for {run_id}.")
        return
    click.echo(f"Run {run_id}:")
    for key, checkpoint in checkpoints.items():
        detail = f" - {checkpoint.error}" if checkpoint.error else ""
        state = checkpoint.state.value
        click.echo(f"  {state:<9} {key} (attempts: {checkpoint.attempts}){detail}")


@cli.group()
def history() -> None:
    """Inspect and repair release tags."""


@history.command("set")
@click.argument("sha")
@click.argument("version")
@click.option("--package", "scope", required=True, help="Package scope (directory name).")
@click.option("--move", is_flag=True, help="Relocate the tag if it exists at another commit.")
@click.option("--no-push", is_flag=True, help="Create the tag locally only.")
@click.pass_context
def history_set(
    ctx: click.Context, sha: str, version: str, scope: str, move: bool, no_push: bool
) -> None:
    """Tag SHA as VERSION of a package, enforcing monotonic versions."""
    config = _config(ctx)
    with _release_errors():
        result = set_release_tag(
            GitRepo(Path.cwd()),
            sha,
            scope,
            version,
            push=not no_push,
            move=move,
            remote=config.remote,
        )
    pushed = " and pushed" if result.pushed else ""
    click.echo(f"✓ {result.tag} {result.action}{pushed} at {result.sha[:7]}")


@history.command("audit")
@click.option("--package", "scope", default=None, help="Audit only this package.")
def history_audit(scope: str | None) -> None:
    """Check that versions increase with commit order."""
    with _release_errors():
        results = audit(GitRepo(Path.cwd()), scope)

    failed = False
    for result in results:
        if result.valid:
            click.echo(f"✓ {result.scope}: {len(result.releases)} releases in order")
            continue
        failed = True
        click.echo(f"✗ {result.scope}:")
        for violation in result.violations:
            click.echo(f"    {violation.message}")
    if failed:
        raise click.ClickException("Release history has monotonic violations.")
