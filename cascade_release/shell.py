"""Shell utilities.

Thin wrappers around subprocess calls for git, uv and gh, plus the phase
header helper used by the CLI.
"""

from __future__ import annotations

import logging
import subprocess

import click

from .errors import CommandError

logger = logging.getLogger(__name__)


def run(*args: str, check: bool = True, cwd: str | None = None) -> str:
    """Run a command and return its stripped stdout.

    Args:
        *args: Command and arguments (e.g., "git", "tag", "--list").
        check: If True (default), raise CommandError on non-zero exit. Set
               to False for commands that may legitimately fail.
        cwd: Working directory for the command.

    Returns:
        Stripped stdout of the command.
    """
    logger.debug("$ %s", " ".join(args))
    result = subprocess.run(args, capture_output=True, text=True, cwd=cwd)
    if check and result.returncode != 0:
        raise CommandError(args, result.returncode, result.stderr)
    return result.stdout.strip()


def succeeds(*args: str, cwd: str | None = None) -> bool:
    """Run a command and report whether it exited with status 0."""
    logger.debug("$ %s", " ".join(args))
    result = subprocess.run(args, capture_output=True, text=True, cwd=cwd)
    return result.returncode == 0


def git(*args: str, check: bool = True, cwd: str | None = None) -> str:
    """Run a git command and return stdout."""
    return run("git", *args, check=check, cwd=cwd)


def gh(*args: str, check: bool = True, cwd: str | None = None) -> str:
    """Run a GitHub CLI command and return stdout."""
    return run("gh", *args, check=check, cwd=cwd)


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate major phases of a CLI command in terminal output.
    """
    click.echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")
