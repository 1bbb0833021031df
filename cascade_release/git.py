"""Git access for analysis, history and the release workflow.

GitRepo shells out to the git CLI through shell.git(). All methods are
synchronous; the workflow engine runs them in worker threads.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from .models import Commit
from .shell import git, succeeds

logger = logging.getLogger(__name__)

# Unit/record separators keep multi-line commit bodies intact
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = "%H%x1f%an%x1f%aI%x1f%B%x1e"


def parse_log(output: str) -> list[Commit]:
    """Parse `git log --format=%H%x1f%an%x1f%aI%x1f%B%x1e` output."""
    commits: list[Commit] = []
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        parts = record.split(_FIELD_SEP, 3)
        if len(parts) != 4:
            logger.debug("Skipping malformed log record: %r", record[:80])
            continue
        sha, author, date, message = parts
        commits.append(
            Commit(
                hash=sha.strip(),
                author=author,
                date=datetime.fromisoformat(date) if date else None,
                message=message.strip(),
            )
        )
    return commits


class GitRepo:
    """A git working copy.

    Args:
        cwd: Repository directory; defaults to the process working directory.
    """

    def __init__(self, cwd: str | Path | None = None) -> None:
        self.cwd = str(cwd) if cwd is not None else None

    def _git(self, *args: str, check: bool = True) -> str:
        return git(*args, check=check, cwd=self.cwd)

    # ── Read side ───────────────────────────────────────────────────────────

    def get_commits_since(self, ref: str | None = None) -> list[Commit]:
        """Commits reachable from HEAD but not from ref, newest first."""
        revision = f"{ref}..HEAD" if ref else "HEAD"
        if not ref and not succeeds("git", "rev-parse", "--verify", "HEAD", cwd=self.cwd):
            return []
        return parse_log(self._git("log", f"--format={_LOG_FORMAT}", revision))

    def get_tags(self) -> list[str]:
        output = self._git("tag", "--list")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def get_tag_sha(self, tag: str) -> str:
        """SHA of the commit a tag points at (annotated tags are peeled)."""
        return self._git("rev-list", "-n", "1", f"refs/tags/{tag}")

    def commit_exists(self, sha: str) -> bool:
        return succeeds("git", "cat-file", "-e", f"{sha}^{{commit}}", cwd=self.cwd)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return succeeds(
            "git", "merge-base", "--is-ancestor", ancestor, descendant, cwd=self.cwd
        )

    def get_head_sha(self) -> str:
        return self._git("rev-parse", "HEAD")

    # ── Write side ──────────────────────────────────────────────────────────

    def create_tag_at(self, tag: str, sha: str, message: str | None = None) -> None:
        """Create an annotated tag (lightweight when message is None)."""
        if message:
            self._git("tag", "-a", tag, sha, "-m", message)
        else:
            self._git("tag", tag, sha)

    def delete_tag(self, tag: str) -> None:
        self._git("tag", "-d", tag)

    def push_tag(self, tag: str, remote: str = "origin", force: bool = False) -> None:
        args = ["push", remote, f"refs/tags/{tag}"]
        if force:
            args.insert(1, "--force")
        self._git(*args)

    def delete_remote_tag(self, tag: str, remote: str = "origin") -> None:
        self._git("push", remote, "--delete", f"refs/tags/{tag}")
