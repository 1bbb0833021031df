"""GitHub releases through the gh CLI."""

from __future__ import annotations

import logging

from .shell import gh

logger = logging.getLogger(__name__)


class GhReleases:
    """Creates GitHub releases for pushed tags."""

    def __init__(self, repo: str | None = None) -> None:
        self.repo = repo

    def create_release(self, tag: str, title: str, notes: str, prerelease: bool = False) -> None:
        args = ["release", "create", tag, "--title", title, "--notes", notes or title]
        if prerelease:
            args.append("--prerelease")
        if self.repo:
            args += ["--repo", self.repo]
        logger.info("Creating GitHub release %s", tag)
        gh(*args)
