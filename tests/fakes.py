"""In-memory stand-ins for the git, publish and release collaborators."""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path

from cascade_release.errors import CommandError
from cascade_release.models import Commit, Package


class FakeGit:
    """A commit DAG plus tags, with the GitRepo method surface.

    Commits are created with commit(); by default each new commit's parent
    is the current head, so successive calls build a straight line.
    """

    def __init__(self) -> None:
        self.parents: dict[str, list[str]] = {}
        self.commits: dict[str, Commit] = {}
        self.tags: dict[str, str] = {}
        self.head: str | None = None
        self.pushed: list[tuple[str, str, bool]] = []
        self.deleted_remote: list[str] = []
        self.fail_remote_delete = False
        self.ancestor_queries = 0

    def commit(self, message: str, parents: list[str] | None = None) -> str:
        sha = hashlib.sha1(f"{len(self.commits)}:{message}".encode()).hexdigest()
        self.parents[sha] = parents if parents is not None else ([self.head] if self.head else [])
        self.commits[sha] = Commit(hash=sha, author="dev", message=message)
        self.head = sha
        return sha

    def tag(self, name: str, sha: str | None = None) -> None:
        self.tags[name] = sha or self.head

    def _resolve(self, ref: str) -> str:
        if ref in self.tags:
            return self.tags[ref]
        for sha in self.commits:
            if sha.startswith(ref):
                return sha
        raise CommandError(("git", "rev-parse", ref), 128, f"unknown revision {ref}")

    def _ancestors(self, sha: str) -> set[str]:
        seen: set[str] = set()
        stack = [sha]
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.parents.get(node, []))
        return seen

    # ── Read side ───────────────────────────────────────────────────────────

    def get_commits_since(self, ref: str | None = None) -> list[Commit]:
        if self.head is None:
            return []
        reachable = self._ancestors(self.head)
        if ref:
            reachable -= self._ancestors(self._resolve(ref))
        return [c for sha, c in reversed(self.commits.items()) if sha in reachable]

    def get_tags(self) -> list[str]:
        return list(self.tags)

    def get_tag_sha(self, tag: str) -> str:
        if tag not in self.tags:
            raise CommandError(("git", "rev-list", tag), 128, "unknown tag")
        return self.tags[tag]

    def commit_exists(self, sha: str) -> bool:
        return any(h.startswith(sha) for h in self.commits)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        self.ancestor_queries += 1
        return self._resolve(ancestor) in self._ancestors(self._resolve(descendant))

    def get_head_sha(self) -> str:
        assert self.head is not None
        return self.head

    # ── Write side ──────────────────────────────────────────────────────────

    def create_tag_at(self, tag: str, sha: str, message: str | None = None) -> None:
        if tag in self.tags:
            raise CommandError(("git", "tag", tag), 128, f"tag '{tag}' already exists")
        self.tags[tag] = self._resolve(sha)

    def delete_tag(self, tag: str) -> None:
        del self.tags[tag]

    def push_tag(self, tag: str, remote: str = "origin", force: bool = False) -> None:
        self.pushed.append((tag, remote, force))

    def delete_remote_tag(self, tag: str, remote: str = "origin") -> None:
        if self.fail_remote_delete:
            args = ("git", "push", remote, "--delete", tag)
            raise CommandError(args, 1, "remote ref does not exist")
        self.deleted_remote.append(tag)


class FakePublisher:
    """Records publish calls; scopes in `failing` raise on every attempt."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self._lock = threading.Lock()

    def publish(self, package: Package, version: str, internal_versions: dict[str, str]) -> None:
        with self._lock:
            self.calls.append((package.scope, version, dict(internal_versions)))
        if package.scope in self.failing:
            raise RuntimeError(f"upload of {package.name} rejected")


class FakeReleases:
    def __init__(self) -> None:
        self.created: list[tuple[str, str, bool]] = []

    def create_release(self, tag: str, title: str, notes: str, prerelease: bool = False) -> None:
        self.created.append((tag, notes, prerelease))


def write_package(root: Path, scope: str, name: str, deps: list[str] | None = None) -> Path:
    """Create packages/<scope>/pyproject.toml under a workspace root."""
    pkg_dir = root / "packages" / scope
    pkg_dir.mkdir(parents=True)
    dep_list = ", ".join(f'"{d}"' for d in deps or [])
    (pkg_dir / "pyproject.toml").write_text(
        f'[project]\nname = "{name}"\nversion = "0.0.0"\ndependencies = [{dep_list}]\n'
    )
    return pkg_dir
