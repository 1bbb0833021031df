"""Workspace scan: find the packages of a uv workspace and their internal deps."""

from __future__ import annotations

import glob
import logging
from collections import Counter
from pathlib import Path

from .deps import requirement_name
from .errors import WorkspaceError
from .models import Package
from .toml import distribution_name, read_manifest, requirement_strings, workspace_members

logger = logging.getLogger(__name__)


def _member_directories(root: Path, patterns: list[str]) -> list[Path]:
    found: list[Path] = []
    for pattern in patterns:
        for match in sorted(glob.glob(str(root / pattern))):
            directory = Path(match)
            if directory not in found and (directory / "pyproject.toml").is_file():
                found.append(directory)
    return found


def scan_packages(root: Path | None = None) -> list[Package]:
    """List the releasable packages of the workspace at `root`.

    Member directories come from the [tool.uv.workspace].members globs of
    the root manifest; a directory counts only if it holds a pyproject.toml.
    A package's scope is its directory name. Its dependencies are the
    workspace packages it requires in any requirement list, by canonical
    name and without itself.

    Returns:
        Packages sorted by scope.

    Raises:
        WorkspaceError: No members, no matching directories, or two
            packages sharing a scope or name.
    """
    root = root or Path.cwd()
    patterns = workspace_members(read_manifest(root / "pyproject.toml"))
    directories = _member_directories(root, patterns)
    if not directories:
        raise WorkspaceError("No packages found matching workspace members")

    scopes = Counter(d.name for d in directories)
    clashing = sorted(s for s, n in scopes.items() if n > 1)
    if clashing:
        raise WorkspaceError(f"Duplicate package directory name: {', '.join(clashing)}")

    manifests = {d.name: (d, read_manifest(d / "pyproject.toml")) for d in directories}
    names = {scope: distribution_name(doc, scope) for scope, (_, doc) in manifests.items()}
    clashing = sorted(n for n, count in Counter(names.values()).items() if count > 1)
    if clashing:
        raise WorkspaceError(f"Duplicate package name(s): {', '.join(clashing)}")

    known = set(names.values())
    packages: list[Package] = []
    for scope in sorted(manifests):
        directory, doc = manifests[scope]
        required = [requirement_name(r) for r in requirement_strings(doc)]
        internal = [n for n in dict.fromkeys(required) if n in known and n != names[scope]]
        packages.append(
            Package(
                scope=scope,
                name=names[scope],
                path=directory.relative_to(root).as_posix(),
                dependencies=internal,
            )
        )
        logger.debug("%s (%s) → %s", scope, names[scope], internal or "no internal deps")

    return packages
