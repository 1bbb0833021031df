"""pyproject.toml access.

Documents are kept as tomlkit objects so a package manifest stamped for a
release build is written back with its comments and layout untouched.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import tomlkit
from packaging.utils import canonicalize_name
from tomlkit.exceptions import ParseError

from .errors import WorkspaceError

Manifest = tomlkit.TOMLDocument


def read_manifest(path: Path) -> Manifest:
    """Parse the pyproject.toml at `path`.

    Raises:
        WorkspaceError: The file is missing or malformed.
    """
    try:
        text = path.read_text()
    except FileNotFoundError as exc:
        raise WorkspaceError(f"No pyproject.toml at {path}") from exc
    try:
        return tomlkit.parse(text)
    except ParseError as exc:
        raise WorkspaceError(f"Invalid TOML in {path}: {exc}") from exc


def write_manifest(path: Path, manifest: Manifest) -> None:
    path.write_text(tomlkit.dumps(manifest))


def _table(manifest: Manifest, *keys: str) -> Any:
    node: Any = manifest
    for key in keys:
        node = node.get(key, {}) if hasattr(node, "get") else {}
    return node


def distribution_name(manifest: Manifest, default: str) -> str:
    """PEP 503 form of [project].name (`default` when unset).

    Dependency strings are canonicalized the same way, so the two compare
    equal regardless of case or separator.
    """
    return canonicalize_name(_table(manifest, "project").get("name", default))


def requirement_lists(manifest: Manifest) -> Iterator[list[Any]]:
    """The requirement arrays of a manifest, as live (mutable) tomlkit arrays."""
    project = _table(manifest, "project")
    yield project.get("dependencies", [])
    yield from project.get("optional-dependencies", {}).values()
    yield from _table(manifest, "dependency-groups").values()


def requirement_strings(manifest: Manifest) -> list[str]:
    """Every PEP 508 requirement the manifest declares.

    Covers [project].dependencies, each optional-dependencies extra and
    each PEP 735 dependency group. `{include-group = ...}` entries are not
    requirements and are left out.
    """
    return [
        str(req)
        for reqs in requirement_lists(manifest)
        for req in reqs
        if isinstance(req, str)
    ]


def workspace_members(manifest: Manifest) -> list[str]:
    """Glob patterns listed in [tool.uv.workspace].members.

    Raises:
        WorkspaceError: The root manifest declares no members.
    """
    members = _table(manifest, "tool", "uv", "workspace").get("members")
    if not members:
        raise WorkspaceError("No [tool.uv.workspace] members defined in root pyproject.toml")
    return [str(m) for m in members]


def tool_settings(manifest: Manifest, tool: str) -> dict[str, Any]:
    """[tool.<tool>] as plain Python values; empty when absent."""
    table = _table(manifest, "tool", tool)
    return table.unwrap() if hasattr(table, "unwrap") else dict(table)
