"""Requirement strings and release stamping.

A release build must carry its planned version, and every workspace
package it depends on must be pinned to the version released in the same
run, otherwise an installer could pair it with an older sibling.
"""

from __future__ import annotations

from pathlib import Path

from packaging.requirements import Requirement
from packaging.utils import canonicalize_name

from .toml import read_manifest, requirement_lists, write_manifest


def requirement_name(requirement: str) -> str:
    """Canonical distribution name of a PEP 508 requirement.

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(requirement).name)


def exact_pin(requirement: str, version: str) -> str:
    """Rewrite a requirement to `== version`, keeping extras and markers.

    Examples:
        exact_pin("requests>=2.0", "2.31.0") → "requests==2.31.0"
        exact_pin("pkg[b,a]~=1.0; python_version>'3.9'", "1.5.0")
            → "pkg[a,b]==1.5.0; python_version > \"3.9\""
    """
    req = Requirement(requirement)
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}=={version}{marker}"


def stamp_manifest(path: Path, version: str, pins: dict[str, str]) -> str:
    """Write a release version and sibling pins into a pyproject.toml.

    [project].version is set (and dropped from [project].dynamic, where a
    build backend would otherwise compute its own). Any requirement whose
    canonical name is a key of `pins` becomes an exact pin, wherever it is
    declared.

    Returns:
        The file's previous text, for restoring it after the build.
    """
    previous = path.read_text()
    manifest = read_manifest(path)
    project = manifest["project"]
    project["version"] = version
    dynamic = project.get("dynamic")
    if dynamic is not None and "version" in dynamic:
        dynamic.remove("version")

    for requirements in requirement_lists(manifest) if pins else ():
        for i, requirement in enumerate(requirements):
            if not isinstance(requirement, str):
                continue
            name = requirement_name(requirement)
            if name in pins:
                requirements[i] = exact_pin(requirement, pins[name])

    write_manifest(path, manifest)
    return previous
