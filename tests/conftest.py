"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import tomlkit
from fakes import FakeGit, write_package

from cascade_release.models import Commit, Package


@pytest.fixture
def fake_git() -> FakeGit:
    """An empty in-memory repository."""
    return FakeGit()


@pytest.fixture
def make_commit() -> Callable[..., Commit]:
    """Factory for standalone commits with a readable fake hash."""
    counter = iter(range(1, 10_000))

    def make(message: str, sha: str | None = None) -> Commit:
        return Commit(hash=sha or f"{next(counter):07d}abcdef", message=message)

    return make


@pytest.fixture
def chain_packages() -> list[Package]:
    """core ← api ← cli, plus an independent docs package."""
    return [
        Package(scope="core", name="acme-core", path="packages/core"),
        Package(scope="api", name="acme-api", path="packages/api", dependencies=["acme-core"]),
        Package(scope="cli", name="acme-cli", path="packages/cli", dependencies=["acme-api"]),
        Package(scope="docs", name="acme-docs", path="packages/docs"),
    ]


ROOT_MANIFEST = """\
[project]
name = "Acme_Root"
dependencies = ["click>=8.0", "pydantic>=2.0"]

[project.optional-dependencies]
yaml = ["pyyaml>=6"]
http = ["httpx>=0.27"]

[dependency-groups]
lint = ["ruff"]

[tool.uv.workspace]
members = ["packages/*", "libs/*"]

[tool.cascade-release]
remote = "upstream"
retries = 5
"""


@pytest.fixture
def tmp_pyproject(tmp_path: Path) -> Path:
    """Path of a not-yet-written pyproject.toml."""
    return tmp_path / "pyproject.toml"


@pytest.fixture
def root_manifest() -> tomlkit.TOMLDocument:
    return tomlkit.parse(ROOT_MANIFEST)


@pytest.fixture
def tmp_workspace(tmp_path: Path) -> Path:
    """A uv workspace: core ← api (plus an external dep on requests)."""
    (tmp_path / "pyproject.toml").write_text(
        '[tool.uv.workspace]\nmembers = ["packages/*"]\n'
    )
    write_package(tmp_path, "core", "acme_core")
    write_package(tmp_path, "api", "acme-api", ["acme-core>=0.1", "requests>=2.0"])
    return tmp_path
