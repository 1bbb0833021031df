"""Release configuration from [tool.cascade-release] in the root pyproject.toml.

Example:
    [tool.cascade-release]
    remote = "upstream"
    retries = 3
    concurrency = 4
    github-releases = false
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import WorkspaceError
from .plan import DEFAULT_PLAN_PATH
from .toml import read_manifest, tool_settings
from .workflow import DEFAULT_CHECKPOINT_DB

TOOL_NAME = "cascade-release"


class ReleaseConfig(BaseModel):
    """Settings shared by the plan and apply commands.

    Keys may be written with dashes or underscores.
    """

    model_config = ConfigDict(extra="forbid")

    remote: str = "origin"
    plan_file: Path = DEFAULT_PLAN_PATH
    checkpoint_db: Path = DEFAULT_CHECKPOINT_DB
    retries: int = Field(default=2, ge=0)
    concurrency: int | None = Field(default=None, ge=1)
    publish_url: str | None = None
    skip_publish: bool = False
    github_releases: bool = True


def load_config(root: Path | None = None) -> ReleaseConfig:
    """Read the release configuration; defaults when the table is absent.

    Relative paths are resolved against the workspace root.

    Raises:
        WorkspaceError: The table contains unknown keys or invalid values.
    """
    root = root or Path.cwd()
    pyproject = root / "pyproject.toml"
    table = tool_settings(read_manifest(pyproject), TOOL_NAME) if pyproject.exists() else {}
    normalized = {key.replace("-", "_"): value for key, value in table.items()}
    try:
        config = ReleaseConfig.model_validate(normalized)
    except ValidationError as exc:
        raise WorkspaceError(f"Invalid [tool.{TOOL_NAME}] in {pyproject}:\n{exc}") from exc
    return config.model_copy(
        update={
            "plan_file": root / config.plan_file,
            "checkpoint_db": root / config.checkpoint_db,
        }
    )
