"""Package publishing with uv."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .deps import stamp_manifest
from .models import Package
from .shell import run
from .versions import to_pep440

logger = logging.getLogger(__name__)


class UvPublisher:
    """Builds a package with `uv build` and uploads it with `uv publish`.

    The package's pyproject.toml is stamped with the release version and
    exact pins on the internal dependencies released alongside it, then
    restored once the upload finished (or failed). Versions are written in
    their PEP 440 spelling (1.3.0-next.2 is built as 1.3.0rc2).

    Args:
        root: Workspace root the package paths are relative to.
        dist_dir: Where built distributions are written, one subdirectory
                  per package.
        publish_url: Index upload URL; uv's default index when None.
    """

    def __init__(
        self,
        root: Path | None = None,
        dist_dir: str = "dist",
        publish_url: str | None = None,
    ) -> None:
        self.root = root or Path.cwd()
        self.dist_dir = dist_dir
        self.publish_url = publish_url

    def publish(self, package: Package, version: str, internal_versions: dict[str, str]) -> None:
        pkg_dir = self.root / package.path
        pyproject = pkg_dir / "pyproject.toml"
        out_dir = self.root / self.dist_dir / package.scope

        pins = {name: to_pep440(v) for name, v in internal_versions.items()}
        original = stamp_manifest(pyproject, to_pep440(version), pins)
        try:
            shutil.rmtree(out_dir, ignore_errors=True)
            logger.info("Building %s %s", package.name, version)
            run("uv", "build", str(pkg_dir), "--out-dir", str(out_dir))

            args = ["uv", "publish"]
            if self.publish_url:
                args += ["--publish-url", self.publish_url]
            args.append(str(out_dir / "*"))
            logger.info("Publishing %s %s", package.name, version)
            run(*args)
        finally:
            pyproject.write_text(original)
