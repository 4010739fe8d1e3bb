"""
site_publisher.build — Run the site's own build command.

The build is opaque: any command that leaves a file tree in the build output
directory. Declared environment variables are exported to the build as
placeholder tokens ("{{ NAME }}"), which the publish step later replaces
with real values inside the staged namespace.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping
from pathlib import Path

from aws_lambda_powertools import Logger

from site_publisher.exceptions import BuildFailed, BuildOutputMissing
from site_publisher.substitution import placeholder_environment

logger = Logger(service="site-publisher")


def run_build(
    command: str,
    *,
    cwd: str | os.PathLike[str],
    environment: Mapping[str, str] | None = None,
) -> None:
    """Run command in cwd. Raises BuildFailed on a non-zero exit status."""
    site_path = Path(cwd)
    if not site_path.is_dir():
        raise BuildOutputMissing(str(site_path))

    env = {**os.environ, **placeholder_environment(environment or {})}
    logger.info("Building static site", path=str(site_path), command=command)
    result = subprocess.run(command, shell=True, cwd=site_path, env=env, check=False)
    if result.returncode != 0:
        raise BuildFailed(command, result.returncode, path=str(site_path))
