"""
Build runner: compiles the checked out source tree and applies its schema
migrations by shelling out to the configured tools.
    - build: a non-zero exit status of the build tool fails the deployment cycle.
    - run_migrations: runs once after every successful build.
"""

import logging
from pathlib import Path
from typing import List, Optional

from cd_system import helpers
from cd_system.errors import BuildFailure, CommandFailed, MigrationFailure

logger = logging.getLogger(__name__)


class BuildSystem:
    """Interface of the build tool collaborator"""

    def build(self, source_dir: Path) -> None:
        raise NotImplementedError

    def run_migrations(self, source_dir: Path) -> None:
        pass


class CommandBuildSystem(BuildSystem):
    """Builds and migrates with external commands"""

    def __init__(self, build_command: List[str], migration_command: Optional[List[str]] = None):
        self.build_command = list(build_command)
        self.migration_command = list(migration_command or [])

    def build(self, source_dir: Path) -> None:
        """Run the build tool and wait for it to finish"""
        logger.info(f"Building {source_dir} with {' '.join(self.build_command)}")
        try:
            output = helpers.run_command(self.build_command, cwd=source_dir)
        except CommandFailed as e:
            raise BuildFailure(f"Build failed: {e}") from e
        logger.debug(f"Build output: {output}")

    def run_migrations(self, source_dir: Path) -> None:
        if not self.migration_command:
            return
        logger.info(f"Running migrations with {' '.join(self.migration_command)}")
        try:
            helpers.run_command(self.migration_command, cwd=source_dir)
        except CommandFailed as e:
            raise MigrationFailure(f"Migrations failed: {e}") from e
        logger.info("Migrations ran successfully")
