"""
Keeps a local checkout of the watched Git repository up to date.

The supervisor only needs two things from version control: bring the checkout
up to date, and tell which commit it is on. The commit id is treated as an
opaque token that is only ever compared for equality.
"""

import logging
from pathlib import Path

from cd_system import helpers
from cd_system.errors import CommandFailed, VcsFailure

logger = logging.getLogger(__name__)


class VersionControl:
    """Interface of the version control collaborator"""

    def fetch_or_update(self) -> None:
        raise NotImplementedError

    def current_revision(self) -> str:
        raise NotImplementedError


class GitRepository(VersionControl):
    """Git checkout of a remote repository, driven through the git CLI"""

    def __init__(self, remote_url: str, local_dir: Path, git: str = "git"):
        self.remote_url = remote_url
        self.local_dir = Path(local_dir)
        self.git = git

    def fetch_or_update(self) -> None:
        """Pull if the checkout exists, clone it otherwise"""
        try:
            if (self.local_dir / ".git").exists():
                helpers.run_command([self.git, "pull", "-q"], cwd=self.local_dir)
            else:
                logger.info(f"Cloning {self.remote_url} into {self.local_dir}")
                self.local_dir.parent.mkdir(parents=True, exist_ok=True)
                helpers.run_command([self.git, "clone", self.remote_url, str(self.local_dir)])
        except CommandFailed as e:
            raise VcsFailure(f"Repository update failed: {e}") from e

    def current_revision(self) -> str:
        try:
            output = helpers.run_command([self.git, "rev-parse", "HEAD"], cwd=self.local_dir)
        except CommandFailed as e:
            raise VcsFailure(f"Could not read current commit: {e}") from e
        revision = output.strip()
        if not revision:
            raise VcsFailure(f"git rev-parse returned nothing in {self.local_dir}")
        return revision
