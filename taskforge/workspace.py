"""Workspace provisioning: clone the task's selected repositories."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from taskforge.vcs import GitClient

if TYPE_CHECKING:
    from taskforge.config import ForgeConfig
    from taskforge.logger import TaskLogger
    from taskforge.models import Repository


class GitWorkspaceProvisioner:
    """
    Provisions <workspace_root>/<task_id>/<repo name> clones.

    Only the repositories passed in are cloned. An existing clone is
    fetched instead of recloned, so resuming a task keeps its branches.
    """

    def __init__(
        self,
        config: ForgeConfig,
        git: Optional[GitClient] = None,
        logger: Optional[TaskLogger] = None,
    ) -> None:
        self.config = config
        self.git = git or GitClient(config.git, logger)
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def workspace_for(self, task_id: str) -> Path:
        return self.config.workspaces_path / task_id

    def provision(self, task_id: str, repositories: list[Repository]) -> Path:
        root = self.workspace_for(task_id)
        root.mkdir(parents=True, exist_ok=True)

        for repo in repositories:
            destination = root / repo.name
            if (destination / ".git").exists():
                self.git.fetch(destination, repo.default_branch)
                self._log("workspace_repository_reused", {"repository": repo.name})
            else:
                self.git.clone(repo.clone_url, destination)
                self._log("workspace_repository_cloned", {"repository": repo.name})

        return root

    def cleanup(self, task_id: str) -> bool:
        """Remove a task's workspace. Returns False if it did not exist."""
        root = self.workspace_for(task_id)
        if not root.exists():
            return False
        shutil.rmtree(root)
        self._log("workspace_removed", {"task_id": task_id})
        return True
