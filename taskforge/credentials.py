"""
API credential resolution.

The active credential is resolved through a fallback chain:
task/project-specific key -> the requesting user's default key ->
process-wide fallback environment variable. No credential at all is a
configuration error.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping, Optional

from taskforge.errors import ConfigurationError

if TYPE_CHECKING:
    from taskforge.config import CredentialsConfig
    from taskforge.logger import TaskLogger
    from taskforge.models import Task
    from taskforge.task_store import TaskStore


@dataclass(frozen=True)
class ApiCredential:
    """A resolved API key and where it came from."""
    api_key: str
    source: str                      # task, user, environment

    def masked(self) -> str:
        if len(self.api_key) <= 8:
            return "****"
        return f"{self.api_key[:4]}...{self.api_key[-4:]}"

    def __repr__(self) -> str:
        return f"ApiCredential(source={self.source!r}, api_key={self.masked()!r})"


class CredentialResolver:
    """Resolves the credential for a task through the fallback chain."""

    def __init__(
        self,
        store: TaskStore,
        config: CredentialsConfig,
        environ: Optional[Mapping[str, str]] = None,
        logger: Optional[TaskLogger] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._environ = environ if environ is not None else os.environ
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def resolve(self, task: Task) -> ApiCredential:
        """
        Resolve the active credential for a task.

        Raises:
            ConfigurationError: If no source yields a key.
        """
        if task.credential:
            credential = ApiCredential(task.credential, "task")
        elif user_key := self._store.get_user_credential(task.owner_id):
            credential = ApiCredential(user_key, "user")
        elif env_key := self._environ.get(self._config.fallback_env_var):
            credential = ApiCredential(env_key, "environment")
        else:
            raise ConfigurationError(
                f"No API credential for task {task.id}: no task key, no default key "
                f"for user {task.owner_id}, and {self._config.fallback_env_var} is not set"
            )

        self._log("credential_resolved", {"source": credential.source})
        return credential
