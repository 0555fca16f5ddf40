"""
Task persistence for Taskforge.

This module handles:
- Saving and loading tasks to <state_dir>/tasks/<task_id>.json
- Atomic writes to prevent corruption
- Graceful handling of missing or corrupted task files
- Pause/cancel control flags in a separate <task_id>.control.json file,
  so a coordinator saving a task never clobbers a flag set concurrently
  by an operator
- Registered repositories, per-user API credentials and task credentials
  (both in owner-only files; a task document never holds its key)
"""

from __future__ import annotations

import json
import os
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from taskforge.models import ControlFlag, Repository, Task, model_to_json
from taskforge.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    list_files,
    read_file,
    safe_write,
)

if TYPE_CHECKING:
    from taskforge.config import ForgeConfig
    from taskforge.logger import TaskLogger


class TaskStoreError(Exception):
    """Raised when task store operations fail."""
    pass


class TaskStore:
    """
    Persistent storage for tasks, repositories and credentials.

    Every read goes to disk. Callers that need the latest pause/cancel
    state call read_control_flags() (or load_fresh()) right before acting.
    """

    def __init__(
        self,
        config: ForgeConfig,
        logger: Optional[TaskLogger] = None
    ) -> None:
        """
        Initialize the task store.

        Args:
            config: ForgeConfig with paths configured.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._logger = logger
        self._tasks_dir = config.tasks_path
        self._repos_dir = config.state_path / "repositories"
        self._credentials_path = config.state_path / "credentials.json"
        self._task_credentials_path = config.state_path / "task_credentials.json"
        self._lock = threading.RLock()

    def _task_path(self, task_id: str) -> Path:
        return self._tasks_dir / f"{task_id}.json"

    def _control_path(self, task_id: str) -> Path:
        return self._tasks_dir / f"{task_id}.control.json"

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # Task operations

    def load(self, task_id: str) -> Optional[Task]:
        """
        Load a task from disk.

        Args:
            task_id: The task identifier.

        Returns:
            Task if it exists and is valid, None otherwise.
        """
        task_path = self._task_path(task_id)

        if not file_exists(task_path):
            self._log("task_load_miss", {"task_id": task_id}, level="debug")
            return None

        try:
            data = json.loads(read_file(task_path))
            task = Task.from_dict(data)
        except json.JSONDecodeError as e:
            self._log("task_corrupted", {
                "task_id": task_id,
                "error": str(e),
                "path": str(task_path)
            }, level="error")
            return None
        except (KeyError, ValueError, TypeError) as e:
            self._log("task_invalid", {
                "task_id": task_id,
                "error": str(e),
                "path": str(task_path)
            }, level="error")
            return None
        except FileSystemError as e:
            self._log("task_read_error", {
                "task_id": task_id,
                "error": str(e)
            }, level="error")
            return None

        if task.credential is None:
            task.credential = self._read_secrets(self._task_credentials_path).get(task_id)
        paused, cancel = self.read_control_flags(task_id)
        task.orchestration.paused = paused
        task.orchestration.cancel_requested = cancel
        return task

    def load_fresh(self, task_id: str) -> Task:
        """
        Load a task from disk, failing if it cannot be read.

        Raises:
            TaskStoreError: If the task does not exist or is unreadable.
        """
        task = self.load(task_id)
        if task is None:
            raise TaskStoreError(f"Task '{task_id}' not found")
        return task

    def save(self, task: Task) -> None:
        """
        Save a task to disk atomically.

        Control flags are not written here; see set_paused/request_cancel.
        A task credential goes to the owner-only task credential file, never
        into the task document.

        Raises:
            TaskStoreError: If save fails.
        """
        with self._lock:
            ensure_dir(self._tasks_dir)
            task.touch()
            data = task.to_dict()
            credential = data.pop("credential", None)
            try:
                if credential and self._read_secrets(self._task_credentials_path).get(task.id) != credential:
                    self._store_secret(self._task_credentials_path, task.id, credential)
                safe_write(self._task_path(task.id), model_to_json(data, indent=2))
            except (FileSystemError, OSError) as e:
                self._log("task_save_error", {
                    "task_id": task.id,
                    "error": str(e)
                }, level="error")
                raise TaskStoreError(f"Failed to save task {task.id}: {e}")
        self._log("task_saved", {
            "task_id": task.id,
            "status": task.status.value,
            "phase": task.orchestration.current_phase,
        }, level="debug")

    def create(
        self,
        title: str,
        owner_id: str,
        repository_ids: list[str],
        description: str = "",
        credential: Optional[str] = None,
        auto_approval_phases: Optional[list[str]] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """
        Create and persist a new pending task.

        Raises:
            TaskStoreError: If a task with the same id already exists.
        """
        task_id = task_id or f"task-{uuid.uuid4().hex[:12]}"
        if file_exists(self._task_path(task_id)):
            raise TaskStoreError(f"Task '{task_id}' already exists")

        task = Task(
            id=task_id,
            title=title,
            owner_id=owner_id,
            description=description,
            repository_ids=list(repository_ids),
            credential=credential,
        )
        if auto_approval_phases:
            task.orchestration.auto_approval_enabled = True
            task.orchestration.auto_approval_phases = list(auto_approval_phases)
        self.save(task)
        self._log("task_created", {"task_id": task_id, "title": title})
        return task

    def exists(self, task_id: str) -> bool:
        return file_exists(self._task_path(task_id))

    def list_tasks(self) -> list[Task]:
        """List all readable tasks, oldest first."""
        if not self._tasks_dir.exists():
            return []
        tasks = []
        for path in list_files(self._tasks_dir, "*.json"):
            if path.name.endswith(".control.json"):
                continue
            task = self.load(path.stem)
            if task is not None:
                tasks.append(task)
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    # Control flags

    def read_control_flags(self, task_id: str) -> tuple[ControlFlag, ControlFlag]:
        """
        Read pause/cancel flags straight from disk.

        Returns:
            Tuple of (paused, cancel_requested). Missing or unreadable
            control files yield inactive flags.
        """
        path = self._control_path(task_id)
        if not file_exists(path):
            return ControlFlag(), ControlFlag()
        try:
            data = json.loads(read_file(path))
        except (json.JSONDecodeError, FileSystemError) as e:
            self._log("control_flags_unreadable", {
                "task_id": task_id,
                "error": str(e)
            }, level="warn")
            return ControlFlag(), ControlFlag()
        return (
            ControlFlag.from_dict(data.get("paused")),
            ControlFlag.from_dict(data.get("cancel_requested")),
        )

    def _write_control_flags(self, task_id: str, paused: ControlFlag, cancel: ControlFlag) -> None:
        if not self.exists(task_id):
            raise TaskStoreError(f"Task '{task_id}' not found")
        content = json.dumps({
            "paused": paused.to_dict(),
            "cancel_requested": cancel.to_dict(),
        }, indent=2)
        try:
            safe_write(self._control_path(task_id), content)
        except FileSystemError as e:
            raise TaskStoreError(f"Failed to write control flags for {task_id}: {e}")

    def set_paused(self, task_id: str, actor: str, paused: bool = True) -> ControlFlag:
        """Set or clear the pause flag."""
        with self._lock:
            pause_flag, cancel_flag = self.read_control_flags(task_id)
            pause_flag.set(actor, paused)
            self._write_control_flags(task_id, pause_flag, cancel_flag)
        self._log("task_pause_changed", {"task_id": task_id, "paused": paused, "actor": actor})
        return pause_flag

    def request_cancel(self, task_id: str, actor: str) -> ControlFlag:
        """Request cancellation; honored at the next phase boundary."""
        with self._lock:
            pause_flag, cancel_flag = self.read_control_flags(task_id)
            cancel_flag.set(actor, True)
            self._write_control_flags(task_id, pause_flag, cancel_flag)
        self._log("task_cancel_requested", {"task_id": task_id, "actor": actor})
        return cancel_flag

    # Repositories

    def save_repository(self, repository: Repository) -> None:
        ensure_dir(self._repos_dir)
        try:
            safe_write(
                self._repos_dir / f"{repository.id}.json",
                model_to_json(repository.to_dict(), indent=2),
            )
        except FileSystemError as e:
            raise TaskStoreError(f"Failed to save repository {repository.id}: {e}")

    def get_repositories(self, repository_ids: list[str]) -> list[Repository]:
        """
        Load repositories by id.

        Ids without a readable record are omitted; callers compare lengths
        to detect missing repositories.
        """
        repositories = []
        for repo_id in repository_ids:
            path = self._repos_dir / f"{repo_id}.json"
            if not file_exists(path):
                continue
            try:
                repositories.append(Repository.from_dict(json.loads(read_file(path))))
            except (json.JSONDecodeError, FileSystemError, TypeError) as e:
                self._log("repository_invalid", {"repository_id": repo_id, "error": str(e)},
                          level="error")
        return repositories

    # Credentials

    def _read_secrets(self, path: Path) -> dict[str, str]:
        if not file_exists(path):
            return {}
        try:
            return json.loads(read_file(path))
        except (json.JSONDecodeError, FileSystemError):
            self._log("credentials_unreadable", {"path": str(path)}, level="error")
            return {}

    def _store_secret(self, path: Path, key: str, value: str) -> None:
        """Set one entry of a credential file and keep it at mode 0600."""
        secrets = self._read_secrets(path)
        secrets[key] = value
        safe_write(path, json.dumps(secrets, indent=2))
        os.chmod(path, 0o600)

    def get_user_credential(self, user_id: str) -> Optional[str]:
        """Get a user's default API key, if one is stored."""
        return self._read_secrets(self._credentials_path).get(user_id)

    def set_user_credential(self, user_id: str, api_key: str) -> None:
        """Store a user's default API key (file mode 0600)."""
        with self._lock:
            try:
                self._store_secret(self._credentials_path, user_id, api_key)
            except (FileSystemError, OSError) as e:
                raise TaskStoreError(f"Failed to store credential for {user_id}: {e}")
        self._log("user_credential_stored", {"user_id": user_id})
