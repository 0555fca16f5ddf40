"""
Per-task JSONL logging.

Every orchestration run gets a TaskLogger. Services receive it as an
optional dependency and write through their `_log` helper, so a task's
whole history (phases, agent calls, retries, supervisor verdicts) ends up
in one file per day under <state_dir>/logs/. Entries are passed through
the secrets redactor before they are serialized.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from taskforge.config import ForgeConfig, get_config
from taskforge.governance.secrets import SecretsDetectionService


class LogLevel:
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _utc_day() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class TaskLogger:
    """
    JSONL logger bound to one task id.

    Entry shape: {timestamp, level, event_type, task_id, data[, phase]}.
    The file is <task_id>-YYYY-MM-DD.jsonl. Writes from team threads are
    serialized by an instance lock.
    """

    def __init__(
        self,
        task_id: str,
        config: Optional[ForgeConfig] = None,
        secrets: Optional[SecretsDetectionService] = None,
    ) -> None:
        self.task_id = task_id
        self._config = config
        self._secrets = secrets or SecretsDetectionService()
        self._current_phase: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def config(self) -> ForgeConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def path_for(self, day: Optional[str] = None) -> Path:
        """Log file for a UTC day (today by default)."""
        return self.config.logs_path / f"{self.task_id}-{day or _utc_day()}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append one entry.

        Args:
            event_type: Short snake_case name, e.g. "story_failed".
            data: Payload; redacted by value patterns and by key name.
            level: One of the LogLevel constants.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "task_id": self.task_id,
            "data": self._secrets.sanitize_object(data or {}),
        }
        if self._current_phase:
            entry["phase"] = self._current_phase

        line = json.dumps(entry, default=str) + "\n"
        path = self.path_for()
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(line)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def phase_context(self, phase: str) -> Iterator[TaskLogger]:
        """Tag every entry written inside the block with `phase`."""
        previous = self._current_phase
        self._current_phase = phase
        self.debug("phase_context_enter", {"phase": phase})
        try:
            yield self
        finally:
            self.debug("phase_context_exit", {"phase": phase})
            self._current_phase = previous

    def _iter_entries(self, day: Optional[str]) -> Iterator[dict[str, Any]]:
        path = self.path_for(day)
        if not path.exists():
            return
        with open(path, encoding="utf-8") as handle:
            for raw in handle:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    # A torn final line from a killed process
                    continue

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Entries for one day, filtered by exact level and event type."""
        matches: list[dict[str, Any]] = []
        for entry in self._iter_entries(date):
            if level is not None and entry.get("level") != level:
                continue
            if event_type is not None and entry.get("event_type") != event_type:
                continue
            matches.append(entry)
            if limit and len(matches) == limit:
                break
        return matches
