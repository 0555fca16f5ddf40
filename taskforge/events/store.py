"""
Append-only event store for Taskforge.

Persists each task's events to <state_dir>/events/<task_id>.jsonl.

- append() validates the payload, assigns the next version under an
  exclusive lock (thread lock + FileLock with a timeout), writes one line
  and fsyncs before returning
- get_events() returns events in version order
- get_current_state() folds the log into a TaskStateSnapshot
- verify_integrity() reports version gaps, duplicates, checksum
  mismatches, unreadable lines and missing required fields
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

from filelock import FileLock, Timeout

from taskforge.events.projection import TaskStateSnapshot, build_state
from taskforge.events.types import EventType, TaskEvent, payload_checksum
from taskforge.events.validation import missing_fields, validate_event
from taskforge.utils.fs import append_line_durable, ensure_dir

if TYPE_CHECKING:
    from taskforge.logger import TaskLogger

logger = logging.getLogger(__name__)


class EventStoreError(Exception):
    """Raised when the event log cannot be locked or written."""


@dataclass
class IntegrityReport:
    """Result of verifying a task's event log."""
    task_id: str
    event_count: int = 0
    issues: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


class EventStore:
    """
    Per-task, append-only, versioned event log.

    Versions for a task start at 1 and are gap-free; the store is the only
    writer of versions.
    """

    def __init__(
        self,
        events_dir: Path,
        logger: Optional[TaskLogger] = None,
        lock_timeout: float = 10.0,
    ) -> None:
        """
        Initialize the event store.

        Args:
            events_dir: Directory holding <task_id>.jsonl files.
            logger: Optional logger for recording operations.
            lock_timeout: Seconds to wait for another writer's file lock.
        """
        self._events_dir = Path(events_dir)
        self._logger = logger
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _log_path(self, task_id: str) -> Path:
        return self._events_dir / f"{task_id}.jsonl"

    @contextmanager
    def _exclusive(self, task_id: str) -> Iterator[None]:
        """
        Hold the in-process lock and the task's file lock.

        Raises:
            EventStoreError: Another process kept the file lock past the timeout.
        """
        with self._lock:
            ensure_dir(self._events_dir)
            lock = FileLock(self._events_dir / f"{task_id}.lock", timeout=self._lock_timeout)
            try:
                lock.acquire()
            except Timeout:
                self._log("event_lock_timeout", {"task_id": task_id}, level="error")
                raise EventStoreError(f"Timeout acquiring event log lock for task {task_id}")
            try:
                yield
            finally:
                lock.release()

    def _read_raw(self, task_id: str) -> tuple[list[TaskEvent], list[str]]:
        """Read all parseable events plus descriptions of unreadable lines."""
        path = self._log_path(task_id)
        if not path.exists():
            return [], []

        events: list[TaskEvent] = []
        problems: list[str] = []
        with path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(TaskEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    problems.append(f"line {line_no}: unreadable event ({e})")
        return events, problems

    @staticmethod
    def _current_run(events: list[TaskEvent]) -> list[TaskEvent]:
        """Events after the most recent TASK_CONTINUED, in version order."""
        ordered = sorted(events, key=lambda e: e.version)
        for index in range(len(ordered) - 1, -1, -1):
            if ordered[index].event_type == EventType.TASK_CONTINUED:
                return ordered[index + 1:]
        return ordered

    def append(
        self,
        task_id: str,
        event_type: EventType,
        payload: Optional[dict[str, Any]] = None,
        agent_name: str = "orchestrator",
        metadata: Optional[dict[str, Any]] = None,
        idempotent: bool = False,
    ) -> TaskEvent:
        """
        Append an event and return it with its assigned version.

        Args:
            task_id: Task the event belongs to.
            event_type: Type of the event.
            payload: Event payload (validated against required fields).
            agent_name: Agent or component that produced the event.
            metadata: Extra metadata; "cost" is summed by the fold.
            idempotent: When True, an identical event (same checksum over
                type, agent and payload) already logged since the last
                continuation is returned instead of appending a duplicate.

        Returns:
            The persisted TaskEvent.

        Raises:
            ValueError: If the payload is missing required fields.
            EventStoreError: If the log lock cannot be acquired in time.
        """
        payload = dict(payload or {})
        validate_event(event_type, payload)
        checksum = payload_checksum(event_type, agent_name, payload)

        with self._exclusive(task_id):
            existing, _ = self._read_raw(task_id)

            if idempotent:
                for event in self._current_run(existing):
                    if event.event_type == event_type and event.checksum == checksum:
                        self._log("event_duplicate_skipped", {
                            "event_type": event_type.value,
                            "version": event.version,
                        }, level="debug")
                        return event

            next_version = max((e.version for e in existing), default=0) + 1
            event = TaskEvent(
                task_id=task_id,
                event_type=event_type,
                version=next_version,
                agent_name=agent_name,
                payload=payload,
                metadata={**(metadata or {}), "checksum": checksum},
            )
            append_line_durable(self._log_path(task_id), json.dumps(event.to_dict(), default=str))

        self._log("event_appended", {
            "event_type": event_type.value,
            "version": event.version,
            "agent": agent_name,
        }, level="debug")
        return event

    def get_events(self, task_id: str, since_version: int = 0) -> list[TaskEvent]:
        """
        Get a task's events in version order.

        Args:
            task_id: The task identifier.
            since_version: Only events with a version greater than this.
        """
        events, problems = self._read_raw(task_id)
        for problem in problems:
            logger.warning(f"Event log for {task_id}: {problem}")
        events = [e for e in events if e.version > since_version]
        events.sort(key=lambda e: e.version)
        return events

    def get_current_state(self, task_id: str) -> TaskStateSnapshot:
        """Fold all events for a task into its current state."""
        return build_state(self.get_events(task_id), task_id=task_id)

    def last_version(self, task_id: str) -> int:
        events = self.get_events(task_id)
        return events[-1].version if events else 0

    def verify_integrity(self, task_id: str) -> IntegrityReport:
        """
        Verify a task's event log.

        Checks that versions are contiguous from 1 with no duplicates, every
        stored checksum matches its event, every line parses, and every
        event carries its required fields.
        """
        events, problems = self._read_raw(task_id)
        report = IntegrityReport(task_id=task_id, event_count=len(events))
        report.issues.extend(problems)

        seen: set[int] = set()
        for event in events:
            if event.version in seen:
                report.issues.append(f"v{event.version}: duplicate version")
            seen.add(event.version)

            if event.checksum and event.checksum != event.compute_checksum():
                report.issues.append(
                    f"v{event.version}: checksum mismatch "
                    f"(stored={event.checksum}, calculated={event.compute_checksum()})"
                )

            missing = missing_fields(event.event_type, event.payload)
            if missing:
                report.issues.append(
                    f"v{event.version}: {event.event_type.value} missing {', '.join(missing)}"
                )

        if seen:
            expected = set(range(1, max(seen) + 1))
            for gap in sorted(expected - seen):
                report.issues.append(f"v{gap}: missing version (gap)")

        self._log("event_integrity_verified", {
            "event_count": report.event_count,
            "issues": len(report.issues),
        }, level="info" if report.valid else "warn")
        return report

    def get_event_history(self, task_id: str) -> list[str]:
        """One-line summaries of every event, in version order."""
        return [event.summary() for event in self.get_events(task_id)]

    def get_statistics(self, task_id: str) -> dict[str, Any]:
        """Counts by type, first/last timestamps and total recorded cost."""
        events = self.get_events(task_id)
        by_type: dict[str, int] = {}
        for event in events:
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1
        return {
            "task_id": task_id,
            "total_events": len(events),
            "events_by_type": by_type,
            "first_event": events[0].timestamp if events else None,
            "last_event": events[-1].timestamp if events else None,
            "last_version": events[-1].version if events else 0,
            "total_cost": round(sum(e.cost for e in events), 6),
        }
