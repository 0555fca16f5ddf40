"""
Event sourcing for Taskforge.

This package provides the per-task, append-only event log that lets an
interrupted task resume exactly where it left off:
- EventType / TaskEvent records
- EventStore with durable, versioned appends
- build_state fold into a TaskStateSnapshot
- RecoveryService reconciling the cached task with the log
"""

from taskforge.events.types import EventType, TaskEvent
from taskforge.events.validation import REQUIRED_FIELDS, validate_event
from taskforge.events.projection import TaskStateSnapshot, build_state
from taskforge.events.store import EventStore, EventStoreError, IntegrityReport
from taskforge.events.recovery import RecoveryReport, RecoveryService

__all__ = [
    "EventType",
    "TaskEvent",
    "REQUIRED_FIELDS",
    "validate_event",
    "TaskStateSnapshot",
    "build_state",
    "EventStore",
    "EventStoreError",
    "IntegrityReport",
    "RecoveryReport",
    "RecoveryService",
]
