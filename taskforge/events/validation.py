"""
Event payload validation for the Taskforge event log.

Each EventType declares the payload fields it cannot do without. An
event missing one of them is rejected before anything is written, so
the fold never sees an epic or story without its target repository.
"""

from __future__ import annotations

from typing import Any

from taskforge.events.types import EventType


# Required payload fields per event type. Types not listed have none.
REQUIRED_FIELDS: dict[EventType, set[str]] = {
    # Phase lifecycle
    EventType.PHASE_STARTED: {"phase"},
    EventType.PHASE_COMPLETED: {"phase"},
    EventType.PHASE_FAILED: {"phase", "error"},
    EventType.PHASE_SKIPPED: {"phase"},

    # Approval gate
    EventType.APPROVAL_REQUESTED: {"phase"},
    EventType.PHASE_APPROVED: {"phase", "actor"},
    EventType.PHASE_REJECTED: {"phase", "actor"},

    # Planning
    EventType.REQUIREMENTS_COMPLETED: {"summary"},
    EventType.EPIC_CREATED: {"id", "title", "target_repository"},
    EventType.STORY_CREATED: {"id", "epic_id", "title", "target_repository"},

    # Team execution
    EventType.EPIC_BRANCH_CREATED: {"epic_id", "branch"},
    EventType.ARCHITECTURE_COMPLETED: {"epic_id"},
    EventType.TEAM_COMPOSITION_DEFINED: {"developers"},
    EventType.STORY_STARTED: {"story_id", "developer_id"},
    EventType.STORY_COMPLETED: {"story_id"},
    EventType.STORY_PUSH_VERIFIED: {"story_id", "branch"},
    EventType.STORY_FAILED: {"story_id", "error"},
    EventType.STORY_REVIEWED: {"story_id", "verdict"},

    # Integration test / fixer
    EventType.INTEGRATION_TEST_COMPLETED: {"epic_id", "passed"},

    # Pull requests and merge
    EventType.PR_CREATED: {"epic_id", "pr_number", "pr_url"},
    EventType.PR_MERGED: {"epic_id", "pr_number"},
    EventType.MERGE_BLOCKED: {"epic_id", "reasons"},

    # Governance
    EventType.BUDGET_WARNING: {"phase", "reason"},

    # Task lifecycle
    EventType.TASK_CONTINUED: {"actor"},
    EventType.TASK_FAILED: {"error"},
    EventType.TASK_CANCELLED: {"actor"},
}


def missing_fields(event_type: EventType, payload: dict[str, Any]) -> list[str]:
    """Return required fields absent (or empty) in a payload, sorted."""
    required = REQUIRED_FIELDS.get(event_type, set())
    return sorted(
        name for name in required
        if name not in payload or payload[name] is None or payload[name] == ""
    )


def validate_event(event_type: EventType, payload: dict[str, Any]) -> bool:
    """
    Validate an event payload against its required fields.

    Args:
        event_type: Type of the event being appended.
        payload: The event payload.

    Returns:
        True if validation passes.

    Raises:
        ValueError: If required fields are missing, with the field names included.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Payload for {event_type.value} must be a dict")

    missing = missing_fields(event_type, payload)
    if missing:
        raise ValueError(
            f"Event {event_type.value} missing required field(s): {', '.join(missing)}"
        )

    return True
