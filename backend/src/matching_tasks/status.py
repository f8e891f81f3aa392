"""Matching task and matching record status state machines.

State Flow (task):
    PENDING → PROCESSING → REVIEW|COMPLETED
    PROCESSING → FAILED → PENDING (retry)
    REVIEW ⇄ COMPLETED (review actions settle or reopen the task)

Terminal States: COMPLETED (until reopened), CANCELLED
"""

from enum import Enum
from typing import List


class TaskStatus(str, Enum):
    """Matching task status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecordStatus(str, Enum):
    """Classification of one wholesale line item."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXCEPTION = "exception"


ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: [TaskStatus.PROCESSING, TaskStatus.CANCELLED],
    TaskStatus.PROCESSING: [
        TaskStatus.REVIEW,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    ],
    TaskStatus.REVIEW: [TaskStatus.COMPLETED, TaskStatus.CANCELLED],
    TaskStatus.COMPLETED: [TaskStatus.REVIEW],
    TaskStatus.FAILED: [TaskStatus.PENDING],
    TaskStatus.CANCELLED: [],  # Terminal state
}

# Tasks whose records may be changed by review actions (processing races the automated pass)
REVIEWABLE_TASK_STATUSES = (TaskStatus.PROCESSING, TaskStatus.REVIEW, TaskStatus.COMPLETED)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


def validate_transition(current_status: TaskStatus, new_status: TaskStatus) -> None:
    """Validate that a task state transition is allowed.

    Args:
        current_status: Current task status
        new_status: Target status to transition to

    Raises:
        StateTransitionError: If transition is not allowed
    """
    allowed = ALLOWED_TRANSITIONS.get(current_status, [])
    if new_status not in allowed:
        raise StateTransitionError(
            f"Invalid transition: {current_status.value} -> {new_status.value}. "
            f"Allowed transitions from {current_status.value}: "
            f"{[s.value for s in allowed]}"
        )


def can_transition(current_status: TaskStatus, new_status: TaskStatus) -> bool:
    """Check if a state transition is allowed without raising exception."""
    return new_status in ALLOWED_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(status: TaskStatus) -> List[TaskStatus]:
    return ALLOWED_TRANSITIONS.get(status, [])


def settled_status(pending_items: int, exception_items: int) -> TaskStatus:
    """Status a finished task settles into given its open items."""
    if pending_items > 0 or exception_items > 0:
        return TaskStatus.REVIEW
    return TaskStatus.COMPLETED
