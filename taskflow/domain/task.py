"""
Task model: the unit of trackable guest-service work.

Status and action holder are closed enums.  Every status change goes
through check_transition(), and every persisted (status, holder) pair
through check_consistency(), so an illegal state is rejected instead of
being written.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from taskflow.errors import InvalidTransition


class TaskStatus(str, Enum):
    WAITING_ON_GUEST = "WaitingOnGuest"
    WAITING_ON_STAFF = "WaitingOnStaff"
    WAITING_ON_HOST = "WaitingOnHost"
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    ESCALATED = "Escalated"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class ActionHolder(str, Enum):
    GUEST = "Guest"
    STAFF = "Staff"
    HOST = "Host"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

_OPEN = frozenset(TaskStatus) - TERMINAL_STATUSES

# Allowed moves out of each status.  Staying in the same status is always
# allowed for open tasks and never counts as a transition.
VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.WAITING_ON_GUEST: _OPEN | TERMINAL_STATUSES,
    TaskStatus.WAITING_ON_STAFF: (_OPEN - {TaskStatus.WAITING_ON_GUEST}) | TERMINAL_STATUSES,
    TaskStatus.WAITING_ON_HOST: (_OPEN - {TaskStatus.WAITING_ON_GUEST}) | TERMINAL_STATUSES,
    TaskStatus.SCHEDULED: (_OPEN - {TaskStatus.WAITING_ON_GUEST}) | TERMINAL_STATUSES,
    TaskStatus.IN_PROGRESS: (_OPEN - {TaskStatus.WAITING_ON_GUEST}) | TERMINAL_STATUSES,
    TaskStatus.ESCALATED: (_OPEN - {TaskStatus.WAITING_ON_GUEST}) | TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Which action holders each status admits.  Terminal tasks keep whoever
# held the task last.
HOLDERS_FOR_STATUS: dict[TaskStatus, frozenset[ActionHolder]] = {
    TaskStatus.WAITING_ON_GUEST: frozenset({ActionHolder.GUEST}),
    TaskStatus.WAITING_ON_STAFF: frozenset({ActionHolder.STAFF}),
    TaskStatus.WAITING_ON_HOST: frozenset({ActionHolder.HOST}),
    TaskStatus.SCHEDULED: frozenset({ActionHolder.STAFF}),
    TaskStatus.IN_PROGRESS: frozenset({ActionHolder.STAFF, ActionHolder.HOST}),
    TaskStatus.ESCALATED: frozenset({ActionHolder.HOST}),
    TaskStatus.COMPLETED: frozenset(ActionHolder),
    TaskStatus.CANCELLED: frozenset(ActionHolder),
}


def holder_for(status: TaskStatus, current: ActionHolder) -> ActionHolder:
    """The action holder a task should carry after moving to *status*."""
    allowed = HOLDERS_FOR_STATUS[status]
    if current in allowed:
        return current
    if len(allowed) == 1:
        return next(iter(allowed))
    return ActionHolder.STAFF


def check_transition(old: TaskStatus, new: TaskStatus) -> None:
    if old == new and not old.is_terminal:
        return
    if new not in VALID_TRANSITIONS[old]:
        raise InvalidTransition(f"{old.value} -> {new.value} is not allowed")


def check_consistency(status: TaskStatus, holder: ActionHolder) -> None:
    if holder not in HOLDERS_FOR_STATUS[status]:
        raise InvalidTransition(
            f"status {status.value} cannot be held by {holder.value}"
        )


@dataclass
class TaskDefinition:
    """Property-scoped configuration for one request category.  Read-only."""
    property_id: str
    label: str
    staff_requirements: str = ""
    guest_requirements: str = ""
    host_escalation_criteria: str = ""
    staff_id: str | None = None
    staff_name: str = ""
    staff_address: str | None = None


@dataclass
class ClassificationEvent:
    """A classified guest request, as produced upstream by the oracle."""
    source_event_id: str
    requester_address: str
    property_id: str
    category: str
    request_text: str
    booking_id: str | None = None


@dataclass
class Task:
    id: str
    category: str
    request_text: str
    property_id: str
    requester_address: str
    source_event_id: str
    status: TaskStatus
    action_holder: ActionHolder
    created_at: datetime
    updated_at: datetime
    booking_id: str | None = None
    staff_id: str | None = None
    staff_name: str = ""
    staff_address: str | None = None
    staff_requirements: str = ""
    guest_requirements: str = ""
    host_escalation_criteria: str = ""
    action_holder_address: str | None = None
    action_holder_notified: bool = False
    response_received: bool = False
    completion_notified: bool = False    # notice claimed, in flight or sent
    completion_sent: bool = False        # notice delivered and recorded
    guest_info_requested: bool = False
    awaiting_assignment: bool = False    # routed with no staff, parked for an operator
    host_escalation_needed: bool = False
    escalation_reason: str = ""
    missing_requirements: str = ""
    last_outbound_message: str = ""
    failure_count: int = 0
    message_chain: list[str] = field(default_factory=list)
    linked_source_events: list[str] = field(default_factory=list)
    scheduled_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    @property
    def is_assigned(self) -> bool:
        return bool(self.staff_address)
