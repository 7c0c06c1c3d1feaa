"""
TaskStore port: durable record of tasks, their message chains and audit.

Every method that guards a side effect (claim_*, apply_reply, transition)
is a single conditional write: it returns False when the row was not in
the expected pre-state, which means another worker got there first.
Callers must treat False as "abort, do not send".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from taskflow.domain.task import ActionHolder, Task, TaskStatus


@dataclass
class ThreadMessage:
    """One message in a task's conversation, inbound or outbound."""
    message_id: str
    task_id: str
    direction: str       # "inbound" or "outbound"
    role: str            # "Guest", "Staff", "Host"
    body: str
    created_at: datetime


@dataclass
class AuditEntry:
    task_id: str
    kind: str            # "oracle_call", "transport_error", "ambiguous_match", ...
    detail: str
    created_at: datetime


def format_thread(messages: list[ThreadMessage]) -> str:
    """Render a thread the way the oracle reads it: one dated line per message."""
    return "\n".join(
        f"{m.created_at.date().isoformat()} - {m.role} - {m.direction} - {m.body}"
        for m in messages
    )


@dataclass
class TaskFilters:
    property_id: str | None = None
    status: TaskStatus | None = None
    action_holder: ActionHolder | None = None
    unassigned: bool = False


class TaskStore(ABC):

    # -- source events -------------------------------------------------------

    @abstractmethod
    async def consume_source_event(
        self, event_id: str, outcome: str, task_id: str | None = None
    ) -> bool:
        """
        Record a classification event, linking it to *task_id* when given.
        False if it was already consumed.
        """
        ...

    @abstractmethod
    async def source_event_outcome(self, event_id: str) -> tuple[str, str | None] | None:
        """(outcome, task_id) for a consumed event, or None."""
        ...

    # -- task records --------------------------------------------------------

    @abstractmethod
    async def insert_task(self, task: Task) -> bool:
        """
        Persist a new task.  False if an open task already exists for the
        same (requester_address, property_id, category).
        """
        ...

    @abstractmethod
    async def find_open_task(
        self, requester_address: str, property_id: str, category: str
    ) -> Task | None:
        """Most recent open task for the tuple; category compared case-insensitively."""
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Task | None:
        ...

    @abstractmethod
    async def list_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        """Live tasks matching *filters*, newest first."""
        ...

    @abstractmethod
    async def open_tasks(self) -> list[Task]:
        """Every non-terminal task, newest first."""
        ...

    # -- orchestration candidates --------------------------------------------

    @abstractmethod
    async def routing_candidates(self) -> list[Task]:
        """Open tasks not yet notified and without a completion notice, oldest first."""
        ...

    @abstractmethod
    async def completion_candidates(self) -> list[Task]:
        ...

    @abstractmethod
    async def archive_candidates(self) -> list[Task]:
        ...

    # -- claims --------------------------------------------------------------

    @abstractmethod
    async def claim_notification(self, task_id: str, expected_status: TaskStatus) -> bool:
        """Set action_holder_notified only if it is unset and status matches."""
        ...

    @abstractmethod
    async def release_notification(self, task_id: str) -> None:
        """Undo a claim whose send failed."""
        ...

    @abstractmethod
    async def record_dispatch(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        status: TaskStatus,
        action_holder: ActionHolder,
        address: str,
        body: str,
        transport_id: str,
        role: str,
        missing_requirements: str = "",
        host_escalation_needed: bool = False,
        escalation_reason: str | None = None,
    ) -> bool:
        """
        One write for a successful claimed send.  False if the claim is gone
        or the task left *expected_status* while the message was in flight;
        the task is not moved in that case.
        """
        ...

    @abstractmethod
    async def claim_completion_notice(self, task_id: str) -> bool:
        """Mark the notice in flight.  The task is not archivable until it is recorded."""
        ...

    @abstractmethod
    async def record_completion_notice(self, task_id: str, transport_id: str, body: str) -> bool:
        """Mark the claimed notice sent and add it to the chain, in one write."""
        ...

    @abstractmethod
    async def release_completion_notice(self, task_id: str) -> None:
        ...

    @abstractmethod
    async def claim_guest_info_request(self, task_id: str) -> bool:
        ...

    @abstractmethod
    async def release_guest_info_request(self, task_id: str) -> None:
        ...

    # -- messages ------------------------------------------------------------

    @abstractmethod
    async def append_message(
        self,
        task_id: str,
        message_id: str,
        direction: str,
        role: str,
        body: str,
    ) -> bool:
        """Add to the chain.  False if the message id is already on it."""
        ...

    @abstractmethod
    async def thread(self, task: Task) -> list[ThreadMessage]:
        """Messages linked to the task, its booking or its requester, oldest first."""
        ...

    # -- transitions ---------------------------------------------------------

    @abstractmethod
    async def apply_reply(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        action_holder: ActionHolder,
        message_id: str,
        role: str,
        body: str,
        rearm: bool,
        escalation_reason: str | None = None,
    ) -> bool:
        """
        Append an inbound reply to the chain and move the task, atomically.
        False if the reply was already on the chain or the status moved.
        """
        ...

    @abstractmethod
    async def transition(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        action_holder: ActionHolder,
        **fields: Any,
    ) -> bool:
        """Conditional status change with optional extra column updates."""
        ...

    @abstractmethod
    async def update_fields(self, task_id: str, **fields: Any) -> None:
        """Unconditional update of non-status columns."""
        ...

    # -- retries and audit ---------------------------------------------------

    @abstractmethod
    async def record_failure(self, task_id: str) -> int:
        """Increment and return the task's failure count."""
        ...

    @abstractmethod
    async def audit(self, task_id: str, kind: str, detail: str) -> None:
        ...

    @abstractmethod
    async def audit_trail(self, task_id: str) -> list[AuditEntry]:
        """Entries for a live or archived task, oldest first."""
        ...

    # -- archive -------------------------------------------------------------

    @abstractmethod
    async def archive(self, task_id: str) -> bool:
        """
        Copy task + chain to cold storage and delete it, in one transaction.
        Only Cancelled tasks and Completed tasks whose notice was sent qualify.
        """
        ...

    @abstractmethod
    async def get_archived(self, task_id: str) -> dict | None:
        ...
