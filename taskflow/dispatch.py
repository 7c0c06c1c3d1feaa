"""
NotificationDispatcher: at-most-once outbound messages for a task.

Order of operations for a triage decision:
  1. claim    (action_holder_notified 0 → 1, conditional on status)
  2. send     (Notifier, bounded by the guard's timeout)
  3. record   (one write: status, holder, address, body, chain entry)

A lost claim means another worker owns this round; we abort without
sending.  A failed send releases the claim so the next pass retries it.
The record step only moves a task still in the status it was claimed in.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from taskflow.communication.ports import Notifier
from taskflow.domain.oracle import MessageKind
from taskflow.domain.store import TaskStore
from taskflow.domain.task import ActionHolder, Task, TaskStatus, check_transition
from taskflow.errors import TransportError
from taskflow.retry import note_failure

log = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    action: Literal[
        "sent",          # message delivered and recorded
        "claim_lost",    # another worker owns this round, nothing sent
        "failed",        # transport error, claim released for retry
    ]
    transport_id: str = ""
    details: str = ""


class NotificationDispatcher:

    def __init__(self, store: TaskStore, notifier: Notifier, max_retries: int = 3):
        self._store = store
        self._notifier = notifier
        self._max_retries = max_retries

    @staticmethod
    def _metadata(task: Task, role: str, kind: MessageKind) -> dict:
        return {
            "task_id": task.id,
            "category": task.category,
            "property_id": task.property_id,
            "role": role,
            "kind": kind.value,
        }

    async def dispatch(
        self,
        task: Task,
        *,
        kind: MessageKind,
        address: str,
        role: ActionHolder,
        body: str,
        status: TaskStatus,
        missing_requirements: str = "",
        host_escalation_needed: bool = False,
        escalation_reason: str | None = None,
    ) -> DispatchResult:
        """Send one triage decision to the action holder, at most once."""
        check_transition(task.status, status)
        if not await self._store.claim_notification(task.id, task.status):
            log.info("task=%s claim lost, not sending %s", task.id, kind.value)
            return DispatchResult(action="claim_lost")

        try:
            transport_id = await self._notifier.send(
                address, body, self._metadata(task, role.value, kind)
            )
        except TransportError as exc:
            await self._store.release_notification(task.id)
            await note_failure(
                self._store, task, "transport_error",
                f"{kind.value} to {address}: {exc}", self._max_retries,
            )
            return DispatchResult(action="failed", details=str(exc))

        recorded = await self._store.record_dispatch(
            task.id,
            expected_status=task.status,
            status=status,
            action_holder=role,
            address=address,
            body=body,
            transport_id=transport_id,
            role=role.value,
            missing_requirements=missing_requirements,
            host_escalation_needed=host_escalation_needed,
            escalation_reason=escalation_reason,
        )
        if not recorded:
            # a reply or an operator moved the task while the message was in flight;
            # the send stands but the task keeps its newer status
            log.warning("task=%s sent %s but the task moved before it was recorded",
                        task.id, kind.value)
            await self._store.append_message(task.id, transport_id, "outbound", role.value, body)

        await self._store.audit(
            task.id, "transport_sent", f"{kind.value} to {address} id={transport_id}"
        )
        log.info("task=%s %s sent to %s (%s)", task.id, kind.value, role.value, address)
        return DispatchResult(action="sent", transport_id=transport_id)

    async def notify_guest(self, task: Task, kind: MessageKind, body: str) -> DispatchResult:
        """
        Send a guest-facing update.  Leaves the notification flags alone;
        the caller holds whatever claim makes this send unique.
        """
        try:
            transport_id = await self._notifier.send(
                task.requester_address, body, self._metadata(task, "Guest", kind)
            )
        except TransportError as exc:
            await self._store.audit(
                task.id, "transport_error", f"{kind.value} to guest: {exc}"
            )
            log.warning("task=%s %s to guest failed: %s", task.id, kind.value, exc)
            return DispatchResult(action="failed", details=str(exc))

        await self._store.append_message(task.id, transport_id, "outbound", "Guest", body)
        await self._store.audit(
            task.id, "transport_sent",
            f"{kind.value} to {task.requester_address} id={transport_id}",
        )
        log.info("task=%s %s sent to guest", task.id, kind.value)
        return DispatchResult(action="sent", transport_id=transport_id)

    async def dispatch_completion(self, task: Task, body: str) -> DispatchResult:
        """
        The final resolution notice: claimed, sent once, released on failure.
        The task only becomes archivable once the sent notice is recorded.
        """
        if not await self._store.claim_completion_notice(task.id):
            log.info("task=%s completion notice already claimed", task.id)
            return DispatchResult(action="claim_lost")

        kind = MessageKind.GUEST_COMPLETION_NOTICE
        try:
            transport_id = await self._notifier.send(
                task.requester_address, body, self._metadata(task, "Guest", kind)
            )
        except TransportError as exc:
            await self._store.release_completion_notice(task.id)
            await note_failure(
                self._store, task, "transport_error",
                f"{kind.value} to guest: {exc}", self._max_retries,
            )
            return DispatchResult(action="failed", details=str(exc))

        if not await self._store.record_completion_notice(task.id, transport_id, body):
            log.warning("task=%s completion notice sent but its claim was gone", task.id)
            await self._store.append_message(task.id, transport_id, "outbound", "Guest", body)
        await self._store.audit(
            task.id, "transport_sent",
            f"{kind.value} to {task.requester_address} id={transport_id}",
        )
        log.info("task=%s completion notice sent", task.id)
        return DispatchResult(action="sent", transport_id=transport_id)
