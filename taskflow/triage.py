"""
TriageRouter: decides who acts next on a task and gets them a message.

Host involvement is reserved for what the oracle judges to need authority
or safety handling; everything else goes to Staff first, with any missing
guest details requested in parallel rather than as a blocking step.

Escalated tasks skip the oracle: their escalation reason is already known,
so they go straight to the Host and wait on the Host once notified.  A task
routed to Staff with no staff assigned is parked until an operator assigns
someone, so the oracle is not asked again on every pass.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from taskflow.dispatch import NotificationDispatcher
from taskflow.domain.denylist import CategoryDenylist
from taskflow.domain.directory import PropertyDirectory
from taskflow.domain.oracle import (
    DecisionOracle,
    MessageKind,
    MessageRequest,
    TriageRequest,
    TriageResult,
)
from taskflow.domain.store import TaskStore, format_thread
from taskflow.domain.task import ActionHolder, Task, TaskStatus
from taskflow.errors import OracleError
from taskflow.retry import note_failure, retries_exhausted

log = logging.getLogger(__name__)


@dataclass
class RouteResult:
    action: Literal[
        "sent",          # action holder notified
        "skipped",       # preconditions not met, nothing done
        "claim_lost",    # another worker is routing this task
        "unassigned",    # staff path chosen but no staff address, left for operators
        "failed",        # oracle or transport failure, will be retried
    ]
    holder: ActionHolder | None = None
    details: str = ""


class TriageRouter:

    def __init__(
        self,
        store: TaskStore,
        directory: PropertyDirectory,
        oracle: DecisionOracle,
        dispatcher: NotificationDispatcher,
        denylist: CategoryDenylist,
        max_retries: int = 3,
    ):
        self._store = store
        self._directory = directory
        self._oracle = oracle
        self._dispatcher = dispatcher
        self._denylist = denylist
        self._max_retries = max_retries

    def _skip_reason(self, task: Task) -> str:
        if not task.is_open:
            return "terminal"
        if task.completion_notified:
            return "completion notified"
        if task.action_holder_notified:
            return "already notified"
        if task.awaiting_assignment and not task.staff_address:
            return "awaiting staff assignment"
        if self._denylist.is_denied(task.category):
            return "denylisted category"
        if retries_exhausted(task, self._max_retries):
            return "retries exhausted"
        if (
            task.status != TaskStatus.ESCALATED
            and task.last_outbound_message
            and not task.response_received
        ):
            return "awaiting reply"
        return ""

    async def route(self, task: Task) -> RouteResult:
        reason = self._skip_reason(task)
        if reason:
            log.debug("task=%s skipped: %s", task.id, reason)
            return RouteResult(action="skipped", details=reason)

        thread = format_thread(await self._store.thread(task))

        if task.status == TaskStatus.ESCALATED:
            return await self._to_host(
                task, thread, task.escalation_reason or "escalated", TaskStatus.WAITING_ON_HOST
            )

        try:
            triage = await self._oracle.triage(
                TriageRequest(
                    category=task.category,
                    host_criteria=task.host_escalation_criteria,
                    guest_requirements=task.guest_requirements,
                    staff_requirements=task.staff_requirements,
                    thread=thread,
                    latest_message=task.request_text,
                )
            )
        except OracleError as exc:
            await note_failure(self._store, task, "oracle_error", f"triage: {exc}",
                               self._max_retries)
            return RouteResult(action="failed", details=str(exc))

        await self._store.audit(
            task.id, "oracle_call",
            f"triage host_needed={triage.host_needed} reason={triage.host_reason!r} "
            f"guest_missing={triage.guest_missing} staff_missing={triage.staff_missing}",
        )

        if triage.host_needed:
            result = await self._to_host(
                task, thread, triage.host_reason, TaskStatus.WAITING_ON_HOST
            )
        else:
            result = await self._to_staff(task, thread, triage)

        if result.action in ("sent", "unassigned"):
            await self._request_guest_info(task, thread, triage)
        return result

    async def _to_host(
        self, task: Task, thread: str, reason: str, status: TaskStatus
    ) -> RouteResult:
        address = await self._directory.host_address(task.property_id)
        if not address:
            await note_failure(self._store, task, "unroutable",
                               f"no host address for property {task.property_id}",
                               self._max_retries)
            return RouteResult(action="failed", holder=ActionHolder.HOST,
                               details="no host address")

        body = await self._compose(task, MessageRequest(
            kind=MessageKind.HOST_ESCALATION,
            category=task.category,
            request_text=task.request_text,
            thread=thread,
            host_reason=reason,
        ))
        if body is None:
            return RouteResult(action="failed", holder=ActionHolder.HOST,
                               details="compose failed")

        sent = await self._dispatcher.dispatch(
            task,
            kind=MessageKind.HOST_ESCALATION,
            address=address,
            role=ActionHolder.HOST,
            body=body,
            status=status,
            host_escalation_needed=True,
            escalation_reason=reason,
        )
        return RouteResult(action=sent.action, holder=ActionHolder.HOST, details=reason)

    async def _to_staff(self, task: Task, thread: str, triage: TriageResult) -> RouteResult:
        if not task.staff_address:
            await self._store.transition(
                task.id,
                expected_status=task.status,
                new_status=TaskStatus.WAITING_ON_STAFF,
                action_holder=ActionHolder.STAFF,
                awaiting_assignment=True,
            )
            await self._store.audit(task.id, "unassigned", "no staff to notify")
            log.info("task=%s has no staff assigned, waiting for an operator", task.id)
            return RouteResult(action="unassigned", holder=ActionHolder.STAFF)

        body = await self._compose(task, MessageRequest(
            kind=MessageKind.STAFF_INFO_REQUEST,
            category=task.category,
            request_text=task.request_text,
            thread=thread,
            recipient_name=task.staff_name,
            staff_requirements=task.staff_requirements,
            missing=triage.staff_missing,
        ))
        if body is None:
            return RouteResult(action="failed", holder=ActionHolder.STAFF,
                               details="compose failed")

        sent = await self._dispatcher.dispatch(
            task,
            kind=MessageKind.STAFF_INFO_REQUEST,
            address=task.staff_address,
            role=ActionHolder.STAFF,
            body=body,
            status=TaskStatus.WAITING_ON_STAFF,
            missing_requirements=", ".join(triage.staff_missing),
        )
        return RouteResult(action=sent.action, holder=ActionHolder.STAFF)

    async def _request_guest_info(
        self, task: Task, thread: str, triage: TriageResult
    ) -> None:
        if not (triage.guest_missing and task.guest_requirements):
            return
        if not await self._store.claim_guest_info_request(task.id):
            return

        body = await self._compose(task, MessageRequest(
            kind=MessageKind.GUEST_INFO_REQUEST,
            category=task.category,
            request_text=task.request_text,
            thread=thread,
            guest_requirements=task.guest_requirements,
            missing=triage.guest_missing,
        ))
        if body is None:
            await self._store.release_guest_info_request(task.id)
            return

        sent = await self._dispatcher.notify_guest(task, MessageKind.GUEST_INFO_REQUEST, body)
        if sent.action != "sent":
            await self._store.release_guest_info_request(task.id)

    async def _compose(self, task: Task, request: MessageRequest) -> str | None:
        try:
            body = await self._oracle.compose_message(request)
        except OracleError as exc:
            await note_failure(self._store, task, "oracle_error",
                               f"compose {request.kind.value}: {exc}", self._max_retries)
            return None
        await self._store.audit(task.id, "oracle_call", f"compose {request.kind.value}")
        return body
