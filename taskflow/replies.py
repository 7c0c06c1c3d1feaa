"""
ReplyIngestor: applies a Staff or Host reply to the task(s) it answers.

Matching, first tier with any result wins:
  0. task reference echoed back by the responder (email subject tag)
  1. staff identity
  2. sender address vs the task's staff / action holder address
  3. open tasks of the reply's property waiting on Staff or Host
  4. most recent open task touching the address or property

More than one match at tiers 1-4 is recorded on each task's audit trail
as an ambiguous match.  Tiers 3 and 4 only ever apply a reply to one task,
the most recent; other tasks waiting at the property are flagged for review.

Per task, one requirement check decides the outcome:
  satisfied     → Completed (explicit completion wording) or Scheduled
  not satisfied → Escalated (inability wording) or InProgress

The inbound message id and the transition are written together, so a
redelivered reply is a no-op and a reply that failed half-way is retried.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from taskflow.communication.ports import InboundReply
from taskflow.dispatch import NotificationDispatcher
from taskflow.domain.oracle import DecisionOracle, MessageKind, MessageRequest
from taskflow.domain.reply_language import indicates_inability, is_explicit_completion
from taskflow.domain.store import TaskStore, ThreadMessage, format_thread
from taskflow.domain.task import ActionHolder, Task, TaskStatus, holder_for
from taskflow.errors import InvalidTransition, OracleError
from taskflow.retry import note_failure

log = logging.getLogger(__name__)

_WAITING = (TaskStatus.WAITING_ON_STAFF, TaskStatus.WAITING_ON_HOST)


@dataclass
class ReplyResult:
    action: Literal[
        "applied",     # transition applied
        "recorded",    # guest reply added to the chain, no transition
        "duplicate",   # message already on the task's chain
        "unmatched",   # no open task for this reply
        "ignored",     # matched task is terminal
        "conflict",    # task moved concurrently, reply not applied
        "failed",      # oracle error, reply left for redelivery
        "needs_review",  # one of several property matches, not applied
    ]
    task_id: str | None = None
    status: TaskStatus | None = None
    details: str = ""


def normalize_address(address: str | None) -> str:
    """Comparable form of a contact: lowercased email, or the last 10 digits of a phone."""
    if not address:
        return ""
    value = address.strip()
    if value.lower().startswith("whatsapp:"):
        value = value[len("whatsapp:"):]
    if "@" in value:
        return value.lower()
    digits = re.sub(r"\D", "", value)
    return digits[-10:]


class ReplyIngestor:

    def __init__(
        self,
        store: TaskStore,
        oracle: DecisionOracle,
        dispatcher: NotificationDispatcher,
        max_retries: int = 3,
    ):
        self._store = store
        self._oracle = oracle
        self._dispatcher = dispatcher
        self._max_retries = max_retries

    async def ingest(self, reply: InboundReply) -> list[ReplyResult]:
        tasks, tier = await self._match(reply)
        if not tasks:
            log.warning("reply %s from %s matched no open task (%s)",
                        reply.message_id, reply.from_address, tier)
            return [ReplyResult(action="unmatched", details=tier)]

        held_back: list[Task] = []
        if tier == "property" and len(tasks) > 1:
            # open_tasks() is newest first
            tasks, held_back = tasks[:1], tasks[1:]

        if held_back or tier == "recent" or len(tasks) > 1:
            for t in tasks + held_back:
                await self._store.audit(
                    t.id, "ambiguous_match",
                    f"reply {reply.message_id} from {reply.from_address} matched by {tier} "
                    f"({len(tasks) + len(held_back)} task(s))",
                )

        results = []
        for task in tasks:
            if reply.role == "Guest":
                results.append(await self._record_guest_reply(task, reply))
            else:
                results.append(await self._apply(task, reply))
        for task in held_back:
            await self._store.audit(
                task.id, "needs_review",
                f"reply {reply.message_id} was applied to task {tasks[0].id} only",
            )
            log.warning("task=%s reply %s not applied, left for review",
                        task.id, reply.message_id)
            results.append(ReplyResult(action="needs_review", task_id=task.id,
                                       status=task.status))
        return results

    # -- matching ------------------------------------------------------------

    async def _match(self, reply: InboundReply) -> tuple[list[Task], str]:
        if reply.task_ref:
            task = await self._store.get_task(reply.task_ref)
            if task is None:
                return [], f"task_ref {reply.task_ref} not found"
            return [task], "task_ref"

        open_tasks = await self._store.open_tasks()
        sender = normalize_address(reply.from_address)

        if reply.role == "Guest":
            mine = [t for t in open_tasks if normalize_address(t.requester_address) == sender]
            return mine[:1], "requester"

        contacted = [t for t in open_tasks if t.status != TaskStatus.WAITING_ON_GUEST]

        if reply.staff_id:
            by_staff = [t for t in contacted if t.staff_id == reply.staff_id]
            if by_staff:
                return by_staff, "staff_id"

        if sender:
            by_address = [
                t for t in contacted
                if sender in (normalize_address(t.staff_address),
                              normalize_address(t.action_holder_address))
            ]
            if by_address:
                return by_address, "address"

        if reply.property_id:
            waiting = [
                t for t in open_tasks
                if t.property_id == reply.property_id
                and t.status in _WAITING
            ]
            if waiting:
                return waiting, "property"

        touching = [
            t for t in open_tasks
            if (sender and sender in (normalize_address(t.requester_address),
                                      normalize_address(t.staff_address),
                                      normalize_address(t.action_holder_address)))
            or (reply.property_id and t.property_id == reply.property_id)
        ]
        if touching:
            # open_tasks() is newest first
            return touching[:1], "recent"
        return [], "no candidates"

    # -- applying ------------------------------------------------------------

    async def _record_guest_reply(self, task: Task, reply: InboundReply) -> ReplyResult:
        if not await self._store.append_message(
            task.id, reply.message_id, "inbound", "Guest", reply.body
        ):
            return ReplyResult(action="duplicate", task_id=task.id, status=task.status)
        log.info("task=%s guest reply recorded", task.id)
        return ReplyResult(action="recorded", task_id=task.id, status=task.status)

    async def _apply(self, task: Task, reply: InboundReply) -> ReplyResult:
        if reply.message_id in task.message_chain:
            log.debug("task=%s reply %s already processed", task.id, reply.message_id)
            return ReplyResult(action="duplicate", task_id=task.id, status=task.status)
        if not task.is_open:
            await self._store.audit(
                task.id, "late_reply", f"reply {reply.message_id} after {task.status.value}"
            )
            log.info("task=%s is %s, reply %s not applied",
                     task.id, task.status.value, reply.message_id)
            return ReplyResult(action="ignored", task_id=task.id, status=task.status)

        history = await self._store.thread(task)
        history.append(ThreadMessage(
            message_id=reply.message_id,
            task_id=task.id,
            direction="inbound",
            role=reply.role,
            body=reply.body,
            created_at=reply.received_at or datetime.now(timezone.utc),
        ))
        thread = format_thread(history)

        try:
            satisfied = await self._oracle.requirement_satisfied(task.staff_requirements, thread)
        except OracleError as exc:
            await note_failure(self._store, task, "oracle_error",
                               f"requirement check for {reply.message_id}: {exc}",
                               self._max_retries)
            return ReplyResult(action="failed", task_id=task.id, status=task.status,
                               details=str(exc))
        await self._store.audit(
            task.id, "oracle_call", f"requirement_satisfied={satisfied} for {reply.message_id}"
        )

        escalation_reason = None
        rearm = False
        if satisfied:
            new_status = (
                TaskStatus.COMPLETED if is_explicit_completion(reply.body)
                else TaskStatus.SCHEDULED
            )
        elif indicates_inability(reply.body):
            new_status = TaskStatus.ESCALATED
            escalation_reason = f"{reply.role.lower()} unable: {reply.body.strip()[:160]}"
            # a Host who cannot help leaves the task to operators
            rearm = reply.role != "Host"
        else:
            new_status = TaskStatus.IN_PROGRESS

        holder = holder_for(new_status, task.action_holder)
        if new_status == TaskStatus.IN_PROGRESS and reply.role == "Host":
            holder = ActionHolder.HOST

        try:
            applied = await self._store.apply_reply(
                task.id,
                expected_status=task.status,
                new_status=new_status,
                action_holder=holder,
                message_id=reply.message_id,
                role=reply.role,
                body=reply.body,
                rearm=rearm,
                escalation_reason=escalation_reason,
            )
        except InvalidTransition as exc:
            await self._store.audit(task.id, "invalid_transition", str(exc))
            log.warning("task=%s reply %s rejected: %s", task.id, reply.message_id, exc)
            return ReplyResult(action="ignored", task_id=task.id, status=task.status,
                               details=str(exc))

        if not applied:
            current = await self._store.get_task(task.id)
            if current and reply.message_id in current.message_chain:
                return ReplyResult(action="duplicate", task_id=task.id, status=current.status)
            log.info("task=%s moved while reply %s was evaluated", task.id, reply.message_id)
            return ReplyResult(action="conflict", task_id=task.id,
                               status=current.status if current else None)

        log.info("task=%s %s → %s after %s reply",
                 task.id, task.status.value, new_status.value, reply.role)

        if new_status == TaskStatus.SCHEDULED:
            await self._send_scheduled_update(task, thread)

        return ReplyResult(action="applied", task_id=task.id, status=new_status)

    async def _send_scheduled_update(self, task: Task, thread: str) -> None:
        try:
            body = await self._oracle.compose_message(MessageRequest(
                kind=MessageKind.GUEST_SCHEDULED_UPDATE,
                category=task.category,
                request_text=task.request_text,
                thread=thread,
            ))
        except OracleError as exc:
            await self._store.audit(task.id, "oracle_error", f"compose scheduled update: {exc}")
            log.warning("task=%s scheduled update not composed: %s", task.id, exc)
            return
        await self._store.audit(
            task.id, "oracle_call", f"compose {MessageKind.GUEST_SCHEDULED_UPDATE.value}"
        )
        await self._dispatcher.notify_guest(task, MessageKind.GUEST_SCHEDULED_UPDATE, body)
