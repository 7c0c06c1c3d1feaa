"""
Task lifecycle engine.

Wires the components together and exposes the operations other services
call:

  submit_classification()  classified guest request → task (deduplicated)
  ingest_reply()           staff/host reply → transition
  run_pass()               route → completion notices → archive
  assign_staff() / patch_task() / complete_task() / cancel_task()
  list_tasks() / get_task() / audit_trail()

Flow of one request:
  Deduplicator → TriageRouter → NotificationDispatcher
    → [reply] → ReplyIngestor → (TriageRouter again, or)
    → CompletionCoordinator → Archiver

The oracle and notifier are wrapped so every call has a timeout and
fails with OracleError / TransportError only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from taskflow.adapters.guarded import GuardedNotifier, GuardedOracle
from taskflow.communication.ports import InboundReply, Notifier
from taskflow.completion import Archiver, CompletionCoordinator, CompletionResult
from taskflow.dedup import Deduplicator, DedupResult
from taskflow.dispatch import NotificationDispatcher
from taskflow.domain.denylist import DEFAULT_DENYLIST, CategoryDenylist
from taskflow.domain.directory import PropertyDirectory
from taskflow.domain.oracle import DecisionOracle
from taskflow.domain.store import AuditEntry, TaskFilters, TaskStore
from taskflow.domain.task import (
    ActionHolder,
    ClassificationEvent,
    Task,
    TaskStatus,
    check_consistency,
    check_transition,
    holder_for,
)
from taskflow.errors import InvalidTransition, TaskflowError, TaskNotFound
from taskflow.replies import ReplyIngestor, ReplyResult
from taskflow.triage import RouteResult, TriageRouter

log = logging.getLogger(__name__)

# Fields an operator may set through patch_task().
PATCHABLE_FIELDS = frozenset({
    "status", "action_holder", "category", "request_text", "booking_id",
    "staff_id", "staff_name", "staff_address",
    "staff_requirements", "guest_requirements", "host_escalation_criteria",
    "escalation_reason",
})

# Statuses that need a fresh routing decision when an operator sets them.
_NEEDS_ROUTING = frozenset({
    TaskStatus.WAITING_ON_STAFF, TaskStatus.WAITING_ON_HOST, TaskStatus.ESCALATED,
})


@dataclass
class EngineConfig:
    store: TaskStore
    directory: PropertyDirectory
    oracle: DecisionOracle
    notifier: Notifier
    denylist: CategoryDenylist = DEFAULT_DENYLIST
    max_retries: int = 3
    oracle_timeout: float = 30
    notifier_timeout: float = 15


@dataclass
class PassReport:
    routed: list[RouteResult] = field(default_factory=list)
    completed: list[CompletionResult] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)
    errors: int = 0


class Engine:

    def __init__(self, config: EngineConfig):
        self._store = config.store
        oracle = GuardedOracle(config.oracle, timeout=config.oracle_timeout)
        notifier = GuardedNotifier(config.notifier, timeout=config.notifier_timeout)

        self._dispatcher = NotificationDispatcher(self._store, notifier, config.max_retries)
        self._dedup = Deduplicator(self._store, config.directory, config.denylist)
        self._router = TriageRouter(
            self._store, config.directory, oracle, self._dispatcher,
            config.denylist, config.max_retries,
        )
        self._ingestor = ReplyIngestor(self._store, oracle, self._dispatcher, config.max_retries)
        self._completion = CompletionCoordinator(
            self._store, oracle, self._dispatcher, config.max_retries
        )
        self._archiver = Archiver(self._store)

    @property
    def store(self) -> TaskStore:
        return self._store

    # -- event paths ---------------------------------------------------------

    async def submit_classification(self, event: ClassificationEvent) -> DedupResult:
        """Create (or link) a task for a classified request and route it right away."""
        result = await self._dedup.submit(event)
        if result.action == "created" and result.task_id:
            task = await self._store.get_task(result.task_id)
            if task:
                await self._router.route(task)
        return result

    async def ingest_reply(self, reply: InboundReply) -> list[ReplyResult]:
        return await self._ingestor.ingest(reply)

    async def run_pass(self) -> PassReport:
        """One orchestration pass.  A failure on one task never stops the others."""
        report = PassReport()

        for task in await self._store.routing_candidates():
            try:
                report.routed.append(await self._router.route(task))
            except Exception as exc:
                report.errors += 1
                log.error("task=%s routing failed: %s", task.id, exc)

        report.completed = await self._completion.run()
        report.archived = await self._archiver.run()

        sent = sum(1 for r in report.routed if r.action == "sent")
        if sent or report.completed or report.archived or report.errors:
            log.info(
                "pass: %d routed, %d sent, %d completion notice(s), %d archived, %d error(s)",
                len(report.routed), sent, len(report.completed),
                len(report.archived), report.errors,
            )
        return report

    # -- operator actions ----------------------------------------------------

    async def get_task(self, task_id: str) -> Task:
        task = await self._store.get_task(task_id)
        if task is None:
            raise TaskNotFound(f"task {task_id} not found")
        return task

    async def list_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        return await self._store.list_tasks(filters)

    async def audit_trail(self, task_id: str) -> list[AuditEntry]:
        return await self._store.audit_trail(task_id)

    async def assign_staff(
        self, task_id: str, staff_id: str | None, staff_address: str, staff_name: str = ""
    ) -> RouteResult:
        """Point the task at a staff member, re-arm it and route it straight away."""
        task = await self.get_task(task_id)
        if not task.is_open:
            raise InvalidTransition(f"task {task_id} is {task.status.value}")

        moved = await self._store.transition(
            task.id,
            expected_status=task.status,
            new_status=TaskStatus.WAITING_ON_STAFF,
            action_holder=ActionHolder.STAFF,
            staff_id=staff_id,
            staff_name=staff_name,
            staff_address=staff_address,
            last_outbound_message="",
            action_holder_notified=False,
            awaiting_assignment=False,
            response_received=False,
            failure_count=0,
        )
        if not moved:
            raise TaskflowError(f"task {task_id} changed concurrently, retry the assignment")

        await self._store.audit(task.id, "assigned", f"staff={staff_id} address={staff_address}")
        log.info("task=%s assigned to %s (%s)", task.id, staff_name or staff_id, staff_address)
        return await self._router.route(await self.get_task(task_id))

    async def patch_task(self, task_id: str, fields: dict[str, Any]) -> Task:
        """Manual override.  Status and holder are re-validated before anything is written."""
        unknown = set(fields) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be patched: {sorted(unknown)}")

        task = await self.get_task(task_id)
        updates = {k: v for k, v in fields.items() if k not in ("status", "action_holder")}

        new_status = TaskStatus(fields["status"]) if "status" in fields else task.status
        if "action_holder" in fields:
            holder = ActionHolder(fields["action_holder"])
        else:
            holder = holder_for(new_status, task.action_holder)
        check_transition(task.status, new_status)
        check_consistency(new_status, holder)

        if new_status != task.status:
            updates.update(self._timestamps_for(new_status))
            if new_status in _NEEDS_ROUTING:
                updates.update(action_holder_notified=False, last_outbound_message="")
        if new_status != task.status or "staff_address" in fields:
            updates["awaiting_assignment"] = False
        updates["failure_count"] = 0

        moved = await self._store.transition(
            task.id,
            expected_status=task.status,
            new_status=new_status,
            action_holder=holder,
            **updates,
        )
        if not moved:
            raise TaskflowError(f"task {task_id} changed concurrently, retry the patch")

        await self._store.audit(task.id, "patched", ", ".join(sorted(fields)))
        log.info("task=%s patched: %s", task.id, sorted(fields))
        return await self.get_task(task_id)

    async def complete_task(self, task_id: str) -> Task:
        """Mark Completed by hand.  The guest notice still comes from the next pass."""
        task = await self.get_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            return task
        return await self._close(task, TaskStatus.COMPLETED, "completed by operator")

    async def cancel_task(self, task_id: str, reason: str = "") -> Task:
        task = await self.get_task(task_id)
        if task.status == TaskStatus.CANCELLED:
            return task
        return await self._close(task, TaskStatus.CANCELLED, reason or "cancelled by operator")

    async def _close(self, task: Task, status: TaskStatus, detail: str) -> Task:
        check_transition(task.status, status)
        moved = await self._store.transition(
            task.id,
            expected_status=task.status,
            new_status=status,
            action_holder=task.action_holder,
            **self._timestamps_for(status),
        )
        if not moved:
            raise TaskflowError(f"task {task.id} changed concurrently, retry")
        await self._store.audit(task.id, status.value.lower(), detail)
        log.info("task=%s %s", task.id, detail)
        return await self.get_task(task.id)

    @staticmethod
    def _timestamps_for(status: TaskStatus) -> dict[str, datetime]:
        now = datetime.now(timezone.utc)
        if status == TaskStatus.COMPLETED:
            return {"completed_at": now}
        if status == TaskStatus.SCHEDULED:
            return {"scheduled_at": now}
        return {}
