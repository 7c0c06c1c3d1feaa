"""
Deduplicator: turns a classification event into at most one open task.

  1. already consumed event        → no-op
  2. denylisted category           → consumed as noise, no task
  3. open task for the same topic  → event linked to it, no new task
  4. otherwise                     → task created from the matching definition

The store's unique index is the final word on step 4: if a concurrent
worker created the task first, the insert fails and we link instead.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from taskflow.domain.denylist import CategoryDenylist
from taskflow.domain.directory import PropertyDirectory, match_definition
from taskflow.domain.store import TaskStore
from taskflow.domain.task import ActionHolder, ClassificationEvent, Task, TaskStatus
from taskflow.errors import ClassificationNoise

log = logging.getLogger(__name__)


@dataclass
class DedupResult:
    action: Literal[
        "ignored_noise",     # category is denylisted
        "already_consumed",  # this source event was processed before
        "linked",            # open task exists for the topic, event linked to it
        "created",           # new task created
    ]
    task_id: str | None = None
    details: str = ""


class Deduplicator:

    def __init__(
        self,
        store: TaskStore,
        directory: PropertyDirectory,
        denylist: CategoryDenylist,
    ):
        self._store = store
        self._directory = directory
        self._denylist = denylist

    async def submit(self, event: ClassificationEvent) -> DedupResult:
        previous = await self._store.source_event_outcome(event.source_event_id)
        if previous is not None:
            outcome, task_id = previous
            log.debug("event=%s already consumed (%s)", event.source_event_id, outcome)
            return DedupResult(action="already_consumed", task_id=task_id, details=outcome)

        try:
            self._denylist.check(event.category)
        except ClassificationNoise as exc:
            await self._store.consume_source_event(event.source_event_id, "noise")
            log.info("event=%s ignored: %s", event.source_event_id, exc)
            return DedupResult(action="ignored_noise", details=str(exc))

        existing = await self._store.find_open_task(
            event.requester_address, event.property_id, event.category
        )
        if existing:
            return await self._link(event, existing.id)

        task = await self._new_task(event)
        if not await self._store.insert_task(task):
            # lost the race against another event for the same topic
            existing = await self._store.find_open_task(
                event.requester_address, event.property_id, event.category
            )
            if existing is None:
                raise RuntimeError(
                    f"insert of task for event {event.source_event_id} rejected "
                    "but no open task found"
                )
            return await self._link(event, existing.id)

        if not await self._store.consume_source_event(
            event.source_event_id, "created", task.id
        ):
            log.warning("event=%s consumed concurrently after task=%s was created",
                        event.source_event_id, task.id)

        detail = f"from event {event.source_event_id}, status={task.status.value}"
        if task.is_assigned:
            detail += f", staff={task.staff_name or task.staff_id or task.staff_address}"
        else:
            detail += ", unassigned"
        await self._store.audit(task.id, "created", detail)
        log.info("task=%s created for %r at %s (%s)",
                 task.id, task.category, task.property_id, task.status.value)
        return DedupResult(action="created", task_id=task.id, details=detail)

    async def _link(self, event: ClassificationEvent, task_id: str) -> DedupResult:
        if not await self._store.consume_source_event(event.source_event_id, "linked", task_id):
            return DedupResult(action="already_consumed", task_id=task_id)
        await self._store.audit(task_id, "source_linked", event.source_event_id)
        log.info("event=%s linked to open task=%s", event.source_event_id, task_id)
        return DedupResult(action="linked", task_id=task_id)

    async def _new_task(self, event: ClassificationEvent) -> Task:
        definitions = await self._directory.definitions(event.property_id)
        definition = match_definition(event.category, definitions)
        if definition is None:
            log.warning("no task definition for %r at %s, task will be unassigned",
                        event.category, event.property_id)

        guest_requirements = definition.guest_requirements.strip() if definition else ""
        if guest_requirements:
            status, holder = TaskStatus.WAITING_ON_GUEST, ActionHolder.GUEST
        else:
            status, holder = TaskStatus.WAITING_ON_STAFF, ActionHolder.STAFF

        now = datetime.now(timezone.utc)
        return Task(
            id=uuid.uuid4().hex[:12],
            category=event.category.strip(),
            request_text=event.request_text,
            property_id=event.property_id,
            requester_address=event.requester_address,
            source_event_id=event.source_event_id,
            status=status,
            action_holder=holder,
            created_at=now,
            updated_at=now,
            booking_id=event.booking_id,
            staff_id=definition.staff_id if definition else None,
            staff_name=definition.staff_name if definition else "",
            staff_address=definition.staff_address if definition else None,
            staff_requirements=definition.staff_requirements if definition else "",
            guest_requirements=guest_requirements,
            host_escalation_criteria=definition.host_escalation_criteria if definition else "",
        )
