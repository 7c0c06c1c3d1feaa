"""
Bounded retry policy for oracle and transport failures.

A failure leaves the task where it is so the next pass retries it.  Each
one is counted and audited; when an open task reaches max_retries it is
escalated to the Host with a system reason and its counter resets.  An
escalated task that exhausts its retries again keeps its count, which
takes it out of the routing candidates until an operator intervenes.
"""

import logging

from taskflow.domain.store import TaskStore
from taskflow.domain.task import ActionHolder, Task, TaskStatus

log = logging.getLogger(__name__)

SYSTEM_ESCALATION_REASON = "automation failed to reach staff/host"


def retries_exhausted(task: Task, max_retries: int) -> bool:
    return task.failure_count >= max_retries


async def note_failure(
    store: TaskStore, task: Task, kind: str, detail: str, max_retries: int
) -> bool:
    """Record one failure.  Returns True if this failure escalated the task."""
    count = await store.record_failure(task.id)
    await store.audit(task.id, kind, f"{detail} (failure {count}/{max_retries})")
    log.warning("task=%s %s: %s (failure %d/%d)", task.id, kind, detail, count, max_retries)

    if count < max_retries or not task.is_open:
        return False

    if task.status == TaskStatus.ESCALATED:
        await store.audit(task.id, "retries_exhausted", "left for operator review")
        log.error("task=%s retries exhausted while escalated, left for operators", task.id)
        return False

    moved = await store.transition(
        task.id,
        expected_status=task.status,
        new_status=TaskStatus.ESCALATED,
        action_holder=ActionHolder.HOST,
        escalation_reason=SYSTEM_ESCALATION_REASON,
        host_escalation_needed=True,
        action_holder_notified=False,
        failure_count=0,
    )
    if moved:
        await store.audit(task.id, "escalated", SYSTEM_ESCALATION_REASON)
        log.error("task=%s escalated: %s", task.id, SYSTEM_ESCALATION_REASON)
    return moved
