"""
CompletionCoordinator and Archiver: the two steps that retire a task.

The resolution notice is claimed through completion_notified, so it goes
out once per task however many passes overlap.  Only a recorded send sets
completion_sent, and only then may the Archiver copy the task and its
chain to cold storage and delete it, in one store transaction.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from taskflow.dispatch import NotificationDispatcher
from taskflow.domain.oracle import DecisionOracle, MessageKind, MessageRequest
from taskflow.domain.store import TaskStore, format_thread
from taskflow.domain.task import Task
from taskflow.errors import OracleError
from taskflow.retry import note_failure, retries_exhausted

log = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    action: Literal["sent", "claim_lost", "failed", "skipped"]
    task_id: str
    details: str = ""


class CompletionCoordinator:

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

    async def notify(self, task: Task) -> CompletionResult:
        if task.completion_notified:
            return CompletionResult(action="skipped", task_id=task.id, details="already notified")
        if retries_exhausted(task, self._max_retries):
            log.debug("task=%s completion notice retries exhausted", task.id)
            return CompletionResult(action="skipped", task_id=task.id,
                                    details="retries exhausted")

        thread = format_thread(await self._store.thread(task))
        try:
            body = await self._oracle.compose_message(MessageRequest(
                kind=MessageKind.GUEST_COMPLETION_NOTICE,
                category=task.category,
                request_text=task.request_text,
                thread=thread,
            ))
        except OracleError as exc:
            await note_failure(self._store, task, "oracle_error",
                               f"compose completion notice: {exc}", self._max_retries)
            return CompletionResult(action="failed", task_id=task.id, details=str(exc))
        await self._store.audit(
            task.id, "oracle_call", f"compose {MessageKind.GUEST_COMPLETION_NOTICE.value}"
        )

        sent = await self._dispatcher.dispatch_completion(task, body)
        return CompletionResult(action=sent.action, task_id=task.id, details=sent.details)

    async def run(self) -> list[CompletionResult]:
        results = []
        for task in await self._store.completion_candidates():
            try:
                results.append(await self.notify(task))
            except Exception as exc:
                log.error("task=%s completion step failed: %s", task.id, exc)
        return results


class Archiver:

    def __init__(self, store: TaskStore):
        self._store = store

    async def run(self) -> list[str]:
        """Archive every retired task.  Returns the ids moved to cold storage."""
        archived = []
        for task in await self._store.archive_candidates():
            try:
                if await self._store.archive(task.id):
                    await self._store.audit(task.id, "archived", task.status.value)
                    log.info("task=%s archived (%s)", task.id, task.status.value)
                    archived.append(task.id)
            except Exception as exc:
                # left in the live store, retried on the next pass
                log.error("task=%s archive failed: %s", task.id, exc)
        return archived
