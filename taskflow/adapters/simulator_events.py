from taskflow.communication.ports import ClassificationSource
from taskflow.domain.task import ClassificationEvent


class QueuedEventSource(ClassificationSource):
    """In-memory event queue for tests: push() events, poll_events() drains them."""

    def __init__(self):
        self._queue: list[ClassificationEvent] = []

    def push(self, event: ClassificationEvent) -> None:
        self._queue.append(event)

    async def poll_events(self) -> list[ClassificationEvent]:
        events = self._queue.copy()
        self._queue.clear()
        return events
