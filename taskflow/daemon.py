"""
Core polling logic for the taskflow daemon.

Extracted from scripts/run.py so it can be imported and tested
without pulling in Claude, email or WhatsApp adapter dependencies.
"""

import logging
from dataclasses import dataclass, field

from taskflow.communication.ports import ClassificationSource, InboundReply, ReplySource
from taskflow.engine import Engine, PassReport

log = logging.getLogger(__name__)


@dataclass
class ReplyBacklog:
    """
    Replies whose evaluation failed (oracle down), kept for the next cycle.

    Channels mark replies as read when they are polled, so a failed reply
    would otherwise be lost.  Each is retried up to max_attempts times.
    """
    max_attempts: int = 3
    _pending: dict[str, tuple[InboundReply, int]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._pending)

    def take(self) -> list[tuple[InboundReply, int]]:
        items = list(self._pending.values())
        self._pending.clear()
        return items

    def keep(self, reply: InboundReply, attempts: int) -> None:
        if attempts >= self.max_attempts:
            log.error("reply %s from %s dropped after %d failed attempt(s)",
                      reply.message_id, reply.from_address, attempts)
            return
        self._pending[reply.message_id] = (reply, attempts)


async def poll_once(
    engine: Engine,
    events: ClassificationSource | None = None,
    replies: list[ReplySource] | None = None,
    backlog: ReplyBacklog | None = None,
) -> PassReport | None:
    """
    One daemon cycle.

    1. Turn new classification events into tasks.
    2. Apply replies from every reply channel (plus any backlog).
    3. Run one orchestration pass: route, completion notices, archive.

    Each step is isolated: a failure is logged and the cycle moves on.
    """
    if events is not None:
        try:
            new_events = await events.poll_events()
        except Exception as exc:
            log.error("Failed to poll classification events: %s", exc)
            new_events = []

        for event in new_events:
            try:
                result = await engine.submit_classification(event)
                if result.action != "already_consumed":
                    log.info("event=%s → %s %s", event.source_event_id,
                             result.action, result.task_id or "")
            except Exception as exc:
                log.error("Failed to process event %s: %s", event.source_event_id, exc)

    backlog = backlog if backlog is not None else ReplyBacklog()
    inbound: list[tuple[InboundReply, int]] = backlog.take()
    for source in replies or []:
        try:
            inbound.extend((r, 0) for r in await source.poll_replies())
        except Exception as exc:
            log.error("Failed to poll replies from %s: %s", type(source).__name__, exc)

    for reply, attempts in inbound:
        try:
            results = await engine.ingest_reply(reply)
        except Exception as exc:
            log.error("Failed to ingest reply %s: %s", reply.message_id, exc)
            backlog.keep(reply, attempts + 1)
            continue
        for r in results:
            log.info("reply %s → %s %s", reply.message_id, r.action, r.task_id or "")
        if any(r.action == "failed" for r in results):
            backlog.keep(reply, attempts + 1)

    try:
        return await engine.run_pass()
    except Exception as exc:
        log.error("Orchestration pass failed: %s", exc)
        return None
