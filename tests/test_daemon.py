"""
Daemon behaviour tests for poll_once().

Uses simulators only, no network and no credentials.
Covers: event intake, reply polling, the failed-reply backlog and error
isolation between steps.
"""

import pytest

from taskflow.adapters.simulator_events import QueuedEventSource
from taskflow.communication.ports import ClassificationSource, InboundReply, ReplySource
from taskflow.daemon import ReplyBacklog, poll_once
from taskflow.domain.task import TaskStatus

from tests.scenario import GUEST, STAFF


class BrokenEventSource(ClassificationSource):
    async def poll_events(self):
        raise ConnectionError("inbox unreachable")


class BrokenReplySource(ReplySource):
    async def poll_replies(self):
        raise ConnectionError("IMAP down")


@pytest.fixture
def events():
    return QueuedEventSource()


@pytest.mark.asyncio
async def test_new_event_becomes_notified_task(engine, events, notifier, make_event):
    events.push(make_event())

    report = await poll_once(engine, events=events, replies=[notifier])

    assert report is not None
    [task] = await engine.list_tasks()
    assert task.status == TaskStatus.WAITING_ON_STAFF
    assert len(notifier.sent_to(STAFF)) == 1


@pytest.mark.asyncio
async def test_reply_is_applied_on_next_cycle(engine, events, notifier, make_event):
    events.push(make_event())
    await poll_once(engine, events=events, replies=[notifier])

    notifier.simulate_reply("r1", STAFF, "delivered")
    report = await poll_once(engine, events=events, replies=[notifier])

    assert [r.action for r in report.completed] == ["sent"]
    assert len(report.archived) == 1
    assert await engine.list_tasks() == []
    kinds = [m.metadata["kind"] for m in notifier.sent_to(GUEST)]
    assert kinds == ["GuestCompletionNotice"]


@pytest.mark.asyncio
async def test_failed_reply_is_retried_from_backlog(engine, events, notifier, oracle, make_event):
    events.push(make_event())
    await poll_once(engine, events=events, replies=[notifier])
    backlog = ReplyBacklog()

    oracle.fail_next(1)
    notifier.simulate_reply("r1", STAFF, "I'll deliver tomorrow")
    await poll_once(engine, replies=[notifier], backlog=backlog)
    assert len(backlog) == 1

    await poll_once(engine, replies=[notifier], backlog=backlog)
    assert len(backlog) == 0
    [task] = await engine.list_tasks()
    assert task.status == TaskStatus.SCHEDULED


@pytest.mark.asyncio
async def test_backlog_gives_up_after_max_attempts(engine, events, notifier, oracle, make_event):
    events.push(make_event())
    await poll_once(engine, events=events, replies=[notifier])
    backlog = ReplyBacklog(max_attempts=2)

    oracle.fail_next(5)
    notifier.simulate_reply("r1", STAFF, "I'll deliver tomorrow")
    await poll_once(engine, replies=[notifier], backlog=backlog)
    await poll_once(engine, replies=[notifier], backlog=backlog)

    assert len(backlog) == 0
    [task] = await engine.list_tasks()
    assert "r1" not in task.message_chain


@pytest.mark.asyncio
async def test_broken_sources_do_not_stop_the_pass(engine, notifier, make_event):
    await engine.submit_classification(make_event(category="Crib", text="crib please"))

    report = await poll_once(
        engine, events=BrokenEventSource(), replies=[BrokenReplySource(), notifier]
    )

    assert report is not None
    assert report.errors == 0


@pytest.mark.asyncio
async def test_replayed_events_are_harmless(engine, events, notifier, make_event):
    event = make_event(event_id="e-1")
    events.push(event)
    await poll_once(engine, events=events)
    events.push(event)
    await poll_once(engine, events=events)

    assert len(await engine.list_tasks()) == 1
    assert len(notifier.sent_to(STAFF)) == 1


def test_backlog_keeps_latest_attempt_per_message():
    backlog = ReplyBacklog(max_attempts=3)
    reply = InboundReply(message_id="r1", from_address=STAFF, body="ok")
    backlog.keep(reply, 1)
    backlog.keep(reply, 2)

    assert len(backlog) == 1
    assert backlog.take() == [(reply, 2)]
    assert len(backlog) == 0
