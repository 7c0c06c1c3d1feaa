"""
Reply ingestion: matching a Staff/Host reply to its task and applying the
one transition the requirement check calls for.
"""

import pytest

from taskflow.communication.ports import InboundReply
from taskflow.domain.task import ActionHolder, TaskStatus
from taskflow.replies import normalize_address

from tests.scenario import GUEST, HOST, PROPERTY, STAFF


def staff_reply(message_id: str, body: str, **kwargs) -> InboundReply:
    kwargs.setdefault("from_address", STAFF)
    return InboundReply(message_id=message_id, body=body, role="Staff", **kwargs)


def host_reply(message_id: str, body: str, **kwargs) -> InboundReply:
    return InboundReply(message_id=message_id, from_address=HOST, body=body,
                        role="Host", **kwargs)


@pytest.fixture
def towels(engine, make_event):
    async def _submit(**kwargs):
        result = await engine.submit_classification(make_event(**kwargs))
        return await engine.get_task(result.task_id)
    return _submit


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_commitment_schedules_and_updates_guest(engine, towels, notifier):
    task = await towels()

    [result] = await engine.ingest_reply(staff_reply("r1", "I'll deliver tomorrow"))

    assert result.action == "applied"
    assert result.status == TaskStatus.SCHEDULED
    stored = await engine.get_task(task.id)
    assert stored.status == TaskStatus.SCHEDULED
    assert stored.action_holder == ActionHolder.STAFF
    assert stored.response_received is True
    assert stored.completion_notified is False
    assert stored.scheduled_at is not None
    assert "r1" in stored.message_chain
    assert [m.metadata["kind"] for m in notifier.sent_to(GUEST)] == ["GuestScheduledUpdate"]


@pytest.mark.asyncio
async def test_explicit_completion_completes(engine, towels, notifier):
    task = await towels()

    [result] = await engine.ingest_reply(staff_reply("r1", "delivered"))

    assert result.status == TaskStatus.COMPLETED
    stored = await engine.get_task(task.id)
    assert stored.completed_at is not None
    # the final notice is the completion step's job, not the reply's
    assert notifier.sent_to(GUEST) == []


@pytest.mark.asyncio
async def test_staff_inability_escalates_and_rearms(engine, towels, notifier):
    task = await towels()

    [result] = await engine.ingest_reply(staff_reply("r1", "Sorry, I can't do it today"))

    assert result.status == TaskStatus.ESCALATED
    stored = await engine.get_task(task.id)
    assert stored.action_holder == ActionHolder.HOST
    assert stored.action_holder_notified is False
    assert stored.escalation_reason.startswith("staff unable:")

    await engine.run_pass()
    assert [m.metadata["kind"] for m in notifier.sent_to(HOST)] == ["HostEscalation"]


@pytest.mark.asyncio
async def test_host_inability_is_left_for_operators(engine, towels, notifier):
    task = await towels(text="there is smoke coming from the oven")
    assert (await engine.get_task(task.id)).status == TaskStatus.WAITING_ON_HOST

    [result] = await engine.ingest_reply(host_reply("h1", "I can't get anyone there"))

    assert result.status == TaskStatus.ESCALATED
    stored = await engine.get_task(task.id)
    assert stored.action_holder_notified is True
    await engine.run_pass()
    assert len(notifier.sent_to(HOST)) == 1


@pytest.mark.asyncio
async def test_partial_reply_moves_to_in_progress(engine, towels):
    task = await towels()

    [result] = await engine.ingest_reply(staff_reply("r1", "ok, which apartment is it?"))

    assert result.status == TaskStatus.IN_PROGRESS
    assert (await engine.get_task(task.id)).action_holder == ActionHolder.STAFF


@pytest.mark.asyncio
async def test_host_partial_reply_keeps_host_holder(engine, towels):
    task = await towels(text="the window is broken")

    [result] = await engine.ingest_reply(host_reply("h1", "let me think about it"))

    assert result.status == TaskStatus.IN_PROGRESS
    assert (await engine.get_task(task.id)).action_holder == ActionHolder.HOST


@pytest.mark.asyncio
async def test_scheduled_then_delivered(engine, towels):
    task = await towels()
    await engine.ingest_reply(staff_reply("r1", "I'll deliver tomorrow"))

    [result] = await engine.ingest_reply(staff_reply("r2", "Delivered!"))

    assert result.status == TaskStatus.COMPLETED
    assert (await engine.get_task(task.id)).message_chain[-2:] == ["r1", "r2"]


# ---------------------------------------------------------------------------
# Idempotency and failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_redelivered_reply_is_a_duplicate(engine, towels, notifier):
    await towels()
    reply = staff_reply("r1", "I'll deliver tomorrow")

    await engine.ingest_reply(reply)
    [again] = await engine.ingest_reply(reply)

    assert again.action == "duplicate"
    assert len(notifier.sent_to(GUEST)) == 1


@pytest.mark.asyncio
async def test_oracle_failure_leaves_reply_for_redelivery(engine, towels, oracle):
    task = await towels()
    oracle.fail_next(1)

    [failed] = await engine.ingest_reply(staff_reply("r1", "I'll deliver tomorrow"))

    assert failed.action == "failed"
    stored = await engine.get_task(task.id)
    assert "r1" not in stored.message_chain
    assert stored.failure_count == 1

    [applied] = await engine.ingest_reply(staff_reply("r1", "I'll deliver tomorrow"))
    assert applied.action == "applied"


@pytest.mark.asyncio
async def test_reply_to_completed_task_is_ignored(engine, towels):
    task = await towels()
    await engine.complete_task(task.id)

    [by_ref] = await engine.ingest_reply(staff_reply("r1", "done", task_ref=task.id))
    [by_address] = await engine.ingest_reply(staff_reply("r2", "done"))

    assert by_ref.action == "ignored"
    assert by_address.action == "unmatched"
    kinds = [e.kind for e in await engine.audit_trail(task.id)]
    assert "late_reply" in kinds


@pytest.mark.asyncio
async def test_unknown_sender_is_unmatched(engine, towels):
    await towels()

    [result] = await engine.ingest_reply(staff_reply("r1", "hello", from_address="+33600000000"))

    assert result.action == "unmatched"


@pytest.mark.asyncio
async def test_guest_reply_is_recorded_only(engine, towels):
    task = await towels()

    [result] = await engine.ingest_reply(
        InboundReply(message_id="g1", from_address=GUEST, body="thanks!", role="Guest")
    )

    assert result.action == "recorded"
    stored = await engine.get_task(task.id)
    assert stored.status == TaskStatus.WAITING_ON_STAFF
    assert "g1" in stored.message_chain


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_task_reference_wins_over_address(engine, towels):
    first = await towels()
    crib = await towels(category="Crib", text="we need a crib")

    results = await engine.ingest_reply(
        staff_reply("r1", "I'll bring it tomorrow", task_ref=crib.id)
    )

    assert [(r.task_id, r.status) for r in results] == [(crib.id, TaskStatus.SCHEDULED)]
    assert (await engine.get_task(first.id)).status == TaskStatus.WAITING_ON_STAFF


@pytest.mark.asyncio
async def test_several_matches_are_applied_and_flagged(engine, towels):
    first = await towels()
    crib = await towels(category="Crib", text="we need a crib")

    results = await engine.ingest_reply(staff_reply("r1", "I'll bring both tomorrow"))

    assert {r.task_id for r in results} == {first.id, crib.id}
    assert all(r.action == "applied" for r in results)
    for task_id in (first.id, crib.id):
        kinds = [e.kind for e in await engine.audit_trail(task_id)]
        assert "ambiguous_match" in kinds


@pytest.mark.asyncio
async def test_staff_identity_match(engine, towels):
    task = await towels()

    [result] = await engine.ingest_reply(
        staff_reply("r1", "I'll deliver tomorrow", from_address="marie@example.com",
                    staff_id="S1")
    )

    assert result.task_id == task.id
    assert result.action == "applied"


@pytest.mark.asyncio
async def test_whatsapp_prefix_and_formatting_are_ignored(engine, towels):
    task = await towels()

    [result] = await engine.ingest_reply(
        staff_reply("r1", "I'll deliver tomorrow", from_address="whatsapp:+1 (555) 999-0000")
    )

    assert result.task_id == task.id


@pytest.mark.asyncio
async def test_property_tier_matches_waiting_tasks(engine, towels):
    task = await towels()

    [result] = await engine.ingest_reply(
        staff_reply("r1", "I'll deliver tomorrow", from_address="+33611111111",
                    property_id=PROPERTY)
    )

    assert result.task_id == task.id


@pytest.mark.asyncio
async def test_property_tier_applies_to_newest_and_flags_the_rest(engine, towels):
    first = await towels()
    crib = await towels(category="Crib", text="we need a crib")

    results = await engine.ingest_reply(
        staff_reply("r1", "delivered", from_address="+33611111111", property_id=PROPERTY)
    )

    assert [(r.task_id, r.action) for r in results] == [
        (crib.id, "applied"), (first.id, "needs_review"),
    ]
    assert (await engine.get_task(crib.id)).status == TaskStatus.COMPLETED
    untouched = await engine.get_task(first.id)
    assert untouched.status == TaskStatus.WAITING_ON_STAFF
    assert "r1" not in untouched.message_chain
    kinds = [e.kind for e in await engine.audit_trail(first.id)]
    assert "ambiguous_match" in kinds and "needs_review" in kinds


@pytest.mark.asyncio
async def test_most_recent_fallback_is_flagged(engine, towels):
    task = await towels()
    await engine.ingest_reply(staff_reply("r1", "I'll deliver tomorrow"))

    # Scheduled tasks are not "waiting", so only the recency fallback applies
    [result] = await engine.ingest_reply(
        staff_reply("r2", "delivered", from_address="+33611111111", property_id=PROPERTY)
    )

    assert result.task_id == task.id
    assert result.status == TaskStatus.COMPLETED
    kinds = [e.kind for e in await engine.audit_trail(task.id)]
    assert "ambiguous_match" in kinds


@pytest.mark.parametrize("raw, expected", [
    ("+1 (555) 999-0000", "5559990000"),
    ("whatsapp:+15559990000", "5559990000"),
    ("  Host@Example.COM ", "host@example.com"),
    ("", ""),
    (None, ""),
])
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected
