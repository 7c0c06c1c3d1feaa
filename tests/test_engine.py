"""
End-to-end engine tests using all simulators.

No network, no credentials, no LLM API calls.  Covers the full life of a
request plus the operator actions.
"""

import asyncio

import pytest

from taskflow.adapters.simulator_oracle import SimulatorDecisionOracle
from taskflow.communication.console_notifier import ConsoleNotifier
from taskflow.communication.ports import InboundReply
from taskflow.domain.oracle import TriageResult
from taskflow.domain.store import TaskFilters
from taskflow.domain.task import ActionHolder, TaskStatus
from taskflow.engine import Engine, EngineConfig
from taskflow.errors import InvalidTransition, TaskNotFound
from taskflow.retry import SYSTEM_ESCALATION_REASON

from tests.scenario import GUEST, HOST, STAFF


def _kinds(notifier, address):
    return [m.metadata["kind"] for m in notifier.sent_to(address)]


def _staff(message_id, body):
    return InboundReply(message_id=message_id, from_address=STAFF, body=body, role="Staff")


# ---------------------------------------------------------------------------
# Life of a request
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_new_request_notifies_staff_once(engine, make_event, notifier):
    result = await engine.submit_classification(make_event())

    assert result.action == "created"
    task = await engine.get_task(result.task_id)
    assert task.status == TaskStatus.WAITING_ON_STAFF
    assert task.action_holder_notified is True
    assert _kinds(notifier, STAFF) == ["StaffInfoRequest"]

    await engine.run_pass()
    await engine.run_pass()
    assert len(notifier.sent_to(STAFF)) == 1


@pytest.mark.asyncio
async def test_full_lifecycle_to_archive(engine, make_event, notifier, store):
    created = await engine.submit_classification(make_event())
    task_id = created.task_id

    await engine.ingest_reply(_staff("r1", "I'll deliver tomorrow"))
    task = await engine.get_task(task_id)
    assert task.status == TaskStatus.SCHEDULED
    assert task.completion_notified is False
    assert _kinds(notifier, GUEST) == ["GuestScheduledUpdate"]

    await engine.ingest_reply(_staff("r2", "delivered"))
    assert (await engine.get_task(task_id)).status == TaskStatus.COMPLETED

    report = await engine.run_pass()
    assert report.completed[0].action == "sent"
    assert report.archived == [task_id]
    assert _kinds(notifier, GUEST) == ["GuestScheduledUpdate", "GuestCompletionNotice"]

    archived = await store.get_archived(task_id)
    assert archived["status"] == "Completed"
    assert archived["completion_sent"] == 1
    assert "r1" in archived["message_chain"] and "r2" in archived["message_chain"]


@pytest.mark.asyncio
async def test_host_reason_routes_to_host_regardless_of_staff(engine, make_event, notifier, oracle):
    oracle.script_triage(TriageResult(host_needed=True, host_reason="SafetyRisk"))

    result = await engine.submit_classification(make_event())

    task = await engine.get_task(result.task_id)
    assert task.status == TaskStatus.WAITING_ON_HOST
    assert task.action_holder == ActionHolder.HOST
    assert task.is_assigned
    assert notifier.sent_to(STAFF) == []
    assert _kinds(notifier, HOST) == ["HostEscalation"]


@pytest.mark.asyncio
async def test_duplicate_classifications_share_one_task(engine, make_event, notifier):
    first = await engine.submit_classification(make_event(event_id="e-1"))
    second = await engine.submit_classification(make_event(event_id="e-2"))
    replay = await engine.submit_classification(make_event(event_id="e-1"))

    assert (first.action, second.action, replay.action) == ("created", "linked", "already_consumed")
    assert len(await engine.list_tasks()) == 1
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_noise_category_creates_nothing(engine, make_event, notifier):
    result = await engine.submit_classification(make_event(category="Other"))

    assert result.action == "ignored_noise"
    assert await engine.list_tasks() == []
    assert notifier.sent == []


# ---------------------------------------------------------------------------
# Failures, retries and escalation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_repeated_send_failures_escalate_to_host(engine, make_event, notifier):
    notifier.fail_next(3)
    result = await engine.submit_classification(make_event())
    await engine.run_pass()
    await engine.run_pass()

    task = await engine.get_task(result.task_id)
    assert task.status == TaskStatus.ESCALATED
    assert task.action_holder == ActionHolder.HOST
    assert task.escalation_reason == SYSTEM_ESCALATION_REASON
    assert notifier.sent == []

    await engine.run_pass()
    assert _kinds(notifier, HOST) == ["HostEscalation"]
    assert (await engine.get_task(task.id)).failure_count == 0


@pytest.mark.asyncio
async def test_escalated_task_that_keeps_failing_waits_for_operator(engine, make_event, notifier):
    notifier.fail_next(6)
    result = await engine.submit_classification(make_event())
    for _ in range(6):
        await engine.run_pass()

    task = await engine.get_task(result.task_id)
    assert task.status == TaskStatus.ESCALATED
    assert task.failure_count == 3
    assert notifier.sent == []
    kinds = [e.kind for e in await engine.audit_trail(task.id)]
    assert "retries_exhausted" in kinds

    # an operator resets the counter and the next pass reaches the Host
    await engine.patch_task(task.id, {"status": "Escalated"})
    await engine.run_pass()
    assert _kinds(notifier, HOST) == ["HostEscalation"]


@pytest.mark.asyncio
async def test_oracle_timeout_is_a_counted_failure(store, directory, notifier, make_event):
    engine = Engine(EngineConfig(
        store=store,
        directory=directory,
        oracle=SimulatorDecisionOracle(delay=0.5),
        notifier=notifier,
        oracle_timeout=0.05,
    ))

    result = await engine.submit_classification(make_event())

    task = await engine.get_task(result.task_id)
    assert task.failure_count == 1
    assert task.action_holder_notified is False
    assert notifier.sent == []
    errors = [e.detail for e in await engine.audit_trail(task.id) if e.kind == "oracle_error"]
    assert "timed out" in errors[0]


@pytest.mark.asyncio
async def test_overlapping_passes_notify_once(store, directory, oracle, make_event):
    notifier = ConsoleNotifier(quiet=True, send_delay=0.01)
    engine = Engine(EngineConfig(store=store, directory=directory, oracle=oracle,
                                 notifier=notifier))
    notifier.fail_next(1)
    await engine.submit_classification(make_event())

    await asyncio.gather(*(engine.run_pass() for _ in range(4)))

    assert len(notifier.sent_to(STAFF)) == 1


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_assign_staff_routes_unassigned_task(engine, make_event, notifier):
    result = await engine.submit_classification(
        make_event(category="Late checkout", text="can we leave at 2pm")
    )
    assert [t.id for t in await engine.list_tasks(TaskFilters(unassigned=True))] == [result.task_id]

    routed = await engine.assign_staff(result.task_id, "S2", "+15552223333", "Paul")

    assert routed.action == "sent"
    assert _kinds(notifier, "+15552223333") == ["StaffInfoRequest"]
    task = await engine.get_task(result.task_id)
    assert task.staff_name == "Paul"
    assert task.action_holder_notified is True
    assert await engine.list_tasks(TaskFilters(unassigned=True)) == []


@pytest.mark.asyncio
async def test_unassigned_task_is_triaged_once_until_assigned(
    engine, make_event, oracle, notifier
):
    result = await engine.submit_classification(
        make_event(category="Late checkout", text="can we leave at 2pm")
    )
    for _ in range(5):
        await engine.run_pass()

    assert oracle.calls["triage"] == 1
    oracle_calls = [e for e in await engine.audit_trail(result.task_id)
                    if e.kind == "oracle_call"]
    assert len(oracle_calls) == 1

    await engine.patch_task(result.task_id, {"staff_address": "+15552223333"})
    await engine.run_pass()

    assert oracle.calls["triage"] == 2
    assert (await engine.get_task(result.task_id)).awaiting_assignment is False
    assert _kinds(notifier, "+15552223333") == ["StaffInfoRequest"]


@pytest.mark.asyncio
async def test_assign_staff_rejects_closed_task(engine, make_event):
    result = await engine.submit_classification(make_event())
    await engine.cancel_task(result.task_id)

    with pytest.raises(InvalidTransition):
        await engine.assign_staff(result.task_id, "S2", "+15552223333")


@pytest.mark.asyncio
async def test_patch_validates_before_writing(engine, make_event):
    result = await engine.submit_classification(make_event())
    task_id = result.task_id

    with pytest.raises(ValueError):
        await engine.patch_task(task_id, {"completion_notified": True})
    with pytest.raises(ValueError):
        await engine.patch_task(task_id, {"status": "Bogus"})
    with pytest.raises(InvalidTransition):
        await engine.patch_task(task_id, {"status": "WaitingOnGuest"})
    with pytest.raises(InvalidTransition):
        await engine.patch_task(task_id, {"status": "Escalated", "action_holder": "Staff"})

    assert (await engine.get_task(task_id)).status == TaskStatus.WAITING_ON_STAFF


@pytest.mark.asyncio
async def test_patch_to_escalated_rearms_for_host(engine, make_event, notifier, oracle):
    result = await engine.submit_classification(make_event())

    task = await engine.patch_task(
        result.task_id, {"status": "Escalated", "escalation_reason": "guest complaint"}
    )
    assert task.action_holder == ActionHolder.HOST
    assert task.action_holder_notified is False

    await engine.run_pass()
    assert _kinds(notifier, HOST) == ["HostEscalation"]
    assert oracle.composed[-1].host_reason == "guest complaint"


@pytest.mark.asyncio
async def test_patch_plain_fields(engine, make_event):
    result = await engine.submit_classification(make_event())

    task = await engine.patch_task(result.task_id, {"booking_id": "B-77", "staff_name": "Léa"})

    assert task.booking_id == "B-77"
    assert task.staff_name == "Léa"
    kinds = [e.kind for e in await engine.audit_trail(task.id)]
    assert kinds[-1] == "patched"


@pytest.mark.asyncio
async def test_complete_by_hand_then_notice(engine, make_event, notifier):
    result = await engine.submit_classification(make_event())

    task = await engine.complete_task(result.task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.completed_at is not None
    # idempotent
    assert (await engine.complete_task(result.task_id)).status == TaskStatus.COMPLETED

    await engine.run_pass()
    assert _kinds(notifier, GUEST) == ["GuestCompletionNotice"]


@pytest.mark.asyncio
async def test_cancelled_task_cannot_be_completed(engine, make_event):
    result = await engine.submit_classification(make_event())
    await engine.cancel_task(result.task_id, "duplicate of another booking")

    with pytest.raises(InvalidTransition):
        await engine.complete_task(result.task_id)


@pytest.mark.asyncio
async def test_unknown_task_raises(engine):
    with pytest.raises(TaskNotFound):
        await engine.get_task("nope")
    with pytest.raises(TaskNotFound):
        await engine.patch_task("nope", {"staff_name": "x"})
