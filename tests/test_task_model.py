"""
Status / action-holder rules: the transition table and the consistency check.
"""

import pytest

from taskflow.domain.task import (
    ActionHolder,
    TaskStatus,
    check_consistency,
    check_transition,
    holder_for,
)
from taskflow.errors import InvalidTransition


@pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
def test_terminal_statuses_never_move(terminal):
    for target in TaskStatus:
        with pytest.raises(InvalidTransition):
            check_transition(terminal, target)


def test_open_status_may_stay_put():
    check_transition(TaskStatus.WAITING_ON_STAFF, TaskStatus.WAITING_ON_STAFF)


def test_nothing_returns_to_waiting_on_guest():
    with pytest.raises(InvalidTransition):
        check_transition(TaskStatus.WAITING_ON_STAFF, TaskStatus.WAITING_ON_GUEST)


def test_common_moves_are_allowed():
    check_transition(TaskStatus.WAITING_ON_GUEST, TaskStatus.WAITING_ON_STAFF)
    check_transition(TaskStatus.WAITING_ON_STAFF, TaskStatus.SCHEDULED)
    check_transition(TaskStatus.SCHEDULED, TaskStatus.COMPLETED)
    check_transition(TaskStatus.IN_PROGRESS, TaskStatus.ESCALATED)
    check_transition(TaskStatus.ESCALATED, TaskStatus.CANCELLED)


def test_waiting_on_host_requires_host():
    check_consistency(TaskStatus.WAITING_ON_HOST, ActionHolder.HOST)
    with pytest.raises(InvalidTransition):
        check_consistency(TaskStatus.WAITING_ON_HOST, ActionHolder.STAFF)


def test_escalated_requires_host():
    with pytest.raises(InvalidTransition):
        check_consistency(TaskStatus.ESCALATED, ActionHolder.GUEST)


def test_terminal_statuses_keep_any_holder():
    for holder in ActionHolder:
        check_consistency(TaskStatus.COMPLETED, holder)
        check_consistency(TaskStatus.CANCELLED, holder)


def test_holder_for_keeps_current_when_allowed():
    assert holder_for(TaskStatus.IN_PROGRESS, ActionHolder.HOST) == ActionHolder.HOST
    assert holder_for(TaskStatus.COMPLETED, ActionHolder.STAFF) == ActionHolder.STAFF


def test_holder_for_picks_the_only_allowed_holder():
    assert holder_for(TaskStatus.ESCALATED, ActionHolder.STAFF) == ActionHolder.HOST
    assert holder_for(TaskStatus.SCHEDULED, ActionHolder.HOST) == ActionHolder.STAFF


def test_holder_for_defaults_to_staff():
    assert holder_for(TaskStatus.IN_PROGRESS, ActionHolder.GUEST) == ActionHolder.STAFF


def test_is_terminal():
    assert TaskStatus.COMPLETED.is_terminal
    assert not TaskStatus.ESCALATED.is_terminal
