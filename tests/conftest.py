"""
Shared fixtures: one property with two task definitions, simulators for
every collaborator, and an engine wired to them.  No network anywhere.
"""

import itertools

import pytest

from taskflow.adapters.simulator_directory import InMemoryPropertyDirectory
from taskflow.adapters.simulator_oracle import SimulatorDecisionOracle
from taskflow.adapters.sqlite_task_store import SqliteTaskStore
from taskflow.communication.console_notifier import ConsoleNotifier
from taskflow.domain.task import ClassificationEvent, TaskDefinition
from taskflow.engine import Engine, EngineConfig
from tests.scenario import GUEST, HOST, PROPERTY, STAFF


@pytest.fixture
def store():
    return SqliteTaskStore(":memory:")


@pytest.fixture
def directory():
    d = InMemoryPropertyDirectory()
    d.add_definition(TaskDefinition(
        property_id=PROPERTY,
        label="Fresh Towels",
        staff_requirements="confirm time",
        host_escalation_criteria="safety risks, refunds, damage to the property",
        staff_id="S1",
        staff_name="Marie",
        staff_address=STAFF,
    ))
    d.add_definition(TaskDefinition(
        property_id=PROPERTY,
        label="Crib",
        staff_requirements="confirm time",
        guest_requirements="child age",
        staff_id="S1",
        staff_name="Marie",
        staff_address=STAFF,
    ))
    d.set_host(PROPERTY, HOST)
    return d


@pytest.fixture
def oracle():
    return SimulatorDecisionOracle()


@pytest.fixture
def notifier():
    return ConsoleNotifier(quiet=True)


@pytest.fixture
def engine(store, directory, oracle, notifier):
    return Engine(EngineConfig(
        store=store,
        directory=directory,
        oracle=oracle,
        notifier=notifier,
        max_retries=3,
        oracle_timeout=1,
        notifier_timeout=1,
    ))


@pytest.fixture
def make_event():
    ids = itertools.count(1)

    def _make(
        category: str = "Fresh Towels",
        text: str = "can I get towels tomorrow at 9am",
        requester: str = GUEST,
        property_id: str = PROPERTY,
        event_id: str | None = None,
    ) -> ClassificationEvent:
        return ClassificationEvent(
            source_event_id=event_id or f"evt-{next(ids)}",
            requester_address=requester,
            property_id=property_id,
            category=category,
            request_text=text,
        )

    return _make
