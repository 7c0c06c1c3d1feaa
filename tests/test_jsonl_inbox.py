"""
JsonlEventInbox: incremental reads of the classifier's output file.
"""

import json

import pytest

from taskflow.adapters.jsonl_inbox import JsonlEventInbox


def _line(event_id: str, **overrides) -> str:
    data = {
        "source_event_id": event_id,
        "requester_address": "+15550001111",
        "property_id": "P1",
        "category": "Fresh Towels",
        "request_text": "towels please",
        "booking_id": None,
    }
    data.update(overrides)
    return json.dumps(data) + "\n"


@pytest.mark.asyncio
async def test_missing_file_yields_nothing(tmp_path):
    inbox = JsonlEventInbox(str(tmp_path / "events.jsonl"))
    assert await inbox.poll_events() == []


@pytest.mark.asyncio
async def test_only_new_lines_are_returned(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text(_line("e-1") + _line("e-2", booking_id="B-9"), encoding="utf-8")
    inbox = JsonlEventInbox(str(path))

    first = await inbox.poll_events()
    assert [e.source_event_id for e in first] == ["e-1", "e-2"]
    assert first[1].booking_id == "B-9"

    with path.open("a", encoding="utf-8") as f:
        f.write(_line("e-3", category="Crib"))
    second = await inbox.poll_events()
    assert [(e.source_event_id, e.category) for e in second] == [("e-3", "Crib")]
    assert await inbox.poll_events() == []


@pytest.mark.asyncio
async def test_partial_line_waits_for_completion(tmp_path):
    path = tmp_path / "events.jsonl"
    complete = _line("e-1")
    path.write_text(complete + complete.replace("e-1", "e-2")[:20], encoding="utf-8")
    inbox = JsonlEventInbox(str(path))

    assert [e.source_event_id for e in await inbox.poll_events()] == ["e-1"]

    path.write_text(complete + complete.replace("e-1", "e-2"), encoding="utf-8")
    assert [e.source_event_id for e in await inbox.poll_events()] == ["e-2"]


@pytest.mark.asyncio
async def test_bad_lines_are_skipped(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        "not json\n" + _line("e-1", category="") + "\n" + _line("e-2", request_text="crème brûlée"),
        encoding="utf-8",
    )
    inbox = JsonlEventInbox(str(path))

    events = await inbox.poll_events()

    assert [e.source_event_id for e in events] == ["e-2"]
    assert events[0].request_text == "crème brûlée"
