"""
JsonlEventInbox: classification events appended to a JSON-lines file.

The upstream classifier appends one object per line:

    {"source_event_id": "...", "requester_address": "...", "property_id": "...",
     "category": "...", "request_text": "...", "booking_id": null}

Only lines added since the previous poll are returned.  After a restart the
whole file is read again; events already consumed are no-ops for the engine.
"""

import json
import logging
from pathlib import Path

from taskflow.communication.ports import ClassificationSource
from taskflow.domain.task import ClassificationEvent

log = logging.getLogger(__name__)

_REQUIRED = ("source_event_id", "requester_address", "property_id", "category")


class JsonlEventInbox(ClassificationSource):

    def __init__(self, path: str):
        self._path = Path(path)
        self._offset = 0

    async def poll_events(self) -> list[ClassificationEvent]:
        if not self._path.exists():
            return []

        with self._path.open("rb") as f:
            f.seek(self._offset)
            raw = f.readlines()
        # leave a partially written last line for the next poll
        if raw and not raw[-1].endswith(b"\n"):
            raw.pop()
        self._offset += sum(len(line) for line in raw)
        lines = [line.decode("utf-8", errors="replace") for line in raw]

        events = []
        for line in lines:
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                log.warning("inbox %s: skipping malformed line: %s", self._path, exc)
                continue
            missing = [k for k in _REQUIRED if not data.get(k)]
            if missing:
                log.warning("inbox %s: event missing %s, skipped", self._path, missing)
                continue
            events.append(ClassificationEvent(
                source_event_id=str(data["source_event_id"]),
                requester_address=data["requester_address"],
                property_id=str(data["property_id"]),
                category=data["category"],
                request_text=data.get("request_text", ""),
                booking_id=data.get("booking_id"),
            ))
        return events
