"""
SQLite adapter for PropertyDirectory.

Task definitions are keyed by (property_id, label); the Host address is one
row per property.  The engine only reads; add_definition() and set_host()
are for the operator CLI and tests.
"""

import sqlite3

from taskflow.domain.directory import PropertyDirectory
from taskflow.domain.task import TaskDefinition

_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_definitions (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    property_id     TEXT NOT NULL,
    label           TEXT NOT NULL,
    staff_requirements TEXT NOT NULL DEFAULT '',
    guest_requirements TEXT NOT NULL DEFAULT '',
    host_escalation_criteria TEXT NOT NULL DEFAULT '',
    staff_id        TEXT,
    staff_name      TEXT NOT NULL DEFAULT '',
    staff_address   TEXT,
    UNIQUE (property_id, label)
);

CREATE TABLE IF NOT EXISTS property_hosts (
    property_id     TEXT PRIMARY KEY,
    host_address    TEXT NOT NULL
);
"""


class SqlitePropertyDirectory(PropertyDirectory):

    def __init__(self, db_path: str = "taskflow.db"):
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)

    async def definitions(self, property_id: str) -> list[TaskDefinition]:
        rows = self._conn.execute(
            "SELECT * FROM task_definitions WHERE property_id = ? ORDER BY seq",
            (property_id,),
        ).fetchall()
        return [
            TaskDefinition(
                property_id=r["property_id"],
                label=r["label"],
                staff_requirements=r["staff_requirements"],
                guest_requirements=r["guest_requirements"],
                host_escalation_criteria=r["host_escalation_criteria"],
                staff_id=r["staff_id"],
                staff_name=r["staff_name"],
                staff_address=r["staff_address"],
            )
            for r in rows
        ]

    async def host_address(self, property_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT host_address FROM property_hosts WHERE property_id = ?",
            (property_id,),
        ).fetchone()
        return row["host_address"] if row else None

    def add_definition(self, definition: TaskDefinition) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO task_definitions"
            " (property_id, label, staff_requirements, guest_requirements,"
            "  host_escalation_criteria, staff_id, staff_name, staff_address)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (definition.property_id, definition.label, definition.staff_requirements,
             definition.guest_requirements, definition.host_escalation_criteria,
             definition.staff_id, definition.staff_name, definition.staff_address),
        )
        self._conn.commit()

    def set_host(self, property_id: str, host_address: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO property_hosts (property_id, host_address) VALUES (?, ?)",
            (property_id, host_address),
        )
        self._conn.commit()
