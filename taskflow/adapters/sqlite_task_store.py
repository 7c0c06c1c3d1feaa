"""
SQLite adapter for TaskStore.

Use ":memory:" for tests, a file path for production.

Claims are single conditional UPDATEs; the caller learns whether it won
from the cursor's rowcount.  A partial unique index keeps at most one
open task per (requester_address, property_id, category).
"""

import json
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from taskflow.domain.store import AuditEntry, TaskFilters, TaskStore, ThreadMessage
from taskflow.domain.task import (
    ActionHolder,
    Task,
    TaskStatus,
    check_consistency,
    check_transition,
)
from taskflow.errors import TaskflowError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    category        TEXT NOT NULL,
    category_key    TEXT NOT NULL,
    request_text    TEXT NOT NULL DEFAULT '',
    property_id     TEXT NOT NULL,
    booking_id      TEXT,
    requester_address TEXT NOT NULL,
    source_event_id TEXT NOT NULL,
    staff_id        TEXT,
    staff_name      TEXT NOT NULL DEFAULT '',
    staff_address   TEXT,
    staff_requirements TEXT NOT NULL DEFAULT '',
    guest_requirements TEXT NOT NULL DEFAULT '',
    host_escalation_criteria TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL,
    action_holder   TEXT NOT NULL,
    action_holder_address TEXT,
    action_holder_notified INTEGER NOT NULL DEFAULT 0,
    response_received INTEGER NOT NULL DEFAULT 0,
    completion_notified INTEGER NOT NULL DEFAULT 0,
    completion_sent INTEGER NOT NULL DEFAULT 0,
    guest_info_requested INTEGER NOT NULL DEFAULT 0,
    awaiting_assignment INTEGER NOT NULL DEFAULT 0,
    host_escalation_needed INTEGER NOT NULL DEFAULT 0,
    escalation_reason TEXT NOT NULL DEFAULT '',
    missing_requirements TEXT NOT NULL DEFAULT '',
    last_outbound_message TEXT NOT NULL DEFAULT '',
    failure_count   INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    scheduled_at    TEXT,
    completed_at    TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS one_open_task_per_topic
    ON tasks (requester_address, property_id, category_key)
    WHERE status NOT IN ('Completed', 'Cancelled');

CREATE TABLE IF NOT EXISTS task_messages (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id     TEXT NOT NULL,
    message_id  TEXT NOT NULL,
    direction   TEXT NOT NULL,
    role        TEXT NOT NULL,
    body        TEXT NOT NULL,
    booking_id  TEXT,
    requester_address TEXT,
    created_at  TEXT NOT NULL,
    UNIQUE (task_id, message_id)
);

CREATE TABLE IF NOT EXISTS source_events (
    event_id    TEXT PRIMARY KEY,
    task_id     TEXT,
    outcome     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_audit (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id     TEXT NOT NULL,
    kind        TEXT NOT NULL,
    detail      TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_archive (
    task_id     TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    archived_at TEXT NOT NULL
);
"""

_TERMINAL = ("Completed", "Cancelled")

# Columns callers may set through transition() / update_fields().
_UPDATABLE = {
    "category", "request_text", "booking_id",
    "staff_id", "staff_name", "staff_address",
    "staff_requirements", "guest_requirements", "host_escalation_criteria",
    "action_holder_address", "action_holder_notified", "response_received",
    "guest_info_requested", "awaiting_assignment",
    "host_escalation_needed", "escalation_reason",
    "missing_requirements", "last_outbound_message", "failure_count",
    "scheduled_at", "completed_at",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str | None) -> datetime | None:
    return datetime.fromisoformat(s) if s else None


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SqliteTaskStore(TaskStore):

    def __init__(self, db_path: str = "taskflow.db"):
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)

    # -- source events -------------------------------------------------------

    async def consume_source_event(
        self, event_id: str, outcome: str, task_id: str | None = None
    ) -> bool:
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO source_events (event_id, task_id, outcome, created_at)"
            " VALUES (?, ?, ?, ?)",
            (event_id, task_id, outcome, _now()),
        )
        self._conn.commit()
        return cur.rowcount == 1

    async def source_event_outcome(self, event_id: str) -> tuple[str, str | None] | None:
        row = self._conn.execute(
            "SELECT outcome, task_id FROM source_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        if not row:
            return None
        return row["outcome"], row["task_id"]

    # -- task records --------------------------------------------------------

    async def insert_task(self, task: Task) -> bool:
        check_consistency(task.status, task.action_holder)
        try:
            self._conn.execute(
                "INSERT INTO tasks"
                " (id, category, category_key, request_text, property_id, booking_id,"
                "  requester_address, source_event_id, staff_id, staff_name, staff_address,"
                "  staff_requirements, guest_requirements, host_escalation_criteria,"
                "  status, action_holder, action_holder_address, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (task.id, task.category, task.category.strip().lower(), task.request_text,
                 task.property_id, task.booking_id, task.requester_address,
                 task.source_event_id, task.staff_id, task.staff_name, task.staff_address,
                 task.staff_requirements, task.guest_requirements,
                 task.host_escalation_criteria, task.status.value, task.action_holder.value,
                 task.action_holder_address, task.created_at.isoformat(),
                 task.updated_at.isoformat()),
            )
        except sqlite3.IntegrityError:
            self._conn.rollback()
            return False
        self._conn.commit()
        return True

    async def find_open_task(
        self, requester_address: str, property_id: str, category: str
    ) -> Task | None:
        row = self._conn.execute(
            "SELECT * FROM tasks WHERE requester_address = ? AND property_id = ?"
            " AND category_key = ? AND status NOT IN (?, ?)"
            " ORDER BY seq DESC LIMIT 1",
            (requester_address, property_id, category.strip().lower(), *_TERMINAL),
        ).fetchone()
        return self._row_to_task(row) if row else None

    async def get_task(self, task_id: str) -> Task | None:
        row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    async def list_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        filters = filters or TaskFilters()
        sql = "SELECT * FROM tasks WHERE 1=1"
        params: list[Any] = []
        if filters.property_id:
            sql += " AND property_id = ?"
            params.append(filters.property_id)
        if filters.status:
            sql += " AND status = ?"
            params.append(filters.status.value)
        if filters.action_holder:
            sql += " AND action_holder = ?"
            params.append(filters.action_holder.value)
        if filters.unassigned:
            sql += " AND (staff_address IS NULL OR staff_address = '')"
        sql += " ORDER BY seq DESC"
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    async def open_tasks(self) -> list[Task]:
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE status NOT IN (?, ?) ORDER BY seq DESC", _TERMINAL
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # -- orchestration candidates --------------------------------------------

    async def routing_candidates(self) -> list[Task]:
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE status NOT IN (?, ?)"
            " AND completion_notified = 0 AND action_holder_notified = 0"
            " ORDER BY seq",
            _TERMINAL,
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    async def completion_candidates(self) -> list[Task]:
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE status = 'Completed' AND completion_notified = 0"
            " ORDER BY seq"
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    async def archive_candidates(self) -> list[Task]:
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE (status = 'Completed' AND completion_sent = 1)"
            " OR status = 'Cancelled' ORDER BY seq"
        ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # -- claims --------------------------------------------------------------

    async def claim_notification(self, task_id: str, expected_status: TaskStatus) -> bool:
        cur = self._conn.execute(
            "UPDATE tasks SET action_holder_notified = 1, updated_at = ?"
            " WHERE id = ? AND action_holder_notified = 0 AND status = ?"
            " AND completion_notified = 0",
            (_now(), task_id, expected_status.value),
        )
        self._conn.commit()
        return cur.rowcount == 1

    async def release_notification(self, task_id: str) -> None:
        self._conn.execute(
            "UPDATE tasks SET action_holder_notified = 0, updated_at = ? WHERE id = ?",
            (_now(), task_id),
        )
        self._conn.commit()

    async def record_dispatch(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        status: TaskStatus,
        action_holder: ActionHolder,
        address: str,
        body: str,
        transport_id: str,
        role: str,
        missing_requirements: str = "",
        host_escalation_needed: bool = False,
        escalation_reason: str | None = None,
    ) -> bool:
        check_consistency(status, action_holder)
        now = _now()
        with self._conn:
            cur = self._conn.execute(
                "UPDATE tasks SET status = ?, action_holder = ?, action_holder_address = ?,"
                " last_outbound_message = ?, response_received = 0,"
                " missing_requirements = ?,"
                " host_escalation_needed = MAX(host_escalation_needed, ?),"
                " escalation_reason = COALESCE(?, escalation_reason),"
                " failure_count = 0, updated_at = ?"
                " WHERE id = ? AND action_holder_notified = 1 AND status = ?",
                (status.value, action_holder.value, address, body, missing_requirements,
                 int(host_escalation_needed), escalation_reason, now, task_id,
                 expected_status.value),
            )
            if cur.rowcount != 1:
                return False
            self._insert_message(task_id, transport_id, "outbound", role, body, now)
        return True

    async def claim_completion_notice(self, task_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE tasks SET completion_notified = 1, updated_at = ?"
            " WHERE id = ? AND completion_notified = 0 AND status = 'Completed'",
            (_now(), task_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    async def record_completion_notice(self, task_id: str, transport_id: str, body: str) -> bool:
        now = _now()
        with self._conn:
            cur = self._conn.execute(
                "UPDATE tasks SET completion_sent = 1, updated_at = ?"
                " WHERE id = ? AND completion_notified = 1 AND completion_sent = 0",
                (now, task_id),
            )
            if cur.rowcount != 1:
                return False
            self._insert_message(task_id, transport_id, "outbound", "Guest", body, now)
        return True

    async def release_completion_notice(self, task_id: str) -> None:
        self._conn.execute(
            "UPDATE tasks SET completion_notified = 0, updated_at = ?"
            " WHERE id = ? AND completion_sent = 0",
            (_now(), task_id),
        )
        self._conn.commit()

    async def claim_guest_info_request(self, task_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE tasks SET guest_info_requested = 1, updated_at = ?"
            " WHERE id = ? AND guest_info_requested = 0 AND status NOT IN (?, ?)",
            (_now(), task_id, *_TERMINAL),
        )
        self._conn.commit()
        return cur.rowcount == 1

    async def release_guest_info_request(self, task_id: str) -> None:
        self._conn.execute(
            "UPDATE tasks SET guest_info_requested = 0, updated_at = ? WHERE id = ?",
            (_now(), task_id),
        )
        self._conn.commit()

    # -- messages ------------------------------------------------------------

    async def append_message(
        self,
        task_id: str,
        message_id: str,
        direction: str,
        role: str,
        body: str,
    ) -> bool:
        with self._conn:
            inserted = self._insert_message(task_id, message_id, direction, role, body, _now())
        return inserted

    def _insert_message(
        self, task_id: str, message_id: str, direction: str, role: str, body: str, now: str
    ) -> bool:
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO task_messages"
            " (task_id, message_id, direction, role, body, booking_id, requester_address, created_at)"
            " SELECT ?, ?, ?, ?, ?, booking_id, requester_address, ? FROM tasks WHERE id = ?",
            (task_id, message_id, direction, role, body, now, task_id),
        )
        return cur.rowcount == 1

    async def thread(self, task: Task) -> list[ThreadMessage]:
        rows = self._conn.execute(
            "SELECT * FROM task_messages WHERE task_id = ?"
            " OR (booking_id IS NOT NULL AND booking_id = ?)"
            " OR requester_address = ?"
            " ORDER BY seq DESC LIMIT 30",
            (task.id, task.booking_id, task.requester_address),
        ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    # -- transitions ---------------------------------------------------------

    async def apply_reply(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        action_holder: ActionHolder,
        message_id: str,
        role: str,
        body: str,
        rearm: bool,
        escalation_reason: str | None = None,
    ) -> bool:
        check_transition(expected_status, new_status)
        check_consistency(new_status, action_holder)
        now = _now()
        try:
            with self._conn:
                self._apply_reply_rows(
                    task_id, expected_status, new_status, action_holder,
                    message_id, role, body, rearm, escalation_reason, now,
                )
        except _Conflict:
            return False
        return True

    def _apply_reply_rows(
        self, task_id, expected_status, new_status, action_holder,
        message_id, role, body, rearm, escalation_reason, now,
    ) -> None:
        if not self._insert_message(task_id, message_id, "inbound", role, body, now):
            raise _Conflict()
        sql = (
            "UPDATE tasks SET status = ?, action_holder = ?, response_received = 1,"
            " escalation_reason = COALESCE(?, escalation_reason), updated_at = ?"
        )
        params: list[Any] = [new_status.value, action_holder.value, escalation_reason, now]
        if rearm:
            sql += ", action_holder_notified = 0"
        if new_status == TaskStatus.SCHEDULED:
            sql += ", scheduled_at = COALESCE(scheduled_at, ?)"
            params.append(now)
        if new_status == TaskStatus.COMPLETED:
            sql += ", completed_at = COALESCE(completed_at, ?)"
            params.append(now)
        sql += " WHERE id = ? AND status = ?"
        params += [task_id, expected_status.value]
        cur = self._conn.execute(sql, params)
        if cur.rowcount != 1:
            # the chain entry is rolled back with the failed move
            raise _Conflict()

    async def transition(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        action_holder: ActionHolder,
        **fields: Any,
    ) -> bool:
        check_transition(expected_status, new_status)
        check_consistency(new_status, action_holder)
        assignments, params = self._assignments(fields)
        sql = "UPDATE tasks SET status = ?, action_holder = ?, updated_at = ?"
        all_params: list[Any] = [new_status.value, action_holder.value, _now()]
        if assignments:
            sql += ", " + ", ".join(assignments)
            all_params += params
        sql += " WHERE id = ? AND status = ?"
        all_params += [task_id, expected_status.value]
        cur = self._execute_update(sql, all_params)
        return cur.rowcount == 1

    async def update_fields(self, task_id: str, **fields: Any) -> None:
        assignments, params = self._assignments(fields)
        if not assignments:
            return
        self._execute_update(
            f"UPDATE tasks SET {', '.join(assignments)}, updated_at = ? WHERE id = ?",
            [*params, _now(), task_id],
        )

    def _execute_update(self, sql: str, params: list[Any]) -> sqlite3.Cursor:
        try:
            cur = self._conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise TaskflowError(f"another open task already covers this topic: {exc}") from exc
        self._conn.commit()
        return cur

    @staticmethod
    def _assignments(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task columns: {sorted(unknown)}")
        if "category" in fields:
            fields = {**fields, "category_key": str(fields["category"]).strip().lower()}
        names = sorted(fields)
        return [f"{n} = ?" for n in names], [_to_db(fields[n]) for n in names]

    # -- retries and audit ---------------------------------------------------

    async def record_failure(self, task_id: str) -> int:
        self._conn.execute(
            "UPDATE tasks SET failure_count = failure_count + 1, updated_at = ? WHERE id = ?",
            (_now(), task_id),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT failure_count FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return row["failure_count"] if row else 0

    async def audit(self, task_id: str, kind: str, detail: str) -> None:
        self._conn.execute(
            "INSERT INTO task_audit (task_id, kind, detail, created_at) VALUES (?, ?, ?, ?)",
            (task_id, kind, detail, _now()),
        )
        self._conn.commit()

    async def audit_trail(self, task_id: str) -> list[AuditEntry]:
        rows = self._conn.execute(
            "SELECT * FROM task_audit WHERE task_id = ? ORDER BY seq", (task_id,)
        ).fetchall()
        return [
            AuditEntry(
                task_id=r["task_id"],
                kind=r["kind"],
                detail=r["detail"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in rows
        ]

    # -- archive -------------------------------------------------------------

    async def archive(self, task_id: str) -> bool:
        with self._conn:
            row = self._conn.execute(
                "SELECT * FROM tasks WHERE id = ?"
                " AND (status = 'Cancelled' OR (status = 'Completed' AND completion_sent = 1))",
                (task_id,),
            ).fetchone()
            if not row:
                return False
            payload = dict(row)
            payload.pop("seq", None)
            payload["messages"] = [
                dict(m) for m in self._conn.execute(
                    "SELECT message_id, direction, role, body, created_at"
                    " FROM task_messages WHERE task_id = ? ORDER BY seq",
                    (task_id,),
                ).fetchall()
            ]
            payload["message_chain"] = [m["message_id"] for m in payload["messages"]]
            payload["linked_source_events"] = self._linked_events(task_id)
            self._conn.execute(
                "INSERT INTO task_archive (task_id, payload, archived_at) VALUES (?, ?, ?)",
                (task_id, json.dumps(payload), _now()),
            )
            self._conn.execute("DELETE FROM task_messages WHERE task_id = ?", (task_id,))
            self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return True

    async def get_archived(self, task_id: str) -> dict | None:
        row = self._conn.execute(
            "SELECT payload, archived_at FROM task_archive WHERE task_id = ?", (task_id,)
        ).fetchone()
        if not row:
            return None
        payload = json.loads(row["payload"])
        payload["archived_at"] = row["archived_at"]
        return payload

    # -- row mapping ---------------------------------------------------------

    def _linked_events(self, task_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT event_id FROM source_events WHERE task_id = ? ORDER BY rowid",
            (task_id,),
        ).fetchall()
        return [r["event_id"] for r in rows]

    def _row_to_task(self, row) -> Task:
        chain = self._conn.execute(
            "SELECT message_id FROM task_messages WHERE task_id = ? ORDER BY seq",
            (row["id"],),
        ).fetchall()
        return Task(
            id=row["id"],
            category=row["category"],
            request_text=row["request_text"],
            property_id=row["property_id"],
            requester_address=row["requester_address"],
            source_event_id=row["source_event_id"],
            status=TaskStatus(row["status"]),
            action_holder=ActionHolder(row["action_holder"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            booking_id=row["booking_id"],
            staff_id=row["staff_id"],
            staff_name=row["staff_name"],
            staff_address=row["staff_address"],
            staff_requirements=row["staff_requirements"],
            guest_requirements=row["guest_requirements"],
            host_escalation_criteria=row["host_escalation_criteria"],
            action_holder_address=row["action_holder_address"],
            action_holder_notified=bool(row["action_holder_notified"]),
            response_received=bool(row["response_received"]),
            completion_notified=bool(row["completion_notified"]),
            completion_sent=bool(row["completion_sent"]),
            guest_info_requested=bool(row["guest_info_requested"]),
            awaiting_assignment=bool(row["awaiting_assignment"]),
            host_escalation_needed=bool(row["host_escalation_needed"]),
            escalation_reason=row["escalation_reason"],
            missing_requirements=row["missing_requirements"],
            last_outbound_message=row["last_outbound_message"],
            failure_count=row["failure_count"],
            message_chain=[c["message_id"] for c in chain],
            linked_source_events=self._linked_events(row["id"]),
            scheduled_at=_parse_dt(row["scheduled_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )

    @staticmethod
    def _row_to_message(row) -> ThreadMessage:
        return ThreadMessage(
            message_id=row["message_id"],
            task_id=row["task_id"],
            direction=row["direction"],
            role=row["role"],
            body=row["body"],
            created_at=_parse_dt(row["created_at"]),
        )


class _Conflict(Exception):
    """Raised inside a transaction to roll it back."""
