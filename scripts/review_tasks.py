#!/usr/bin/env python3
"""
Operator CLI: inspect tasks and intervene by hand.

Usage (from project root):
    python scripts/review_tasks.py                          # list open tasks
    python scripts/review_tasks.py list --unassigned        # tasks with no staff
    python scripts/review_tasks.py list --status Escalated  # filter by status
    python scripts/review_tasks.py show <id>                # task, thread and audit trail
    python scripts/review_tasks.py assign <id> <address> [staff_id] [name]
    python scripts/review_tasks.py complete <id>
    python scripts/review_tasks.py cancel <id> [reason]
    python scripts/review_tasks.py patch <id> field=value [field=value ...]

assign re-routes the task straight away, so it needs the same environment
as scripts/run.py (ANTHROPIC_API_KEY, NOTIFY_CHANNEL, ...).
"""

import asyncio
import os
import sys
import textwrap

# Allow running as `python scripts/review_tasks.py` from project root.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from taskflow.adapters.sqlite_task_store import SqliteTaskStore
from taskflow.domain.store import TaskFilters, format_thread
from taskflow.domain.task import Task, TaskStatus
from taskflow.errors import TaskflowError

DB_PATH = os.environ.get("TASKFLOW_DB_PATH", "data/taskflow.db")


def _wrap(text: str, width: int = 72, indent: str = "    ") -> str:
    return textwrap.fill(text, width=width, initial_indent=indent, subsequent_indent=indent)


def _build_engine():
    # imported here so list/show work without API credentials
    from run import build_engine

    engine, _ = build_engine()
    return engine


async def list_tasks(store: SqliteTaskStore, args: list[str]) -> None:
    filters = TaskFilters(unassigned="--unassigned" in args)
    if "--status" in args:
        filters.status = TaskStatus(args[args.index("--status") + 1])
    if "--property" in args:
        filters.property_id = args[args.index("--property") + 1]

    tasks = await store.list_tasks(filters)
    if filters.status is None:
        tasks = [t for t in tasks if t.is_open]
    if not tasks:
        print("No matching tasks.")
        return

    print(f"\n{'ID':<12}  {'Status':<15}  {'Holder':<6}  {'Property':<10}  {'Staff':<14}  Category")
    print("-" * 86)
    for t in tasks:
        staff = t.staff_name or t.staff_address or "(unassigned)"
        print(f"{t.id:<12}  {t.status.value:<15}  {t.action_holder.value:<6}  "
              f"{t.property_id:<10}  {staff[:14]:<14}  {t.category}")
    print()


async def show_task(store: SqliteTaskStore, task_id: str) -> None:
    task = await store.get_task(task_id)
    if task is None:
        archived = await store.get_archived(task_id)
        if archived:
            print(f"Task {task_id} was archived at {archived['archived_at']} "
                  f"({archived['status']}, {len(archived['message_chain'])} message(s)).")
        else:
            print(f"Task {task_id} not found.")
        return

    _print_task(task)
    thread = await store.thread(task)
    if thread:
        print("  Thread:")
        for line in format_thread(thread).splitlines():
            print(_wrap(line, indent="    "))
    print("\n  Audit trail:")
    for entry in await store.audit_trail(task_id):
        print(f"    {entry.created_at:%Y-%m-%d %H:%M}  {entry.kind:<18}  {entry.detail}")
    print()


def _print_task(task: Task) -> None:
    print(f"\n{'=' * 60}")
    print(f"  Task {task.id}  |  {task.category}  |  {task.status.value}")
    print(f"  Property: {task.property_id}  Booking: {task.booking_id or '-'}")
    print(f"  Guest: {task.requester_address}")
    print(f"  Staff: {task.staff_name or '-'} {task.staff_address or '(unassigned)'}")
    print(f"  Action holder: {task.action_holder.value} {task.action_holder_address or ''}")
    print(f"  Notified: {task.action_holder_notified}  Reply received: {task.response_received}"
          f"  Completion notice: {task.completion_sent}")
    if task.awaiting_assignment:
        print("  Waiting for an operator to assign staff")
    if task.escalation_reason:
        print(f"  Escalation: {task.escalation_reason}")
    if task.failure_count:
        print(f"  Failures: {task.failure_count}")
    print(f"  Created: {task.created_at}")
    print(f"{'=' * 60}")
    print(_wrap(task.request_text))
    print()


def _parse_fields(pairs: list[str]) -> dict[str, str | None]:
    fields: dict[str, str | None] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected field=value, got {pair!r}")
        fields[name.strip()] = value if value != "" else None
    return fields


async def main() -> None:
    args = sys.argv[1:]
    store = SqliteTaskStore(DB_PATH)

    if not args or args[0] == "list":
        await list_tasks(store, args[1:])
        return

    cmd = args[0]
    try:
        if cmd == "show" and len(args) >= 2:
            await show_task(store, args[1])
        elif cmd == "assign" and len(args) >= 3:
            engine = _build_engine()
            staff_id = args[3] if len(args) >= 4 else None
            name = args[4] if len(args) >= 5 else ""
            result = await engine.assign_staff(args[1], staff_id, args[2], name)
            print(f"Task {args[1]} assigned → {result.action}")
        elif cmd == "complete" and len(args) >= 2:
            task = await _build_engine().complete_task(args[1])
            print(f"Task {task.id} marked {task.status.value}.")
        elif cmd == "cancel" and len(args) >= 2:
            task = await _build_engine().cancel_task(args[1], " ".join(args[2:]))
            print(f"Task {task.id} marked {task.status.value}.")
        elif cmd == "patch" and len(args) >= 3:
            task = await _build_engine().patch_task(args[1], _parse_fields(args[2:]))
            _print_task(task)
        else:
            print(__doc__)
    except (TaskflowError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
