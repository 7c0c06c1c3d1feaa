"""
Local process runner for the taskflow engine.

Every POLL_INTERVAL seconds: read new classification events from the
inbox file, apply staff/host replies from the notify channel, then run
one orchestration pass (route, completion notices, archive).

Usage:
    source .env && python scripts/run.py

Environment variables (all optional unless noted):
    ANTHROPIC_API_KEY          - Anthropic/Claude API key (required)
    TASKFLOW_DB_PATH           - SQLite database path (default: data/taskflow.db)
    TASKFLOW_INBOX             - JSON-lines file of classification events
                                 (default: data/events.jsonl)
    NOTIFY_CHANNEL             - "console", "email" or "whatsapp" (default: console)
    POLL_INTERVAL              - seconds between cycles (default: 30)
    MAX_RETRIES                - failures before a task is escalated (default: 3)
    ORACLE_TIMEOUT             - seconds per oracle call (default: 30)
    NOTIFIER_TIMEOUT           - seconds per send (default: 15)
    CATEGORY_DENYLIST          - e.g. "exact:other,contains:wifi" (default: built-in list)
    CATEGORY_DENYLIST_VERSION  - label for the configured denylist

    # Email (only when NOTIFY_CHANNEL=email)
    EMAIL_SMTP_HOST, EMAIL_SMTP_PORT, EMAIL_USER, EMAIL_PASSWORD
    EMAIL_IMAP_HOST, EMAIL_IMAP_PORT, HOST_EMAILS

    # WhatsApp (only when NOTIFY_CHANNEL=whatsapp)
    TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_WHATSAPP_NUMBER
"""

import asyncio
import logging
import os
import sys

# Make sure project root is on sys.path when run as a script
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from taskflow.adapters.claude_oracle import ClaudeDecisionOracle
from taskflow.adapters.jsonl_inbox import JsonlEventInbox
from taskflow.adapters.sqlite_directory import SqlitePropertyDirectory
from taskflow.adapters.sqlite_task_store import SqliteTaskStore
from taskflow.communication.factory import create_notifier
from taskflow.communication.ports import Notifier, ReplySource
from taskflow.daemon import ReplyBacklog, poll_once
from taskflow.domain.denylist import DEFAULT_DENYLIST, CategoryDenylist
from taskflow.engine import Engine, EngineConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-7s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        print(f"ERROR: environment variable {name!r} is not set.", file=sys.stderr)
        sys.exit(1)
    return value


def load_denylist() -> CategoryDenylist:
    text = os.environ.get("CATEGORY_DENYLIST")
    if not text:
        return DEFAULT_DENYLIST
    return CategoryDenylist.parse(
        text, version=os.environ.get("CATEGORY_DENYLIST_VERSION", "env")
    )


def build_engine() -> tuple[Engine, Notifier]:
    api_key = _require_env("ANTHROPIC_API_KEY")
    db_path = os.environ.get("TASKFLOW_DB_PATH", "data/taskflow.db")
    if os.path.dirname(db_path):
        os.makedirs(os.path.dirname(db_path), exist_ok=True)

    notifier = create_notifier()
    config = EngineConfig(
        store=SqliteTaskStore(db_path=db_path),
        directory=SqlitePropertyDirectory(db_path=db_path),
        oracle=ClaudeDecisionOracle(api_key=api_key),
        notifier=notifier,
        denylist=load_denylist(),
        max_retries=int(os.environ.get("MAX_RETRIES", "3")),
        oracle_timeout=float(os.environ.get("ORACLE_TIMEOUT", "30")),
        notifier_timeout=float(os.environ.get("NOTIFIER_TIMEOUT", "15")),
    )
    return Engine(config), notifier


async def main() -> None:
    poll_interval = int(os.environ.get("POLL_INTERVAL", "30"))
    inbox_path = os.environ.get("TASKFLOW_INBOX", "data/events.jsonl")

    engine, notifier = build_engine()
    events = JsonlEventInbox(inbox_path)
    replies = [notifier] if isinstance(notifier, ReplySource) else []
    backlog = ReplyBacklog(max_attempts=int(os.environ.get("MAX_RETRIES", "3")))

    log.info(
        "Daemon started: channel=%s  inbox=%s  interval=%ds",
        type(notifier).__name__, inbox_path, poll_interval,
    )

    while True:
        await poll_once(engine, events=events, replies=replies, backlog=backlog)
        log.debug("Sleeping %ds …", poll_interval)
        await asyncio.sleep(poll_interval)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Daemon stopped.")
