import asyncio
import itertools
from datetime import datetime, timezone

from taskflow.errors import TransportError

from .ports import InboundReply, Notifier, OutboundMessage, ReplySource


class ConsoleNotifier(Notifier, ReplySource):
    """
    Adapter: print to console, buffer replies in memory. For dev/testing.

    Test helpers:
        sent                 list of OutboundMessage, in send order
        fail_next(n)         make the next n sends raise TransportError
        simulate_reply(...)  queue a reply for poll_replies()
    """

    def __init__(self, quiet: bool = False, send_delay: float = 0):
        self.sent: list[OutboundMessage] = []
        self._pending: list[InboundReply] = []
        self._failures_left = 0
        self._quiet = quiet
        self._send_delay = send_delay
        self._ids = itertools.count(1)

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    async def send(self, to_address: str, body: str, metadata: dict) -> str:
        # Yield before delivering so concurrent senders interleave.
        await asyncio.sleep(self._send_delay)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise TransportError(f"console: simulated failure sending to {to_address}")

        transport_id = f"console-{next(self._ids)}"
        self.sent.append(OutboundMessage(to_address, body, dict(metadata)))

        if not self._quiet:
            print(f"\n{'=' * 60}")
            print(f"  TO: {to_address} ({metadata.get('role', '?')})")
            print(f"  TASK: {metadata.get('task_id', '-')}")
            print(f"  ID: {transport_id}")
            print(f"{'=' * 60}")
            print(body)
            print(f"{'=' * 60}\n")

        return transport_id

    def sent_to(self, to_address: str) -> list[OutboundMessage]:
        return [m for m in self.sent if m.to_address == to_address]

    async def poll_replies(self) -> list[InboundReply]:
        replies = self._pending.copy()
        self._pending.clear()
        return replies

    def simulate_reply(
        self,
        message_id: str,
        from_address: str,
        body: str,
        role: str = "Staff",
        property_id: str | None = None,
        staff_id: str | None = None,
        task_ref: str | None = None,
    ) -> InboundReply:
        """Call from tests or a dev CLI to simulate a staff or host reply."""
        reply = InboundReply(
            message_id=message_id,
            from_address=from_address,
            body=body,
            role=role,
            property_id=property_id,
            staff_id=staff_id,
            task_ref=task_ref,
            received_at=datetime.now(timezone.utc),
        )
        self._pending.append(reply)
        return reply
