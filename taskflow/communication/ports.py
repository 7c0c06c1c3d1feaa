from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from taskflow.domain.task import ClassificationEvent


@dataclass
class OutboundMessage:
    """What a notifier was asked to deliver.  Kept by simulators for inspection."""

    to_address: str
    body: str
    metadata: dict = field(default_factory=dict)


@dataclass
class InboundReply:
    """A normalized reply from Staff or Host, as produced by webhook parsing."""

    message_id: str
    from_address: str
    body: str
    role: str = "Staff"  # "Staff" or "Host"
    property_id: str | None = None
    staff_id: str | None = None
    task_ref: str | None = None  # task id echoed back by the responder, if any
    received_at: datetime | None = None


class Notifier(ABC):
    """
    Port: how we deliver messages to guests, staff and hosts.

    The engine depends ONLY on this interface.
    It doesn't know or care whether messages go via WhatsApp,
    email, or the console.
    """

    @abstractmethod
    async def send(self, to_address: str, body: str, metadata: dict) -> str:
        """
        Deliver one message.
        Returns the transport's id for it (Twilio SID, email Message-ID, ...).
        Raises TransportError when delivery fails.
        """
        ...


class ReplySource(ABC):
    """Port: channels we poll for replies (email inbox, console buffer)."""

    @abstractmethod
    async def poll_replies(self) -> list[InboundReply]:
        """
        Check for new replies from staff or hosts.
        Returns all unprocessed replies since last poll.
        """
        ...


class ClassificationSource(ABC):
    """Port: where classified guest requests come from (upstream classifier output)."""

    @abstractmethod
    async def poll_events(self) -> list[ClassificationEvent]:
        """Return classification events that arrived since the last poll."""
        ...
