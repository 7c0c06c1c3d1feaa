"""
DecisionOracle port: the external judgement service.

AI is used here and only here: the oracle reads requirement text and
conversation threads and answers with structured data.  The engine
operates on that data; it never interprets free text beyond the
completion/inability wording checks in domain/reply_language.py.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class MessageKind(str, Enum):
    HOST_ESCALATION = "HostEscalation"
    STAFF_INFO_REQUEST = "StaffInfoRequest"
    GUEST_INFO_REQUEST = "GuestInfoRequest"
    GUEST_SCHEDULED_UPDATE = "GuestScheduledUpdate"
    GUEST_COMPLETION_NOTICE = "GuestCompletionNotice"


@dataclass
class TriageRequest:
    category: str
    host_criteria: str
    guest_requirements: str
    staff_requirements: str
    thread: str
    latest_message: str


@dataclass
class TriageResult:
    """Structured output of triage  no prose, only data."""
    host_needed: bool
    host_reason: str = ""
    guest_missing: list[str] = field(default_factory=list)
    staff_missing: list[str] = field(default_factory=list)


@dataclass
class MessageRequest:
    """Everything the oracle needs to word one outbound message."""
    kind: MessageKind
    category: str
    request_text: str
    thread: str = ""
    recipient_name: str = ""
    staff_requirements: str = ""
    guest_requirements: str = ""
    host_reason: str = ""
    missing: list[str] = field(default_factory=list)


class DecisionOracle(ABC):
    """
    Port: three request/response judgements.

    Implementations may use an LLM (ClaudeDecisionOracle) or deterministic
    keyword matching (SimulatorDecisionOracle).  Both satisfy the same
    contract and raise OracleError when they cannot answer.
    """

    @abstractmethod
    async def triage(self, request: TriageRequest) -> TriageResult:
        """Decide whether the Host must be involved and what is still missing."""
        ...

    @abstractmethod
    async def requirement_satisfied(self, requirements: str, thread: str) -> bool:
        """True when the thread shows the stated requirements are met."""
        ...

    @abstractmethod
    async def compose_message(self, request: MessageRequest) -> str:
        """Word one outbound message.  Never empty."""
        ...
