"""
SimulatorDecisionOracle: deterministic keyword-based oracle for tests.

No LLM calls, no network.  Triage escalates on safety/money wording,
requirement checks accept a committed day or time, and composed messages
are fixed templates that name their kind.

Test helpers:
    script_triage(result)     return *result* from the next triage call
    script_satisfied(value)   return *value* from the next requirement check
    fail_next(n)              make the next n calls raise OracleError
    delay                     seconds every call sleeps (timeout tests)
    calls                     per-method call counter
    composed                  list of MessageRequest seen by compose_message
"""

import asyncio
import re
from collections import Counter

from taskflow.domain.oracle import (
    DecisionOracle,
    MessageKind,
    MessageRequest,
    TriageRequest,
    TriageResult,
)
from taskflow.domain.reply_language import indicates_inability, is_explicit_completion
from taskflow.errors import OracleError

_HOST_KEYWORDS = {
    "SafetyRisk": [
        r"\bfire\b", r"\bsmoke\b", r"\bgas\b", r"\bleak(?:ing)?\b", r"\bflood",
        r"\bspark", r"\binjur", r"\bunsafe\b", r"\bfuite\b",
    ],
    "Refund": [r"\brefund\b", r"\bcompensat", r"\bmoney back\b", r"\bremboursement\b"],
    "Damage": [r"\bbroke(?:n)?\b", r"\bdamage", r"\bcass[ée]"],
}

_COMMITMENT_PATTERNS = [
    r"\btoday\b", r"\btomorrow\b", r"\btonight\b", r"\bthis (?:morning|afternoon|evening)\b",
    r"\bmonday\b", r"\btuesday\b", r"\bwednesday\b", r"\bthursday\b", r"\bfriday\b",
    r"\bsaturday\b", r"\bsunday\b",
    r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b", r"\b\d{1,2}[h:]\d{2}\b",
    r"\bin \d+ (?:minutes?|hours?)\b", r"\bdemain\b", r"\baujourd'hui\b",
]

_TEMPLATES = {
    MessageKind.HOST_ESCALATION: (
        "A guest request needs your decision ({reason}): {request}"
    ),
    MessageKind.STAFF_INFO_REQUEST: (
        "New {category} request from a guest: {request}. Please confirm: {missing}"
    ),
    MessageKind.GUEST_INFO_REQUEST: (
        "Thanks for your {category} request! Could you tell us: {missing}"
    ),
    MessageKind.GUEST_SCHEDULED_UPDATE: (
        "Good news, your {category} request has been scheduled."
    ),
    MessageKind.GUEST_COMPLETION_NOTICE: (
        "Your {category} request has been taken care of. Let us know if you need anything else."
    ),
}


def _match_any(text: str, patterns: list[str]) -> bool:
    lower = text.lower()
    return any(re.search(p, lower) for p in patterns)


def _items(requirements: str) -> list[str]:
    return [r.strip() for r in re.split(r"[,;\n]", requirements) if r.strip()]


def _last_inbound(thread: str) -> str:
    for line in reversed(thread.splitlines()):
        parts = line.split(" - ", 3)
        if len(parts) == 4 and parts[2] == "inbound" and parts[1] in ("Staff", "Host"):
            return parts[3]
    return ""


class SimulatorDecisionOracle(DecisionOracle):

    def __init__(self, delay: float = 0):
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self.composed: list[MessageRequest] = []
        self._triage_script: list[TriageResult] = []
        self._satisfied_script: list[bool] = []
        self._failures_left = 0

    def script_triage(self, result: TriageResult) -> None:
        self._triage_script.append(result)

    def script_satisfied(self, value: bool) -> None:
        self._satisfied_script.append(value)

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise OracleError(f"simulator: injected failure in {name}")

    async def triage(self, request: TriageRequest) -> TriageResult:
        await self._enter("triage")
        if self._triage_script:
            return self._triage_script.pop(0)

        text = f"{request.latest_message}\n{request.category}"
        for reason, patterns in _HOST_KEYWORDS.items():
            if _match_any(text, patterns):
                return TriageResult(host_needed=True, host_reason=reason)

        return TriageResult(
            host_needed=False,
            guest_missing=_items(request.guest_requirements),
            staff_missing=_items(request.staff_requirements),
        )

    async def requirement_satisfied(self, requirements: str, thread: str) -> bool:
        await self._enter("requirement_satisfied")
        if self._satisfied_script:
            return self._satisfied_script.pop(0)

        reply = _last_inbound(thread)
        if not reply or indicates_inability(reply):
            return False
        return is_explicit_completion(reply) or _match_any(reply, _COMMITMENT_PATTERNS)

    async def compose_message(self, request: MessageRequest) -> str:
        await self._enter("compose_message")
        self.composed.append(request)
        missing = ", ".join(request.missing) or "when you can take care of it"
        return _TEMPLATES[request.kind].format(
            category=request.category,
            request=request.request_text,
            reason=request.host_reason or "needs approval",
            missing=missing,
        )
