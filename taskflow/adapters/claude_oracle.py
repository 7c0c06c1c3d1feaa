"""
ClaudeDecisionOracle: DecisionOracle backed by the Claude API.

Prompts live in taskflow/prompts/*.txt and are the source of truth for the
judgement rules.  Every prompt asks for JSON that maps directly onto the
port's result types.
"""

import json
import os

import anthropic

from taskflow.domain.oracle import (
    DecisionOracle,
    MessageRequest,
    TriageRequest,
    TriageResult,
)
from taskflow.errors import OracleError
from taskflow.prompts import load_prompt


def _parse_json(raw: str) -> dict:
    raw = raw.strip()
    # Strip markdown code fences if the model wraps the JSON
    if raw.startswith("```"):
        raw = raw.split("```")[1]
        if raw.startswith("json"):
            raw = raw[4:]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise OracleError(f"oracle returned invalid JSON: {raw[:200]!r}") from exc
    if not isinstance(data, dict):
        raise OracleError(f"oracle returned {type(data).__name__}, expected an object")
    return data


def _string_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if str(v).strip()]


class ClaudeDecisionOracle(DecisionOracle):
    """Decision oracle backed by claude-haiku-4-5-20251001 (fast + cheap)."""

    def __init__(self, api_key: str | None = None, model: str = "claude-haiku-4-5-20251001"):
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key or os.environ["ANTHROPIC_API_KEY"]
        )
        self._model = model
        self._triage_prompt = load_prompt("triage")
        self._requirement_prompt = load_prompt("requirement_check")
        self._compose_prompt = load_prompt("compose_message")

    async def _ask(self, system: str, user_content: str, max_tokens: int = 512) -> dict:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user_content}],
            )
        except anthropic.APIError as exc:
            raise OracleError(f"claude request failed: {exc}") from exc
        return _parse_json(response.content[0].text)

    async def triage(self, request: TriageRequest) -> TriageResult:
        user_content = (
            f"Category: {request.category}\n"
            f"Host escalation criteria: {request.host_criteria or '(none)'}\n"
            f"Guest requirements: {request.guest_requirements or '(none)'}\n"
            f"Staff requirements: {request.staff_requirements or '(none)'}\n\n"
            f"Conversation so far:\n{request.thread or '(empty)'}\n\n"
            f"Latest guest message:\n{request.latest_message}"
        )
        data = await self._ask(self._triage_prompt, user_content, max_tokens=384)
        return TriageResult(
            host_needed=bool(data.get("host_needed", False)),
            host_reason=str(data.get("host_reason") or ""),
            guest_missing=_string_list(data.get("guest_missing")),
            staff_missing=_string_list(data.get("staff_missing")),
        )

    async def requirement_satisfied(self, requirements: str, thread: str) -> bool:
        user_content = (
            f"Requirements:\n{requirements or '(none stated)'}\n\n"
            f"Conversation thread:\n{thread or '(empty)'}"
        )
        data = await self._ask(self._requirement_prompt, user_content, max_tokens=256)
        if "satisfied" not in data:
            raise OracleError("requirement check reply has no 'satisfied' field")
        return bool(data["satisfied"])

    async def compose_message(self, request: MessageRequest) -> str:
        user_content = (
            f"Message kind: {request.kind.value}\n"
            f"Category: {request.category}\n"
            f"Guest request: {request.request_text}\n"
        )
        if request.recipient_name:
            user_content += f"Recipient name: {request.recipient_name}\n"
        if request.host_reason:
            user_content += f"Escalation reason: {request.host_reason}\n"
        if request.staff_requirements:
            user_content += f"Staff requirements: {request.staff_requirements}\n"
        if request.guest_requirements:
            user_content += f"Guest requirements: {request.guest_requirements}\n"
        if request.missing:
            user_content += "Still missing:\n"
            for item in request.missing:
                user_content += f"  - {item}\n"
        if request.thread:
            user_content += f"\nConversation so far:\n{request.thread}"

        data = await self._ask(self._compose_prompt, user_content)
        body = str(data.get("body") or "").strip()
        if not body:
            raise OracleError(f"compose_message({request.kind.value}) returned no body")
        return body
