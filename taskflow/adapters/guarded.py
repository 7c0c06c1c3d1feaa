"""
Timeout and error-normalizing wrappers for the two blocking collaborators.

Components only catch OracleError and TransportError.  These wrappers make
that true whatever the underlying client raises, and bound every call with
asyncio.wait_for so one slow call cannot stall a whole pass.
"""

import asyncio
import logging

from taskflow.communication.ports import Notifier
from taskflow.domain.oracle import (
    DecisionOracle,
    MessageRequest,
    TriageRequest,
    TriageResult,
)
from taskflow.errors import OracleError, OracleTimeout, TransportError

log = logging.getLogger(__name__)


class GuardedOracle(DecisionOracle):

    def __init__(self, inner: DecisionOracle, timeout: float = 30):
        self.inner = inner
        self.timeout = timeout

    async def _call(self, name: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            log.warning("oracle %s timed out after %ss", name, self.timeout)
            raise OracleTimeout(f"{name} timed out after {self.timeout}s") from exc
        except OracleError:
            raise
        except Exception as exc:
            log.warning("oracle %s failed: %s", name, exc)
            raise OracleError(f"{name} failed: {exc}") from exc

    async def triage(self, request: TriageRequest) -> TriageResult:
        return await self._call("triage", self.inner.triage(request))

    async def requirement_satisfied(self, requirements: str, thread: str) -> bool:
        return await self._call(
            "requirement_satisfied", self.inner.requirement_satisfied(requirements, thread)
        )

    async def compose_message(self, request: MessageRequest) -> str:
        body = await self._call(
            f"compose_message({request.kind.value})", self.inner.compose_message(request)
        )
        if not body or not body.strip():
            raise OracleError(f"compose_message({request.kind.value}) returned an empty body")
        return body


class GuardedNotifier(Notifier):

    def __init__(self, inner: Notifier, timeout: float = 15):
        self.inner = inner
        self.timeout = timeout

    async def send(self, to_address: str, body: str, metadata: dict) -> str:
        try:
            return await asyncio.wait_for(
                self.inner.send(to_address, body, metadata), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            log.warning("send to %s timed out after %ss", to_address, self.timeout)
            raise TransportError(f"send to {to_address} timed out") from exc
        except TransportError:
            raise
        except Exception as exc:
            log.warning("send to %s failed: %s", to_address, exc)
            raise TransportError(f"send to {to_address} failed: {exc}") from exc
