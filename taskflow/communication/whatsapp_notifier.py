import asyncio

import requests

from taskflow.errors import TransportError

from .ports import Notifier

BASE_URL = "https://api.twilio.com/2010-04-01"


def _whatsapp(address: str) -> str:
    return address if address.startswith("whatsapp:") else f"whatsapp:{address}"


class WhatsAppNotifier(Notifier):
    """Adapter: send WhatsApp messages through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 15,
    ):
        self.account_sid = account_sid
        self.from_number = _whatsapp(from_number)
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (account_sid, auth_token)

    async def send(self, to_address: str, body: str, metadata: dict) -> str:
        try:
            return await asyncio.to_thread(self._post, to_address, body)
        except requests.RequestException as exc:
            raise TransportError(f"whatsapp to {to_address} failed: {exc}") from exc

    def _post(self, to_address: str, body: str) -> str:
        url = f"{BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        resp = self.session.post(
            url,
            data={"From": self.from_number, "To": _whatsapp(to_address), "Body": body},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        sid = resp.json().get("sid")
        if not sid:
            raise TransportError(f"whatsapp to {to_address}: no message sid in response")
        return sid
