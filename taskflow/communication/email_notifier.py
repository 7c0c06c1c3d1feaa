import asyncio
import email as email_lib
import email.utils
import re
import smtplib
from datetime import datetime, timezone
from email.mime.text import MIMEText

from imapclient import IMAPClient

from taskflow.errors import TransportError

from .ports import InboundReply, Notifier, ReplySource

TASK_ID_PATTERN = re.compile(r"\[TASK-([^\]]+)\]")


class EmailNotifier(Notifier, ReplySource):
    """
    Adapter: communicate with staff and hosts via email (SMTP send, IMAP receive).

    Every outgoing subject carries "[TASK-<id>]".  Replies keep the subject,
    so the task reference comes back with them and reply matching does not
    have to guess.
    """

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        imap_host: str,
        imap_port: int,
        host_addresses: set[str] | None = None,
        timeout: float = 30,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.imap_host = imap_host
        self.imap_port = imap_port
        self.host_addresses = {a.lower() for a in (host_addresses or set())}
        self.timeout = timeout

    async def send(self, to_address: str, body: str, metadata: dict) -> str:
        task_id = metadata.get("task_id", "")
        subject = f"[TASK-{task_id}] {metadata.get('category', 'Guest request')}"

        msg = MIMEText(body, _charset="utf-8")
        msg["Subject"] = subject
        msg["From"] = self.smtp_user
        msg["To"] = to_address
        msg["Message-ID"] = email.utils.make_msgid(domain="taskflow")
        msg["X-Task-ID"] = task_id

        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"email to {to_address} failed: {exc}") from exc

        return msg["Message-ID"]

    def _deliver(self, msg: MIMEText) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

    async def poll_replies(self) -> list[InboundReply]:
        return await asyncio.to_thread(self._fetch_replies)

    def _fetch_replies(self) -> list[InboundReply]:
        replies = []

        with IMAPClient(self.imap_host, port=self.imap_port, ssl=True, timeout=self.timeout) as client:
            client.login(self.smtp_user, self.smtp_password)
            client.select_folder("INBOX")

            uids = client.search(["UNSEEN", "SUBJECT", "[TASK-"])
            if not uids:
                return replies

            fetched = client.fetch(uids, ["RFC822"])
            for uid, data in fetched.items():
                raw_bytes = data[b"RFC822"]
                msg = email_lib.message_from_bytes(raw_bytes)

                subject = msg["Subject"] or ""
                task_ref = self._extract_task_id(subject)
                if not task_ref:
                    continue

                sender = email.utils.parseaddr(msg["From"] or "")[1].lower()
                replies.append(
                    InboundReply(
                        message_id=msg["Message-ID"] or f"imap-{uid}",
                        from_address=sender,
                        body=self._get_body(msg),
                        role="Host" if sender in self.host_addresses else "Staff",
                        task_ref=task_ref,
                        received_at=datetime.now(timezone.utc),
                    )
                )
                client.set_flags([uid], [b"\\Seen"])

        return replies

    @staticmethod
    def _extract_task_id(subject: str) -> str | None:
        match = TASK_ID_PATTERN.search(subject)
        return match.group(1) if match else None

    @staticmethod
    def _get_body(msg) -> str:
        if msg.is_multipart():
            for part in msg.walk():
                if part.get_content_type() == "text/plain":
                    payload = part.get_payload(decode=True)
                    if payload:
                        return payload.decode("utf-8", errors="replace")
        payload = msg.get_payload(decode=True)
        if payload:
            return payload.decode("utf-8", errors="replace")
        return ""
