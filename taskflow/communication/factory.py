import os

from .ports import Notifier


def create_notifier(channel: str | None = None) -> Notifier:
    """
    Factory: create the right adapter based on config.

    The channel can be passed explicitly or read from the
    NOTIFY_CHANNEL env var. Defaults to "console".
    """
    channel = channel or os.environ.get("NOTIFY_CHANNEL", "console")
    timeout = float(os.environ.get("NOTIFIER_TIMEOUT", "15"))

    if channel == "email":
        from .email_notifier import EmailNotifier

        hosts = os.environ.get("HOST_EMAILS", "")
        return EmailNotifier(
            smtp_host=os.environ.get("EMAIL_SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.environ.get("EMAIL_SMTP_PORT", "587")),
            smtp_user=os.environ["EMAIL_USER"],
            smtp_password=os.environ["EMAIL_PASSWORD"],
            imap_host=os.environ.get("EMAIL_IMAP_HOST", "imap.gmail.com"),
            imap_port=int(os.environ.get("EMAIL_IMAP_PORT", "993")),
            host_addresses={h.strip() for h in hosts.split(",") if h.strip()},
            timeout=timeout,
        )

    if channel == "whatsapp":
        from .whatsapp_notifier import WhatsAppNotifier

        return WhatsAppNotifier(
            account_sid=os.environ["TWILIO_ACCOUNT_SID"],
            auth_token=os.environ["TWILIO_AUTH_TOKEN"],
            from_number=os.environ.get("TWILIO_WHATSAPP_NUMBER", "+14155238886"),
            timeout=timeout,
        )

    if channel == "console":
        from .console_notifier import ConsoleNotifier

        return ConsoleNotifier()

    raise ValueError(f"Unknown notify channel: {channel!r}")
