"""SMTP delivery."""
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from storefront.config import Settings

logger = logging.getLogger(__name__)


class Emailer:
    """Sends plain-text mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        timeout: float = 10,
        fallback_recipient: str = "user@example.com",
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.fallback_recipient = fallback_recipient

    @classmethod
    def from_settings(cls, settings: Settings) -> "Emailer":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_from,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )

    def pick_recipient(self, email: Optional[str]) -> str:
        if email and email.strip():
            return email.strip()
        return self.fallback_recipient

    async def send(self, to_email: str, subject: str, body: str):
        """Send without blocking the event loop; SMTP errors propagate."""
        await asyncio.to_thread(self._send, to_email, subject, body)
        logger.info(f"Sent '{subject}' to {to_email}")

    def _send(self, to_email: str, subject: str, body: str):
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
