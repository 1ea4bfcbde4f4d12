"""SMTP delivery for supervisor-facing notices."""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Optional, Sequence

from track_errors import DeliveryError


class EmailNotifier:
    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        starttls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.starttls = starttls
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    def build_message(self, recipients: Sequence[str], subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f"Rail Proximity Guard <{self.sender}>"
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def send(self, recipients: Sequence[str], subject: str, body: str) -> None:
        recipients = [r for r in recipients if r]
        if not recipients:
            return
        if not self.configured:
            raise DeliveryError("email", ", ".join(recipients), "SMTP is not configured")
        msg = self.build_message(recipients, subject, body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError("email", ", ".join(recipients), exc) from exc
        print(f"[email] sent '{subject}' to {len(recipients)} recipient(s)")

    async def send_async(self, recipients: Sequence[str], subject: str, body: str) -> None:
        await asyncio.to_thread(self.send, list(recipients), subject, body)


__all__ = ["EmailNotifier"]
