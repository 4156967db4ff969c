"""
Mail transport for invitation e-mails.

Sending is best effort: a transport reports failure through its
MailResult instead of raising, and nothing is retried.
"""

import logging
import os
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MailResult(BaseModel):
    success: bool
    error: str | None = None


class MailTransport(Protocol):
    async def send(self, to: str, subject: str, body: str) -> MailResult: ...


def _is_truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class SmtpMailTransport:
    """Async SMTP transport.

    Args:
        host: SMTP server host.
        port: SMTP server port.
        username: Login user; no login when empty.
        password: Login password.
        from_email: Envelope and header sender address.
        from_name: Display name of the sender.
        use_tls: Use STARTTLS after connecting.
        timeout: Seconds allowed for the whole exchange.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_email: str = "noreply@localhost",
        from_name: str = "Forms",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SmtpMailTransport | None":
        """Build a transport from SMTP_* variables; None when SMTP_HOST is unset."""
        host = os.getenv("SMTP_HOST")
        if not host:
            return None
        return cls(
            host=host,
            port=int(os.getenv("SMTP_PORT", "587")),
            username=os.getenv("SMTP_USER") or None,
            password=os.getenv("SMTP_PASSWORD") or None,
            from_email=os.getenv("MAIL_FROM", "noreply@localhost"),
            from_name=os.getenv("MAIL_FROM_NAME", "Forms"),
            use_tls=_is_truthy(os.getenv("SMTP_USE_TLS"), default=True),
            timeout=float(os.getenv("SMTP_TIMEOUT_SECONDS", "10")),
        )

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f'"{self.from_name}" <{self.from_email}>'
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        return message

    async def send(self, to: str, subject: str, body: str) -> MailResult:
        message = self.build_message(to, subject, body)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error("Failed to send email to %s: %s", to, e)
            return MailResult(success=False, error=str(e))

        logger.info("Email sent to %s: %s", to, subject)
        return MailResult(success=True)


class RecordingMailTransport:
    """Keeps messages in memory instead of sending them (tests, local runs)."""

    def __init__(self, fail_with: str | None = None):
        self.sent: list[dict[str, str]] = []
        self.fail_with = fail_with

    async def send(self, to: str, subject: str, body: str) -> MailResult:
        if self.fail_with is not None:
            return MailResult(success=False, error=self.fail_with)
        self.sent.append({"to": to, "subject": subject, "body": body})
        return MailResult(success=True)
