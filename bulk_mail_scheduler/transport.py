"""Outbound mail transport used by the dispatcher."""

from __future__ import annotations

import asyncio
import html
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional, Protocol

import aiosmtplib

from .errors import SendTransportError
from .smtp_pool import SMTPPool


class MailSender(Protocol):
    """Send collaborator contract: return a message id or raise."""

    async def send(self, sender: str, recipient: str, subject: str, body: str) -> str:
        ...


def _smtp_code(exc: Exception) -> Optional[int]:
    """Extract the SMTP reply code carried by an aiosmtplib exception, if any."""
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return exc.code
    return getattr(exc, "smtp_code", None) or getattr(exc, "code", None)


def build_message(sender: str, recipient: str, subject: str, body: str) -> EmailMessage:
    """Build a text message with an HTML alternative wrapping the same body."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False)
    domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg.set_content(body)
    msg.add_alternative(f"<p>{html.escape(body)}</p>", subtype="html")
    return msg


class SMTPTransport:
    """Deliver messages through one SMTP relay using pooled connections."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool | None = None,
        timeout: float = 30.0,
        pool: SMTPPool | None = None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.timeout = timeout
        self.pool = pool or SMTPPool()

    async def send(self, sender: str, recipient: str, subject: str, body: str) -> str:
        """Send one message and return its Message-ID.

        Any failure is raised as :class:`SendTransportError` carrying the SMTP
        reply code when one is available.
        """
        msg = build_message(sender, recipient, subject, body)
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            )
            async with asyncio.timeout(self.timeout):
                await smtp.send_message(msg, sender=sender, recipients=[recipient])
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as exc:
            await self.pool.discard()
            code = _smtp_code(exc)
            detail = f"{exc} (SMTP {code})" if code else str(exc) or exc.__class__.__name__
            raise SendTransportError(detail, smtp_code=code) from exc
        return msg["Message-ID"]

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close_all()
