# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP provider adapter.

One adapter instance drives one SMTP session for one account group. The
session is opened on the first send and reused for the rest of the group,
driving aiosmtplib command by command:

- implicit TLS (port 465): TLS handshake on connect, then greeting and EHLO
- STARTTLS: greeting, EHLO, STARTTLS (220 expected), TLS upgrade of the same
  socket, EHLO again
- AUTH LOGIN when a username is configured

Each message then goes through MAIL FROM, RCPT TO and DATA. A refusal at one
of those steps fails that message only: the session is reset with RSET and
the next message reuses it. Any failure of the handshake, a timeout or a
dropped connection raises TransportError and closes the session.

Example:
    Sending a group on one connection::

        async with SmtpAdapter(account.smtp) as adapter:
            for message in messages:
                await adapter.send(message, body)
"""

from __future__ import annotations

import asyncio
import uuid
from email.errors import MessageError
from email.message import EmailMessage
from email.policy import SMTP as SMTP_POLICY
from email.utils import formataddr, formatdate, parseaddr

import aiosmtplib

from ..logger import get_logger
from ..models import Encryption, QueuedMessage, SmtpConfig
from .base import MessageRejected, ProviderAdapter, TransportError

MAILER = "campaign-dispatch/1.0"
SERVICE_CLOSING = 421


def sender_domain(address: str) -> str:
    _, addr = parseaddr(address)
    return (addr or address).rpartition("@")[2] or "localhost"


def compose_message(message: QueuedMessage, body: str, *, from_name: str | None = None) -> EmailMessage:
    """Build the MIME message for one queued message.

    The body is sent as ``text/html; charset="utf-8"`` with quoted-printable
    transfer encoding. Message-ID and the List-Unsubscribe mailbox live on
    the sender's domain.
    """
    name, addr = parseaddr(message.from_email)
    addr = addr or message.from_email
    domain = sender_domain(addr)
    msg = EmailMessage()
    msg["From"] = formataddr((from_name or name, addr)) if (from_name or name) else addr
    msg["To"] = message.to_email
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(usegmt=True)
    msg["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"
    msg["List-Unsubscribe"] = f"<mailto:unsubscribe@{domain}>"
    msg["X-Mailer"] = MAILER
    msg.set_content(body, subtype="html", charset="utf-8", cte="quoted-printable")
    return msg


def _describe(exc: BaseException) -> str:
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return f"{exc.code} {exc.message}".strip()
    if isinstance(exc, asyncio.TimeoutError):
        return str(exc) or "timed out"
    return str(exc) or exc.__class__.__name__


class SmtpAdapter(ProviderAdapter):
    """Sequential SMTP session for one account.

    Attributes:
        config: Host, port, credentials and encryption mode.
        timeout: Per-command timeout in seconds.
        connect_timeout: Bound on the whole handshake in seconds.
    """

    name = "smtp"
    sequential = True

    def __init__(self, config: SmtpConfig, *, timeout: float = 30.0, connect_timeout: float = 15.0, logger=None):
        self.config = config
        self.timeout = float(timeout)
        self.connect_timeout = float(connect_timeout)
        self.logger = logger or get_logger()
        self._smtp: aiosmtplib.SMTP | None = None

    @property
    def connected(self) -> bool:
        return self._smtp is not None and self._smtp.is_connected

    async def open(self) -> None:
        """Run the handshake unless a session is already open.

        Raises:
            TransportError: Connect, EHLO, STARTTLS or AUTH failed or timed out.
        """
        if self.connected:
            return
        cfg = self.config
        smtp = aiosmtplib.SMTP(
            hostname=cfg.host,
            port=cfg.port,
            use_tls=cfg.encryption == Encryption.IMPLICIT_TLS,
            start_tls=False,
            timeout=self.timeout,
        )

        async def _handshake() -> None:
            await smtp.connect()
            await smtp.ehlo()
            if cfg.encryption == Encryption.STARTTLS:
                await smtp.starttls()
                await smtp.ehlo()
            if cfg.username:
                await smtp.auth_login(cfg.username, cfg.password or "")

        try:
            await asyncio.wait_for(_handshake(), timeout=self.connect_timeout)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            smtp.close()
            raise TransportError(f"SMTP connection error: {_describe(exc)}") from exc
        self.logger.debug("SMTP session open to %s:%s (%s)", cfg.host, cfg.port, cfg.encryption.value)
        self._smtp = smtp

    async def send(self, message: QueuedMessage, body: str, *, from_name: str | None = None) -> str | None:
        try:
            mime = compose_message(message, body, from_name=from_name)
            payload = mime.as_bytes(policy=SMTP_POLICY)
        except (ValueError, MessageError) as exc:
            raise MessageRejected(f"Invalid message: {exc}") from exc
        await self.open()
        smtp = self._smtp
        _, envelope_from = parseaddr(message.from_email)
        try:
            await smtp.mail(envelope_from or message.from_email)
            await smtp.rcpt(message.to_email)
            await smtp.data(payload)
        except aiosmtplib.SMTPResponseException as exc:
            if exc.code == SERVICE_CLOSING:
                self._drop()
                raise TransportError(f"SMTP connection error: {_describe(exc)}") from exc
            await self._reset()
            raise MessageRejected(_describe(exc)) from exc
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self._drop()
            raise TransportError(f"SMTP connection error: {_describe(exc)}") from exc
        return mime["Message-ID"]

    async def _reset(self) -> None:
        """RSET after a refused message so the next one starts clean."""
        try:
            await self._smtp.rset()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self._drop()
            self.logger.warning("SMTP RSET failed on %s: %s", self.config.host, _describe(exc))

    def _drop(self) -> None:
        if self._smtp is not None:
            self._smtp.close()
        self._smtp = None

    async def close(self) -> None:
        """QUIT the session if it is still open."""
        if self._smtp is None:
            return
        smtp, self._smtp = self._smtp, None
        if not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self.logger.debug("SMTP QUIT failed on %s: %s", self.config.host, _describe(exc))
            smtp.close()
