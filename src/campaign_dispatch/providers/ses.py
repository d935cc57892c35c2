# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Amazon SES provider adapter (query API, SigV4 signed).

Every send is an independent HTTPS POST of a form-encoded ``SendEmail``
action, so sends of one account may run concurrently. A non-2xx answer
carries an XML error document whose ``<Message>`` becomes the failure reason;
a 2xx answer carries the ``<MessageId>`` assigned by SES.
"""

from __future__ import annotations

import asyncio
import re
from email.utils import formataddr, parseaddr
from urllib.parse import urlencode

import aiohttp

from ..logger import get_logger
from ..models import ManagedCredentials, QueuedMessage
from ..signing import sign_request
from .base import MessageRejected, ProviderAdapter, TransportError

API_VERSION = "2010-12-01"
SERVICE = "ses"

_MESSAGE_RE = re.compile(r"<Message>(.*?)</Message>", re.DOTALL)
_MESSAGE_ID_RE = re.compile(r"<MessageId>(.*?)</MessageId>", re.DOTALL)


def endpoint_for(region: str) -> str:
    return f"https://email.{region}.amazonaws.com/"


def extract_error(body: str, status: int) -> str:
    """Return the ``<Message>`` text of an SES error document."""
    match = _MESSAGE_RE.search(body or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    return f"SES Error {status}"


def extract_message_id(body: str) -> str | None:
    match = _MESSAGE_ID_RE.search(body or "")
    return match.group(1).strip() if match else None


def build_send_email_payload(message: QueuedMessage, body: str, *, from_name: str | None = None) -> str:
    name, addr = parseaddr(message.from_email)
    addr = addr or message.from_email
    display = from_name or name
    return urlencode(
        {
            "Action": "SendEmail",
            "Source": formataddr((display, addr)) if display else addr,
            "Destination.ToAddresses.member.1": message.to_email,
            "Message.Subject.Data": message.subject,
            "Message.Subject.Charset": "UTF-8",
            "Message.Body.Html.Data": body,
            "Message.Body.Html.Charset": "UTF-8",
            "Version": API_VERSION,
        }
    )


class SesAdapter(ProviderAdapter):
    """Stateless SES sender.

    Attributes:
        credentials: Access key, secret and region.
        timeout: Total timeout of one HTTP call in seconds.
    """

    name = "ses"
    sequential = False

    def __init__(
        self,
        credentials: ManagedCredentials,
        *,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        logger=None,
    ):
        self.credentials = credentials
        self.timeout = float(timeout)
        self.logger = logger or get_logger()
        self._session = session
        self._owns_session = session is None

    @property
    def endpoint(self) -> str:
        return endpoint_for(self.credentials.region)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def send(self, message: QueuedMessage, body: str, *, from_name: str | None = None) -> str | None:
        payload = build_send_email_payload(message, body, from_name=from_name).encode("utf-8")
        headers = sign_request(
            method="POST",
            url=self.endpoint,
            body=payload,
            access_key_id=self.credentials.access_key_id,
            secret_access_key=self.credentials.secret_access_key,
            region=self.credentials.region,
            service=SERVICE,
        )
        session = self._get_session()
        try:
            async with session.post(self.endpoint, data=payload, headers=headers) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"SES connection error: {str(exc) or exc.__class__.__name__}") from exc
        if not 200 <= status < 300:
            reason = extract_error(text, status)
            self.logger.debug("SES rejected message %s: %s", message.id, reason)
            raise MessageRejected(reason)
        return extract_message_id(text)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
