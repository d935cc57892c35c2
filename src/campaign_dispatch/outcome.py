# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery outcome recording.

Every attempt ends with exactly one write: ``pending -> sent`` or
``pending -> failed``, with the attempt counter incremented in the same
statement. Failed messages are never put back to pending here; re-queueing
is an operation of whoever owns the queue.

A failing write is logged and counted but never raised, so one bad row does
not stop the rest of the batch.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from .logger import get_logger
from .models import MessageStatus, QueuedMessage
from .persistence import Persistence
from .prometheus import DispatchMetrics

MAX_ERROR_LENGTH = 1000

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_reason(reason: object) -> str:
    """Make a failure reason safe to store.

    Control characters are dropped, whitespace runs (newlines included)
    collapse to one space and the result is cut to ``MAX_ERROR_LENGTH``.
    """
    text = str(reason) if reason is not None else ""
    text = _CONTROL_RE.sub("", text)
    text = " ".join(text.split())
    if not text:
        text = "unknown error"
    if len(text) > MAX_ERROR_LENGTH:
        text = text[: MAX_ERROR_LENGTH - 3] + "..."
    return text


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one attempt as recorded in the store."""

    message_id: str
    account_id: str
    status: MessageStatus
    error: str | None = None
    provider_id: str | None = None
    persisted: bool = True


class OutcomeRecorder:
    """Writes attempt results and keeps metrics and delivery logs in step."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        metrics: DispatchMetrics | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.metrics = metrics
        self.logger = logger or get_logger()
        self.clock = clock
        self.log_delivery_activity = log_delivery_activity

    def _activity(self, msg: str, *args: object) -> None:
        level = logging.INFO if self.log_delivery_activity else logging.DEBUG
        self.logger.log(level, msg, *args)

    async def _write(self, message: QueuedMessage, status: MessageStatus, **fields) -> bool:
        try:
            updated = await self.persistence.update_message(message.id, status, attempt_delta=1, **fields)
        except Exception as exc:
            self.logger.error(
                "Failed to record %s outcome for message %s (account=%s): %s",
                status.value,
                message.id,
                message.account_id,
                exc,
            )
            if self.metrics:
                self.metrics.inc_store_error(message.account_id)
            return False
        if not updated:
            self.logger.warning(
                "Message %s was no longer pending; %s outcome not recorded", message.id, status.value
            )
        return True

    async def record_sent(self, message: QueuedMessage, provider_id: str | None = None) -> DeliveryOutcome:
        if self.metrics:
            self.metrics.inc_sent(message.account_id)
        persisted = await self._write(message, MessageStatus.SENT, sent_ts=int(self.clock()))
        self._activity(
            "Delivery succeeded for message %s (account=%s, provider_id=%s)",
            message.id,
            message.account_id,
            provider_id or "-",
        )
        return DeliveryOutcome(
            message_id=message.id,
            account_id=message.account_id,
            status=MessageStatus.SENT,
            provider_id=provider_id,
            persisted=persisted,
        )

    async def record_failed(self, message: QueuedMessage, reason: object) -> DeliveryOutcome:
        error = sanitize_reason(reason)
        if self.metrics:
            self.metrics.inc_error(message.account_id)
        persisted = await self._write(message, MessageStatus.FAILED, error=error)
        if self.log_delivery_activity:
            self.logger.warning(
                "Delivery failed for message %s (account=%s): %s", message.id, message.account_id, error
            )
        else:
            self.logger.debug("Delivery failed for message %s (account=%s): %s", message.id, message.account_id, error)
        return DeliveryOutcome(
            message_id=message.id,
            account_id=message.account_id,
            status=MessageStatus.FAILED,
            error=error,
            persisted=persisted,
        )
