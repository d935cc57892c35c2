# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Queue fetching and per-account grouping.

A dispatch invocation starts by reading a bounded batch of pending messages,
oldest first, and splitting it by owning account so each account's messages
can share one transport session. Both steps are read-only.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import QueuedMessage
from .persistence import Persistence

DEFAULT_BATCH_SIZE = 50


class StoreReadError(RuntimeError):
    """Raised when the pending batch cannot be read from the store."""


async def fetch_due_batch(persistence: Persistence, limit: int = DEFAULT_BATCH_SIZE) -> list[QueuedMessage]:
    """Return up to ``limit`` pending messages, oldest enqueued first.

    Raises:
        StoreReadError: If the store query fails. Nothing has been touched
            at that point, so the invocation can simply be aborted.
    """
    limit = max(1, int(limit))
    try:
        rows = await persistence.fetch_pending(limit)
    except Exception as exc:
        raise StoreReadError(f"Unable to fetch pending messages: {exc}") from exc
    return [QueuedMessage(**row) for row in rows]


def group_by_account(batch: Iterable[QueuedMessage]) -> dict[str, list[QueuedMessage]]:
    """Split a batch by account, keeping FIFO order inside each group.

    Groups appear in the order their first message appears in the batch.
    """
    groups: dict[str, list[QueuedMessage]] = {}
    for message in batch:
        groups.setdefault(message.account_id, []).append(message)
    return groups


def campaigns_in(batch: Iterable[QueuedMessage]) -> list[str]:
    """Return the distinct campaign ids of a batch in first-appearance order."""
    seen: dict[str, None] = {}
    for message in batch:
        if message.campaign_id:
            seen.setdefault(message.campaign_id, None)
    return list(seen)
