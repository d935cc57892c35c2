# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Hourly/daily send ceilings per account.

Each account carries two counters (sent this hour, sent today) and the time
each was last reset. A message may be attempted only while both counters are
below their limits. Admission charges the counters immediately, before the
provider answers, so a slow or failing provider cannot push an account over
its limit within one batch. Failed sends therefore still consume quota.

Admission is a single conditional UPDATE in the store, serialized per
account by an ``asyncio.Lock`` as well, so two concurrent admissions cannot
both take the last slot.

Example:
    Admitting a message::

        limiter = RateLimiter(persistence)
        await limiter.reset_if_window_elapsed(account, now)
        admission = await limiter.admit(account, message)
        if not admission.allowed:
            # leave the message pending for a later invocation
            ...
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from .models import QueuedMessage, SendingAccount
from .persistence import Persistence

HOUR_SECONDS = 3600
DAY_SECONDS = 86400


@dataclass(frozen=True)
class Admission:
    """Decision of the rate limiter for one attempt."""

    allowed: bool
    reason: str | None = None


class RateLimiter:
    """Per-account admission control backed by the store counters.

    Attributes:
        persistence: The Persistence instance holding the counters.
    """

    def __init__(self, persistence: Persistence):
        self.persistence = persistence
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    async def admit(self, account: SendingAccount, message: QueuedMessage | None = None) -> Admission:
        """Admit one attempt and charge it against both windows.

        Args:
            account: The owning account.
            message: The message about to be attempted. Only used for the
                denial reason.

        Returns:
            ``Admission(True)`` when the counters were incremented, otherwise
            ``Admission(False, reason)`` with the counters left unchanged.
        """
        async with self._lock_for(account.id):
            charged = await self.persistence.increment_send_counters(account.id)
            if charged:
                return Admission(allowed=True)
            row = await self.persistence.get_account(account.id)
        return Admission(allowed=False, reason=self._denial_reason(account.id, row, message))

    @staticmethod
    def _denial_reason(account_id: str, row: dict[str, Any] | None, message: QueuedMessage | None) -> str:
        suffix = f" for message {message.id}" if message else ""
        if row is None:
            return f"Account {account_id} not found{suffix}"
        if int(row["sent_this_hour"]) >= int(row["hourly_limit"]):
            return f"Hourly limit reached ({row['sent_this_hour']}/{row['hourly_limit']}){suffix}"
        return f"Daily limit reached ({row['sent_today']}/{row['daily_limit']}){suffix}"

    async def reset_if_window_elapsed(self, account: SendingAccount | str, now: int | None = None) -> tuple[bool, bool]:
        """Reset the counters whose window has elapsed.

        The hourly counter resets when an hour has passed since its last
        reset, the daily counter after a day. Each reset is a conditional
        UPDATE, so concurrent callers apply it once per window.

        Returns:
            Tuple of (hourly_reset, daily_reset).
        """
        account_id = account if isinstance(account, str) else account.id
        now = int(time.time()) if now is None else int(now)
        return await self.persistence.reset_send_windows(account_id, now)

    async def reset_all(self, now: int | None = None) -> dict[str, tuple[bool, bool]]:
        """Apply ``reset_if_window_elapsed`` to every account."""
        now = int(time.time()) if now is None else int(now)
        results: dict[str, tuple[bool, bool]] = {}
        for row in await self.persistence.list_accounts():
            results[row["id"]] = await self.reset_if_window_elapsed(row["id"], now)
        return results
