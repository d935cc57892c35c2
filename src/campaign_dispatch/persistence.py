# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed store for the campaign dispatcher.

This module provides the Persistence class, the single durable store shared
by every dispatch invocation and by the tracking collectors. It covers:

- Sending accounts with their hourly/daily counters and transports
- Sender identities (read-only to the engine)
- Campaigns and their aggregated status
- The message queue with status, attempt count and error text
- Append-only open/click events

The store is the only synchronization point between invocations. Counter
updates and status transitions are single conditional UPDATE statements so
they stay atomic when several workers or processes share the database.

Example:
    Basic usage of the store::

        persistence = Persistence("/data/campaigns.db")
        await persistence.init_db()

        await persistence.add_account({
            "id": "acme",
            "hourly_limit": 20,
            "daily_limit": 100,
            "smtp_host": "smtp.example.com",
            "smtp_port": 587,
            "smtp_username": "mailer@example.com",
            "smtp_password": "secret",
        })

        batch = await persistence.fetch_pending(limit=50)
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from typing import Any

import aiosqlite

ACCOUNT_COLUMNS = (
    "id",
    "name",
    "hourly_limit",
    "daily_limit",
    "smtp_host",
    "smtp_port",
    "smtp_username",
    "smtp_password",
    "smtp_encryption",
    "ses_access_key_id",
    "ses_secret_access_key",
    "ses_region",
)

MESSAGE_COLUMNS = (
    "id, account_id, campaign_id, contact_id, from_email, to_email, subject, body, "
    "status, attempt_count, error, enqueued_ts, sent_ts"
)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class Persistence:
    """Async SQLite store for accounts, campaigns, messages and events.

    Each operation opens and closes its own connection, which keeps the class
    safe to share between concurrent tasks.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/campaigns.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create all tables and indexes. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    hourly_limit INTEGER NOT NULL DEFAULT 20,
                    daily_limit INTEGER NOT NULL DEFAULT 100,
                    sent_this_hour INTEGER NOT NULL DEFAULT 0,
                    sent_today INTEGER NOT NULL DEFAULT 0,
                    last_hourly_reset INTEGER NOT NULL DEFAULT 0,
                    last_daily_reset INTEGER NOT NULL DEFAULT 0,
                    smtp_host TEXT,
                    smtp_port INTEGER,
                    smtp_username TEXT,
                    smtp_password TEXT,
                    smtp_encryption TEXT,
                    ses_access_key_id TEXT,
                    ses_secret_access_key TEXT,
                    ses_region TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS identities (
                    account_id TEXT NOT NULL,
                    from_email TEXT NOT NULL,
                    from_name TEXT,
                    status TEXT NOT NULL DEFAULT 'unverified',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (account_id, from_email),
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    account_id TEXT,
                    name TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    campaign_id TEXT,
                    contact_id TEXT,
                    from_email TEXT NOT NULL,
                    to_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    enqueued_ts INTEGER NOT NULL,
                    sent_ts INTEGER,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_pending ON messages(status, enqueued_ts)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_campaign ON messages(campaign_id, status)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS open_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL,
                    campaign_id TEXT,
                    account_id TEXT,
                    event_ts INTEGER NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS click_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL,
                    campaign_id TEXT,
                    account_id TEXT,
                    original_url TEXT NOT NULL,
                    event_ts INTEGER NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT
                )
                """
            )
            await db.commit()

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: dict[str, Any]) -> None:
        """Insert or update a sending account. Counters are left untouched on update."""
        values = {col: _enum_value(acc.get(col)) for col in ACCOUNT_COLUMNS}
        if values["hourly_limit"] is None:
            values["hourly_limit"] = 20
        if values["daily_limit"] is None:
            values["daily_limit"] = 100
        now = int(time.time())
        values["now"] = now
        updates = ", ".join(f"{col} = excluded.{col}" for col in ACCOUNT_COLUMNS if col != "id")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO accounts ({", ".join(ACCOUNT_COLUMNS)}, last_hourly_reset, last_daily_reset)
                VALUES ({", ".join(f":{col}" for col in ACCOUNT_COLUMNS)}, :now, :now)
                ON CONFLICT(id) DO UPDATE SET {updates}, updated_at = CURRENT_TIMESTAMP
                """,
                values,
            )
            await db.commit()

    async def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Return the full account row (including secrets) or None."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
                return dict(zip(cols, row))

    async def list_accounts(self) -> list[dict[str, Any]]:
        """Return accounts without their secrets, ordered by id."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, name, hourly_limit, daily_limit, sent_this_hour, sent_today,
                       last_hourly_reset, last_daily_reset, smtp_host, smtp_port,
                       smtp_username, smtp_encryption, ses_region,
                       ses_access_key_id IS NOT NULL AS has_managed_credentials
                FROM accounts ORDER BY id
                """
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def increment_send_counters(self, account_id: str, *, enforce_limits: bool = True) -> bool:
        """Charge one send against the hourly and daily counters.

        With ``enforce_limits`` the increment only happens while both counters
        are below their limits, in the same statement, so the check and the
        charge cannot be separated by another writer.

        Returns:
            True if the counters were incremented.
        """
        query = (
            "UPDATE accounts SET sent_this_hour = sent_this_hour + 1, "
            "sent_today = sent_today + 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?"
        )
        if enforce_limits:
            query += " AND sent_this_hour < hourly_limit AND sent_today < daily_limit"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, (account_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def reset_send_windows(self, account_id: str, now: int) -> tuple[bool, bool]:
        """Reset the counters whose window has elapsed.

        Returns:
            Tuple of (hourly_reset, daily_reset).
        """
        async with aiosqlite.connect(self.db_path) as db:
            hourly = await db.execute(
                """
                UPDATE accounts SET sent_this_hour = 0, last_hourly_reset = :now
                WHERE id = :id AND :now - last_hourly_reset >= 3600
                """,
                {"id": account_id, "now": now},
            )
            daily = await db.execute(
                """
                UPDATE accounts SET sent_today = 0, last_daily_reset = :now
                WHERE id = :id AND :now - last_daily_reset >= 86400
                """,
                {"id": account_id, "now": now},
            )
            await db.commit()
            return hourly.rowcount > 0, daily.rowcount > 0

    async def set_send_counters(
        self,
        account_id: str,
        *,
        sent_this_hour: int | None = None,
        sent_today: int | None = None,
        last_hourly_reset: int | None = None,
        last_daily_reset: int | None = None,
    ) -> None:
        """Overwrite counter columns. Used by administrative tooling and tests."""
        fields = {
            "sent_this_hour": sent_this_hour,
            "sent_today": sent_today,
            "last_hourly_reset": last_hourly_reset,
            "last_daily_reset": last_daily_reset,
        }
        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            return
        set_clause = ", ".join(f"{k} = :{k}" for k in updates)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE accounts SET {set_clause} WHERE id = :id",
                {**updates, "id": account_id},
            )
            await db.commit()

    # Identities ---------------------------------------------------------------
    async def add_identity(self, identity: dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO identities (account_id, from_email, from_name, status)
                VALUES (?, ?, ?, ?)
                """,
                (
                    identity["account_id"],
                    identity["from_email"].lower(),
                    identity.get("from_name"),
                    _enum_value(identity.get("status", "unverified")),
                ),
            )
            await db.commit()

    async def get_identity(self, account_id: str, from_email: str) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM identities WHERE account_id = ? AND from_email = ?",
                (account_id, from_email.lower()),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
                return dict(zip(cols, row))

    # Campaigns ----------------------------------------------------------------
    async def add_campaign(self, campaign: dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO campaigns (id, account_id, name, status, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (
                    campaign["id"],
                    campaign.get("account_id"),
                    campaign.get("name"),
                    _enum_value(campaign.get("status", "draft")),
                ),
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
                return dict(zip(cols, row))

    async def set_campaign_status(self, campaign_id: str, status: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE campaigns SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (_enum_value(status), campaign_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count_pending_for_campaign(self, campaign_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM messages WHERE campaign_id = ? AND status = 'pending'",
                (campaign_id,),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    # Messages -----------------------------------------------------------------
    async def insert_messages(self, entries: Sequence[dict[str, Any]]) -> list[str]:
        """Enqueue messages as pending. Existing ids are left untouched.

        Returns:
            The ids that were actually inserted.
        """
        inserted: list[str] = []
        now = int(time.time())
        async with aiosqlite.connect(self.db_path) as db:
            for entry in entries:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO messages
                    (id, account_id, campaign_id, contact_id, from_email, to_email, subject, body, enqueued_ts)
                    VALUES (:id, :account_id, :campaign_id, :contact_id, :from_email, :to_email, :subject, :body, :enqueued_ts)
                    """,
                    {
                        "id": entry["id"],
                        "account_id": entry["account_id"],
                        "campaign_id": entry.get("campaign_id"),
                        "contact_id": entry.get("contact_id"),
                        "from_email": entry["from_email"],
                        "to_email": entry["to_email"],
                        "subject": entry["subject"],
                        "body": entry.get("body", ""),
                        "enqueued_ts": int(now if entry.get("enqueued_ts") is None else entry["enqueued_ts"]),
                    },
                )
                if cursor.rowcount:
                    inserted.append(entry["id"])
            await db.commit()
        return inserted

    async def fetch_pending(self, limit: int) -> list[dict[str, Any]]:
        """Return up to ``limit`` pending messages, oldest enqueued first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE status = 'pending'
                ORDER BY enqueued_ts ASC, rowid ASC
                LIMIT ?
                """,
                (int(limit),),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def update_message(
        self,
        msg_id: str,
        status: str,
        attempt_delta: int = 1,
        error: str | None = None,
        sent_ts: int | None = None,
    ) -> bool:
        """Record the outcome of an attempt on a pending message.

        Only pending rows are updated, so terminal states are never
        overwritten.

        Returns:
            True if the row was pending and has been updated.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE messages
                SET status = :status,
                    attempt_count = attempt_count + :delta,
                    error = :error,
                    sent_ts = :sent_ts,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :id AND status = 'pending'
                """,
                {
                    "status": _enum_value(status),
                    "delta": int(attempt_delta),
                    "error": error,
                    "sent_ts": sent_ts,
                    "id": msg_id,
                },
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_message(self, msg_id: str) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (msg_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
                return dict(zip(cols, row))

    async def list_messages(self, campaign_id: str | None = None) -> list[dict[str, Any]]:
        query = f"SELECT {MESSAGE_COLUMNS} FROM messages"
        params: tuple[Any, ...] = ()
        if campaign_id:
            query += " WHERE campaign_id = ?"
            params = (campaign_id,)
        query += " ORDER BY enqueued_ts ASC, rowid ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def count_pending(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM messages WHERE status = 'pending'") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    # Tracking events ----------------------------------------------------------
    async def get_message_context(self, msg_id: str) -> dict[str, Any] | None:
        """Return campaign and account of a message, for the tracking collectors."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, campaign_id, account_id FROM messages WHERE id = ?", (msg_id,)
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        return {"message_id": row[0], "campaign_id": row[1], "account_id": row[2]}

    async def record_open(self, event: dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO open_events (message_id, campaign_id, account_id, event_ts, ip_address, user_agent)
                VALUES (:message_id, :campaign_id, :account_id, :event_ts, :ip_address, :user_agent)
                """,
                event,
            )
            await db.commit()

    async def record_click(self, event: dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO click_events
                (message_id, campaign_id, account_id, original_url, event_ts, ip_address, user_agent)
                VALUES (:message_id, :campaign_id, :account_id, :original_url, :event_ts, :ip_address, :user_agent)
                """,
                event,
            )
            await db.commit()

    async def list_events(self, kind: str, message_ids: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Return open or click events, optionally filtered by message id."""
        table = {"open": "open_events", "click": "click_events"}[kind]
        query = f"SELECT * FROM {table}"
        params: list[Any] = []
        if message_ids is not None:
            ids = list(message_ids)
            if not ids:
                return []
            query += f" WHERE message_id IN ({', '.join('?' for _ in ids)})"
            params = ids
        query += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]
