# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the campaign dispatcher.

This module defines the data model shared by the store, the dispatch engine
and the HTTP/CLI surfaces.

Models:
    - QueuedMessage: One outbound email instance in the queue
    - SmtpConfig: SMTP transport configuration of an account
    - ManagedCredentials: AWS SES credentials of an account
    - SendingAccount: Throughput limits, counters and transports
    - SendingIdentity: Verified from-address/display-name pair
    - AccountCreate: Payload used to register an account
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_HOURLY_LIMIT = 20
DEFAULT_DAILY_LIMIT = 100


class MessageStatus(str, Enum):
    """Lifecycle of a queued message. Only pending is non-terminal."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    SENDING = "sending"
    COMPLETED = "completed"


class Encryption(str, Enum):
    """SMTP transport security.

    Attributes:
        IMPLICIT_TLS: TLS handshake right after TCP connect (port 465).
        STARTTLS: Plain connect, then upgrade with STARTTLS (port 587).
        NONE: Plain SMTP, only meant for local relays and test servers.
    """

    IMPLICIT_TLS = "implicit_tls"
    STARTTLS = "starttls"
    NONE = "none"


class IdentityStatus(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


class QueuedMessage(BaseModel):
    """One outbound email instance as stored in the queue."""

    model_config = ConfigDict(extra="ignore")

    id: str
    account_id: str
    campaign_id: str | None = None
    contact_id: str | None = None
    from_email: str
    to_email: str
    subject: str
    body: str = ""
    status: MessageStatus = MessageStatus.PENDING
    attempt_count: Annotated[int, Field(default=0, ge=0)]
    error: str | None = None
    enqueued_ts: int | None = None
    sent_ts: int | None = None


class SmtpConfig(BaseModel):
    """SMTP transport configuration resolved from an account row."""

    model_config = ConfigDict(extra="forbid")

    host: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(gt=0, le=65535)]
    username: str | None = None
    password: str | None = None
    encryption: Encryption = Encryption.STARTTLS

    @field_validator("encryption", mode="before")
    @classmethod
    def accept_legacy_names(cls, v: Any) -> Any:
        """Accept the ``ssl``/``tls`` names used by older account rows."""
        if isinstance(v, str):
            legacy = {"ssl": Encryption.IMPLICIT_TLS, "tls": Encryption.STARTTLS}
            return legacy.get(v.lower(), v)
        return v


class ManagedCredentials(BaseModel):
    """AWS SES credentials, either per account or process-wide."""

    model_config = ConfigDict(extra="forbid")

    access_key_id: Annotated[str, Field(min_length=1)]
    secret_access_key: Annotated[str, Field(min_length=1)]
    region: str = "us-east-1"


class SendingAccount(BaseModel):
    """Throughput limits, window counters and transport configuration."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str | None = None
    hourly_limit: Annotated[int, Field(default=DEFAULT_HOURLY_LIMIT, ge=0)]
    daily_limit: Annotated[int, Field(default=DEFAULT_DAILY_LIMIT, ge=0)]
    sent_this_hour: Annotated[int, Field(default=0, ge=0)]
    sent_today: Annotated[int, Field(default=0, ge=0)]
    last_hourly_reset: int = 0
    last_daily_reset: int = 0
    smtp: SmtpConfig | None = None
    managed: ManagedCredentials | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SendingAccount:
        """Build an account from a flat ``accounts`` table row.

        The SMTP block is only populated when host and port are present, the
        managed block only when both keys are present. When the encryption
        column is empty it is inferred from the port.
        """
        smtp = None
        if row.get("smtp_host") and row.get("smtp_port"):
            port = int(row["smtp_port"])
            encryption = row.get("smtp_encryption") or (
                Encryption.IMPLICIT_TLS if port == 465 else Encryption.STARTTLS
            )
            smtp = SmtpConfig(
                host=row["smtp_host"],
                port=port,
                username=row.get("smtp_username"),
                password=row.get("smtp_password"),
                encryption=encryption,
            )
        managed = None
        if row.get("ses_access_key_id") and row.get("ses_secret_access_key"):
            managed = ManagedCredentials(
                access_key_id=row["ses_access_key_id"],
                secret_access_key=row["ses_secret_access_key"],
                region=row.get("ses_region") or "us-east-1",
            )
        data = {k: v for k, v in row.items() if v is not None}
        return cls(**data, smtp=smtp, managed=managed)


class SendingIdentity(BaseModel):
    """Verified from-address/display-name pair bound to an account."""

    model_config = ConfigDict(extra="ignore")

    account_id: str
    from_email: str
    from_name: str | None = None
    status: IdentityStatus = IdentityStatus.UNVERIFIED

    @property
    def verified(self) -> bool:
        return self.status == IdentityStatus.VERIFIED


class AccountCreate(BaseModel):
    """Payload for registering or updating a sending account."""

    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str,
        Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_.-]+$",
              description="Unique account identifier")
    ]
    name: Annotated[str | None, Field(default=None, max_length=255)]
    hourly_limit: Annotated[int, Field(default=DEFAULT_HOURLY_LIMIT, ge=0)]
    daily_limit: Annotated[int, Field(default=DEFAULT_DAILY_LIMIT, ge=0)]
    smtp_host: str | None = None
    smtp_port: Annotated[int | None, Field(default=None, gt=0, le=65535)]
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_encryption: Encryption | None = None
    ses_access_key_id: str | None = None
    ses_secret_access_key: str | None = None
    ses_region: str | None = None
