# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider adapters and their selection per account.

An account with SMTP settings is served by ``SmtpAdapter``; otherwise its own
SES credentials, then the process-wide ones, select ``SesAdapter``. An
account with neither gets ``AccountConfigurationError``.
"""

from __future__ import annotations

from ..models import ManagedCredentials, SendingAccount
from .base import (
    AccountConfigurationError,
    DispatchError,
    MessageRejected,
    ProviderAdapter,
    TransportError,
)
from .ses import SesAdapter
from .smtp import SmtpAdapter

__all__ = [
    "AccountConfigurationError",
    "DispatchError",
    "MessageRejected",
    "ProviderAdapter",
    "SesAdapter",
    "SmtpAdapter",
    "TransportError",
    "build_adapter",
]


def build_adapter(
    account: SendingAccount,
    *,
    default_credentials: ManagedCredentials | None = None,
    smtp_timeout: float = 30.0,
    connect_timeout: float = 15.0,
    http_timeout: float = 30.0,
) -> ProviderAdapter:
    """Choose the adapter that serves ``account``.

    Raises:
        AccountConfigurationError: No SMTP settings and no SES credentials.
    """
    if account.smtp is not None:
        return SmtpAdapter(account.smtp, timeout=smtp_timeout, connect_timeout=connect_timeout)
    credentials = account.managed or default_credentials
    if credentials is not None:
        return SesAdapter(credentials, timeout=http_timeout)
    raise AccountConfigurationError()
