# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider adapter contract and the error taxonomy of a send."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import QueuedMessage


class DispatchError(RuntimeError):
    """Base class of the errors raised while resolving or using a provider."""

    code = "dispatch_error"


class AccountConfigurationError(DispatchError):
    """Raised when an account has no usable transport configuration."""

    code = "missing_account_configuration"

    def __init__(self, message: str = "SMTP not configured. Please set up your SMTP credentials in Settings."):
        super().__init__(message)


class TransportError(DispatchError):
    """Connection, TLS, handshake or authentication failure.

    For session-based providers this makes the session unusable, and every
    message of the account group that has not finished yet is failed.
    """

    code = "transport_error"


class MessageRejected(DispatchError):
    """The server or API refused one message. The session stays usable."""

    code = "rejected"


class ProviderAdapter(ABC):
    """One way of handing a message to a mail provider.

    Adapters are async context managers; ``close`` releases any session.

    Attributes:
        name: Short provider name used in logs.
        sequential: True when sends share a session and must not overlap.
    """

    name = "provider"
    sequential = True

    @abstractmethod
    async def send(self, message: QueuedMessage, body: str, *, from_name: str | None = None) -> str | None:
        """Deliver one message.

        Args:
            message: The queued message (addresses and subject).
            body: The HTML body to send, tracking already applied.
            from_name: Display name for the From header, if known.

        Returns:
            The provider-assigned message id, when there is one.

        Raises:
            MessageRejected: The provider refused this message.
            TransportError: The provider could not be reached.
        """

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> ProviderAdapter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
