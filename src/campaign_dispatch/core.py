# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the campaign dispatcher.

One invocation of :class:`DispatchEngine` processes one bounded batch and
returns a :class:`DispatchReport`:

1. Fetch up to ``batch_size`` pending messages, oldest first
2. Group them by owning account
3. For each group (``max_workers`` groups at a time): load the account,
   reset elapsed send windows, pick the provider adapter
4. For each message: admit it through the rate limiter, inject tracking,
   send, record the outcome
5. Recompute the status of every campaign present in the batch

Message status is written only once the result of an attempt is known, so
an invocation cancelled at any point leaves every message either final or
still pending.

:class:`DispatchService` wraps the engine in an optional scheduler loop for
long-running processes.

Example:
    Running one invocation::

        engine = DispatchEngine(Persistence("/data/campaigns.db"), settings=load_settings())
        report = await engine.run_once()
        print(report.sent, report.failed, report.rate_limited)
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from .batching import StoreReadError, campaigns_in, fetch_due_batch, group_by_account
from .campaigns import aggregate_campaigns
from .config_loader import DispatchSettings
from .logger import get_logger
from .models import QueuedMessage, SendingAccount, SendingIdentity
from .outcome import OutcomeRecorder
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .providers import (
    AccountConfigurationError,
    MessageRejected,
    ProviderAdapter,
    TransportError,
    build_adapter,
)
from .rate_limit import RateLimiter
from .tracking import inject_tracking

__all__ = [
    "AccountConfigurationError",
    "DispatchEngine",
    "DispatchReport",
    "DispatchService",
    "MessageRejected",
    "StoreReadError",
    "TransportError",
]

AdapterFactory = Callable[[SendingAccount, DispatchSettings], ProviderAdapter]


def default_adapter_factory(account: SendingAccount, settings: DispatchSettings) -> ProviderAdapter:
    return build_adapter(
        account,
        default_credentials=settings.ses_credentials,
        smtp_timeout=settings.smtp_timeout,
        connect_timeout=settings.connect_timeout,
        http_timeout=settings.smtp_timeout,
    )


@dataclass
class DispatchReport:
    """Counters of one invocation.

    Attributes:
        fetched: Messages in the batch.
        attempted: Messages whose attempt counter was incremented.
        sent: Messages accepted by the provider.
        failed: Messages marked failed.
        rate_limited: Messages left pending by the rate limiter.
        skipped: Messages left pending because their account could not be read.
        store_errors: Outcome writes that failed.
        campaigns: Campaign id -> status after aggregation.
        timed_out: True when the invocation deadline cancelled the run.
    """

    fetched: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    rate_limited: int = 0
    skipped: int = 0
    store_errors: int = 0
    campaigns: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DispatchEngine:
    """Stateless batch dispatcher; the store is the only shared state.

    Attributes:
        persistence: The store.
        settings: Batch size, concurrency, timeouts and tracking base URL.
        rate_limiter: Admission control shared by all groups.
        metrics: Prometheus metrics.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        settings: DispatchSettings | None = None,
        metrics: DispatchMetrics | None = None,
        rate_limiter: RateLimiter | None = None,
        adapter_factory: AdapterFactory | None = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.persistence = persistence
        self.settings = settings or DispatchSettings(db_path=persistence.db_path)
        self.metrics = metrics or DispatchMetrics()
        self.rate_limiter = rate_limiter or RateLimiter(persistence)
        self.adapter_factory = adapter_factory or default_adapter_factory
        self.clock = clock
        self.logger = logger or get_logger()
        self.recorder = OutcomeRecorder(
            persistence,
            metrics=self.metrics,
            logger=self.logger,
            clock=clock,
            log_delivery_activity=self.settings.log_delivery_activity,
        )

    # ------------------------------------------------------------- invocation
    async def run_once(self) -> DispatchReport:
        """Process one batch.

        Raises:
            StoreReadError: The batch could not be fetched; nothing was touched.
        """
        report = DispatchReport()
        timeout = self.settings.invocation_timeout
        if not timeout:
            await self._run(report)
            return report
        try:
            await asyncio.wait_for(self._run(report), timeout=timeout)
        except asyncio.TimeoutError:
            report.timed_out = True
            self.logger.warning(
                "Dispatch invocation exceeded %ss; unfinished messages stay pending", timeout
            )
        return report

    async def _run(self, report: DispatchReport) -> None:
        batch = await fetch_due_batch(self.persistence, self.settings.batch_size)
        report.fetched = len(batch)
        if not batch:
            self.logger.debug("No pending messages")
            await self._refresh_pending_gauge()
            return
        groups = group_by_account(batch)
        self.logger.debug("Fetched %d pending messages for %d accounts", len(batch), len(groups))

        workers = asyncio.Semaphore(max(1, int(self.settings.max_workers)))

        async def _guarded(account_id: str, messages: list[QueuedMessage]) -> None:
            async with workers:
                try:
                    await self._process_group(account_id, messages, report)
                except Exception:
                    self.logger.exception("Unhandled error while dispatching account %s", account_id)

        await asyncio.gather(*(_guarded(account_id, messages) for account_id, messages in groups.items()))
        report.campaigns = await aggregate_campaigns(self.persistence, campaigns_in(batch), self.logger)
        await self._refresh_pending_gauge()
        self.logger.info(
            "Dispatch done: fetched=%d sent=%d failed=%d rate_limited=%d skipped=%d store_errors=%d",
            report.fetched,
            report.sent,
            report.failed,
            report.rate_limited,
            report.skipped,
            report.store_errors,
        )

    async def _refresh_pending_gauge(self) -> None:
        try:
            count = await self.persistence.count_pending()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)

    # ------------------------------------------------------------------ groups
    async def _process_group(self, account_id: str, messages: list[QueuedMessage], report: DispatchReport) -> None:
        try:
            row = await self.persistence.get_account(account_id)
        except Exception as exc:
            self.logger.error(
                "Cannot load account %s, leaving %d messages pending: %s", account_id, len(messages), exc
            )
            report.skipped += len(messages)
            return
        if row is None:
            for message in messages:
                await self._fail(message, f"Sending account {account_id} not found", report)
            return
        account = SendingAccount.from_row(row)
        await self.rate_limiter.reset_if_window_elapsed(account, int(self.clock()))

        try:
            adapter = self.adapter_factory(account, self.settings)
        except AccountConfigurationError as exc:
            self.logger.warning("Account %s has no usable transport: %s", account_id, exc)
            for message in messages:
                await self._fail(message, str(exc), report)
            return

        names: dict[str, str | None] = {}
        async with adapter:
            if adapter.sequential:
                await self._send_sequential(adapter, account, messages, names, report)
            else:
                await self._send_concurrent(adapter, account, messages, names, report)

    async def _send_sequential(
        self,
        adapter: ProviderAdapter,
        account: SendingAccount,
        messages: list[QueuedMessage],
        names: dict[str, str | None],
        report: DispatchReport,
    ) -> None:
        broken: TransportError | None = None
        for message in messages:
            if broken is not None:
                await self._fail(message, str(broken), report)
                continue
            try:
                await self._attempt(adapter, account, message, names, report)
            except TransportError as exc:
                self.logger.warning("Transport failure for account %s: %s", account.id, exc)
                await self._fail(message, str(exc), report)
                broken = exc

    async def _send_concurrent(
        self,
        adapter: ProviderAdapter,
        account: SendingAccount,
        messages: list[QueuedMessage],
        names: dict[str, str | None],
        report: DispatchReport,
    ) -> None:
        slots = asyncio.Semaphore(max(1, int(self.settings.api_concurrency)))

        async def _one(message: QueuedMessage) -> None:
            async with slots:
                try:
                    await self._attempt(adapter, account, message, names, report)
                except TransportError as exc:
                    await self._fail(message, str(exc), report)

        await asyncio.gather(*(_one(message) for message in messages))

    # ---------------------------------------------------------------- messages
    async def _attempt(
        self,
        adapter: ProviderAdapter,
        account: SendingAccount,
        message: QueuedMessage,
        names: dict[str, str | None],
        report: DispatchReport,
    ) -> None:
        """Admit, send and record one message.

        Raises:
            TransportError: Left to the caller, which decides how far it spreads.
        """
        admission = await self.rate_limiter.admit(account, message)
        if not admission.allowed:
            report.rate_limited += 1
            self.metrics.inc_rate_limited(account.id)
            self.logger.info("Message %s left pending: %s", message.id, admission.reason)
            return
        try:
            body = inject_tracking(message.body, message.id, self.settings.tracking_base_url)
            from_name = await self._display_name(account.id, message.from_email, names)
            provider_id = await adapter.send(message, body, from_name=from_name)
        except MessageRejected as exc:
            await self._fail(message, str(exc), report)
            return
        except TransportError:
            raise
        except Exception as exc:
            # an admitted message always gets a final state
            self.logger.exception("Unexpected error sending message %s (account=%s)", message.id, account.id)
            await self._fail(message, f"Unexpected error: {exc}", report)
            return
        outcome = await self.recorder.record_sent(message, provider_id)
        report.attempted += 1
        report.sent += 1
        if not outcome.persisted:
            report.store_errors += 1

    async def _fail(self, message: QueuedMessage, reason: str, report: DispatchReport) -> None:
        outcome = await self.recorder.record_failed(message, reason)
        report.attempted += 1
        report.failed += 1
        if not outcome.persisted:
            report.store_errors += 1

    async def _display_name(self, account_id: str, from_email: str, cache: dict[str, str | None]) -> str | None:
        """Display name of the verified identity matching the sender, if any."""
        key = from_email.lower()
        if key in cache:
            return cache[key]
        name = None
        address = from_email.rpartition("<")[2].rstrip(">").strip()
        try:
            row = await self.persistence.get_identity(account_id, address)
        except Exception as exc:
            self.logger.warning("Identity lookup failed for %s: %s", address, exc)
            row = None
        if row:
            identity = SendingIdentity(**row)
            if identity.verified:
                name = identity.from_name
        cache[key] = name
        return name

    async def reset_windows(self) -> dict[str, tuple[bool, bool]]:
        """Reset elapsed send windows of every account."""
        return await self.rate_limiter.reset_all(int(self.clock()))


class DispatchService:
    """Scheduler loop around :class:`DispatchEngine`.

    Each cycle resets elapsed send windows and runs one invocation, then
    waits ``send_interval_seconds`` or until :meth:`wake` is called.
    """

    def __init__(
        self,
        settings: DispatchSettings,
        *,
        persistence: Persistence | None = None,
        metrics: DispatchMetrics | None = None,
        engine: DispatchEngine | None = None,
        logger=None,
    ):
        self.settings = settings
        self.logger = logger or get_logger()
        self.persistence = persistence or Persistence(settings.db_path)
        self.metrics = metrics or DispatchMetrics()
        self.engine = engine or DispatchEngine(
            self.persistence, settings=settings, metrics=self.metrics, logger=self.logger
        )
        self.last_report: DispatchReport | None = None
        self._interval = float(settings.send_interval_seconds) if settings.send_interval_seconds else math.inf
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._run_lock = asyncio.Lock()

    async def init(self) -> None:
        await self.persistence.init_db()

    async def run_once(self) -> DispatchReport:
        """Run one cycle now; cycles never overlap."""
        async with self._run_lock:
            await self.engine.reset_windows()
            report = await self.engine.run_once()
        self.last_report = report
        return report

    async def reset_windows(self) -> dict[str, tuple[bool, bool]]:
        return await self.engine.reset_windows()

    def wake(self) -> None:
        self._wake_event.set()

    async def start(self) -> None:
        await self.init()
        self._stop.clear()
        self._task = asyncio.create_task(self._dispatch_loop(), name="campaign-dispatch-loop")

    async def stop(self) -> None:
        self._stop.set()
        self._wake_event.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _dispatch_loop(self) -> None:
        self.logger.debug("Dispatch loop started (interval=%s)", self._interval)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except StoreReadError as exc:
                self.logger.error("Dispatch cycle aborted: %s", exc)
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            await self._wait_for_wakeup(self._interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause until ``timeout`` elapses or :meth:`wake`/:meth:`stop` is called."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
