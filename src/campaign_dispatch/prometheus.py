# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the campaign dispatcher.

All metrics use the ``cds_`` prefix (campaign-dispatch).

Metrics exposed:
    - ``cds_sent_total``: Messages accepted by the provider, per account.
    - ``cds_errors_total``: Messages marked failed, per account.
    - ``cds_rate_limited_total``: Admissions denied by the rate limiter, per account.
    - ``cds_store_errors_total``: Outcome writes that failed, per account.
    - ``cds_pending_messages``: Messages still pending after the last invocation.

Example:
    Scraping via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus counters and gauges of the dispatcher.

    Counters are labelled by ``account_id``.

    Attributes:
        registry: The CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "cds_sent_total",
            "Total sent emails",
            ["account_id"],
            registry=self.registry,
        )
        self.errors = Counter(
            "cds_errors_total",
            "Total failed emails",
            ["account_id"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "cds_rate_limited_total",
            "Total rate limited admissions",
            ["account_id"],
            registry=self.registry,
        )
        self.store_errors = Counter(
            "cds_store_errors_total",
            "Total outcome writes that failed",
            ["account_id"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "cds_pending_messages",
            "Current pending messages",
            registry=self.registry,
        )

    def inc_sent(self, account_id: str) -> None:
        self.sent.labels(account_id=account_id or "default").inc()

    def inc_error(self, account_id: str) -> None:
        self.errors.labels(account_id=account_id or "default").inc()

    def inc_rate_limited(self, account_id: str) -> None:
        self.rate_limited.labels(account_id=account_id or "default").inc()

    def inc_store_error(self, account_id: str) -> None:
        self.store_errors.labels(account_id=account_id or "default").inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
