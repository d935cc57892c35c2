# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader for the campaign dispatcher.

Settings come from an INI file (default ``config.ini``, overridable with
``CDS_CONFIG``), with ``CDS_*`` environment variables as fallbacks for
missing keys, then built-in defaults.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/campaigns.db

        [dispatch]
        batch_size = 50
        max_workers = 4
        api_concurrency = 5
        smtp_timeout = 30
        connect_timeout = 15
        invocation_timeout = 240
        send_interval_seconds = 60
        log_delivery_activity = false

        [tracking]
        base_url = https://mail.example.com

        [ses]
        access_key_id = AKIA...
        secret_access_key = ...
        region = eu-west-1

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = my-secret-token

Environment variables:
    CDS_CONFIG, CDS_DB_PATH, CDS_BATCH_SIZE, CDS_MAX_WORKERS,
    CDS_API_CONCURRENCY, CDS_SMTP_TIMEOUT, CDS_CONNECT_TIMEOUT,
    CDS_INVOCATION_TIMEOUT, CDS_SEND_INTERVAL, CDS_LOG_DELIVERY_ACTIVITY,
    CDS_TRACKING_BASE_URL, CDS_HOST, CDS_PORT, CDS_API_TOKEN.
    CDS_DB_PATH_OVERRIDE takes precedence over the INI db_path. SES
    credentials also fall back to AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY
    and AWS_SES_REGION.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .models import ManagedCredentials

DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_SES_REGION = "us-east-1"
# Set by ``campaign-dispatch serve`` so the server process uses the --db-path it was given.
DB_PATH_OVERRIDE_ENV = "CDS_DB_PATH_OVERRIDE"


@dataclass
class DispatchSettings:
    """Resolved settings of the dispatcher.

    Attributes:
        db_path: SQLite database file.
        batch_size: Messages fetched per invocation.
        max_workers: Account groups processed concurrently.
        api_concurrency: Concurrent SES sends inside one account group.
        smtp_timeout: Per-command SMTP timeout in seconds.
        connect_timeout: Bound on the whole SMTP handshake in seconds.
        invocation_timeout: Deadline of one invocation in seconds, None for none.
        send_interval_seconds: Pause of the scheduler loop between invocations.
        log_delivery_activity: Log each delivery at INFO instead of DEBUG.
        tracking_base_url: Public base URL of the tracking collectors; None
            disables tracking injection.
        ses_access_key_id: Process-wide SES access key.
        ses_secret_access_key: Process-wide SES secret.
        ses_region: Process-wide SES region.
        http_host: Bind address of the HTTP server.
        http_port: Port of the HTTP server.
        api_token: Token required in X-API-Token, None to disable the check.
    """

    db_path: str = "/data/campaigns.db"
    batch_size: int = 50
    max_workers: int = 4
    api_concurrency: int = 5
    smtp_timeout: float = 30.0
    connect_timeout: float = 15.0
    invocation_timeout: float | None = None
    send_interval_seconds: float = 60.0
    log_delivery_activity: bool = False
    tracking_base_url: str | None = None
    ses_access_key_id: str | None = None
    ses_secret_access_key: str | None = None
    ses_region: str = DEFAULT_SES_REGION
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None

    @property
    def ses_credentials(self) -> ManagedCredentials | None:
        """Process-wide SES credentials, when both keys are set."""
        if self.ses_access_key_id and self.ses_secret_access_key:
            return ManagedCredentials(
                access_key_id=self.ses_access_key_id,
                secret_access_key=self.ses_secret_access_key,
                region=self.ses_region or DEFAULT_SES_REGION,
            )
        return None


def load_settings(path: str | os.PathLike[str] | None = None) -> DispatchSettings:
    """Load settings from the INI file with environment variables as fallbacks.

    Args:
        path: INI file to read. Defaults to ``CDS_CONFIG`` or ``config.ini``.
            A missing file is not an error.
    """
    config_path = Path(path or os.getenv("CDS_CONFIG", DEFAULT_CONFIG_PATH))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or fallback
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int = 0) -> int:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool = False) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    defaults = DispatchSettings()
    invocation_timeout = get_float("dispatch", "invocation_timeout", os.getenv("CDS_INVOCATION_TIMEOUT"))
    return DispatchSettings(
        db_path=os.getenv(DB_PATH_OVERRIDE_ENV)
        or get("storage", "db_path", os.getenv("CDS_DB_PATH", defaults.db_path)),
        batch_size=get_int("dispatch", "batch_size", os.getenv("CDS_BATCH_SIZE"), defaults.batch_size),
        max_workers=get_int("dispatch", "max_workers", os.getenv("CDS_MAX_WORKERS"), defaults.max_workers),
        api_concurrency=get_int(
            "dispatch", "api_concurrency", os.getenv("CDS_API_CONCURRENCY"), defaults.api_concurrency
        ),
        smtp_timeout=get_float("dispatch", "smtp_timeout", os.getenv("CDS_SMTP_TIMEOUT"), defaults.smtp_timeout),
        connect_timeout=get_float(
            "dispatch", "connect_timeout", os.getenv("CDS_CONNECT_TIMEOUT"), defaults.connect_timeout
        ),
        invocation_timeout=invocation_timeout if invocation_timeout and invocation_timeout > 0 else None,
        send_interval_seconds=get_float(
            "dispatch", "send_interval_seconds", os.getenv("CDS_SEND_INTERVAL"), defaults.send_interval_seconds
        ),
        log_delivery_activity=get_bool(
            "dispatch", "log_delivery_activity", os.getenv("CDS_LOG_DELIVERY_ACTIVITY"), False
        ),
        tracking_base_url=get("tracking", "base_url", os.getenv("CDS_TRACKING_BASE_URL")),
        ses_access_key_id=get("ses", "access_key_id", os.getenv("AWS_ACCESS_KEY_ID")),
        ses_secret_access_key=get("ses", "secret_access_key", os.getenv("AWS_SECRET_ACCESS_KEY")),
        ses_region=get("ses", "region", os.getenv("AWS_SES_REGION", DEFAULT_SES_REGION)),
        http_host=get("server", "host", os.getenv("CDS_HOST", defaults.http_host)),
        http_port=get_int("server", "port", os.getenv("CDS_PORT"), defaults.http_port),
        api_token=get("server", "api_token", os.getenv("CDS_API_TOKEN")),
    )
