# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn campaign_dispatch.server:app --host 0.0.0.0 --port 8000

Settings are read with :func:`campaign_dispatch.config_loader.load_settings`
(``CDS_CONFIG`` and ``CDS_*`` environment variables). ``campaign-dispatch serve``
exports its ``--config``, ``--log-level`` and ``--db-path`` through those variables
(``CDS_DB_PATH_OVERRIDE`` for the database) before starting uvicorn.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_settings
from .core import DispatchService
from .logger import configure_logging

configure_logging()
_settings = load_settings()
_service = DispatchService(_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the scheduler loop with the server and stop it on shutdown."""
    await _service.start()
    yield
    await _service.stop()


app = create_app(_service, api_token=_settings.api_token, lifespan=lifespan)
