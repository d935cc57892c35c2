# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the campaign dispatcher.

The application exposes two groups of endpoints:

- Tracking collectors, public and unauthenticated, hit by mail clients:
  ``GET /track/open`` returns a 1x1 GIF and records an open,
  ``GET /track/click`` records a click and redirects to the original URL.
- Control endpoints, protected by the ``X-API-Token`` header when a token is
  configured: ``/health``, ``/metrics``, ``/commands/run-now`` and
  ``/commands/reset-windows``.

Example:
    Creating and running the application::

        from campaign_dispatch.api import create_app
        from campaign_dispatch.core import DispatchService

        service = DispatchService(load_settings())
        app = create_app(service, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .batching import StoreReadError
from .core import DispatchService

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the ``X-API-Token`` header against the configured token.

    When no token is configured the check is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    ok: bool
    error: str | None = None


class RunNowResponse(CommandStatus):
    report: dict[str, Any] | None = None


class ResetWindowsResponse(CommandStatus):
    hourly_reset: list[str] = []
    daily_reset: list[str] = []


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then CF-Connecting-IP, then the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _event(request: Request, context: dict[str, Any]) -> dict[str, Any]:
    return {
        "message_id": context["message_id"],
        "campaign_id": context.get("campaign_id"),
        "account_id": context.get("account_id"),
        "event_ts": int(time.time()),
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent") or "unknown",
    }


def create_app(
    svc: DispatchService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        svc: The dispatch service backing the control endpoints.
        api_token: Optional secret required in ``X-API-Token`` on the
            control endpoints (tracking endpoints stay public).
        lifespan: Optional lifespan context manager for startup/shutdown.
    """
    api = FastAPI(title="Campaign Dispatch", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/health")
    async def health():
        """Health check endpoint (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Run one dispatch invocation and return its report."""
        try:
            report = await svc.run_once()
        except StoreReadError as exc:
            logger.error("run-now aborted: %s", exc)
            return RunNowResponse(ok=False, error=str(exc))
        return RunNowResponse(ok=True, report=report.as_dict())

    @router.post("/reset-windows", response_model=ResetWindowsResponse, response_model_exclude_none=True)
    async def reset_windows():
        """Reset elapsed hourly/daily send windows of every account."""
        results = await svc.reset_windows()
        return ResetWindowsResponse(
            ok=True,
            hourly_reset=[account_id for account_id, (hourly, _) in results.items() if hourly],
            daily_reset=[account_id for account_id, (_, daily) in results.items() if daily],
        )

    @api.get("/track/open")
    async def track_open(request: Request, id: str | None = None):
        """Record an open and return the tracking pixel, whatever happens."""
        if id:
            try:
                context = await svc.persistence.get_message_context(id)
                if context:
                    await svc.persistence.record_open(_event(request, context))
            except Exception as exc:
                logger.error("Failed to record open for message %s: %s", id, exc)
        return Response(content=PIXEL_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)

    @api.get("/track/click")
    async def track_click(request: Request, id: str | None = None, url: str | None = None):
        """Record a click and redirect to the original destination."""
        if not id or not url:
            return PlainTextResponse("Missing parameters", status_code=status.HTTP_400_BAD_REQUEST)
        try:
            context = await svc.persistence.get_message_context(id)
            if context:
                event = _event(request, context)
                event["original_url"] = url
                await svc.persistence.record_click(event)
        except Exception as exc:
            logger.error("Failed to record click for message %s: %s", id, exc)
        return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

    api.include_router(router)
    return api
