"""
Oura Connection Router
======================
POST   /api/v1/oura/authorize   — Start the OAuth flow, returns the Oura URL
GET    /api/v1/oura/callback    — Oura redirects here; we redirect to the app
GET    /api/v1/oura/status      — Client-safe connection status
DELETE /api/v1/oura/connection  — Disconnect and drop stored tokens

The callback is hit by the user's browser, not the app, so it never returns
JSON errors. Every outcome is a redirect to FRONTEND_URL carrying
``status`` and ``message`` query parameters.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from sleepolympics.config import Settings, get_settings
from sleepolympics.dependencies import get_current_user, get_token_manager
from sleepolympics.errors import ExternalAuthError, InvalidStateError
from sleepolympics.models.oura import AuthorizationUrlResponse, ConnectionStatus
from sleepolympics.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/oura", tags=["oura"])


def _frontend_redirect(settings: Settings, outcome: str, message: str) -> RedirectResponse:
    url = httpx.URL(settings.frontend_url).copy_merge_params({"status": outcome, "message": message})
    return RedirectResponse(str(url), status_code=status.HTTP_302_FOUND)


@router.post(
    "/authorize",
    response_model=AuthorizationUrlResponse,
    summary="Start Oura authorisation",
)
async def authorize(
    user: dict = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
) -> AuthorizationUrlResponse:
    url = await tokens.begin_authorization(user["id"])
    return AuthorizationUrlResponse(authorization_url=url)


@router.get("/callback", summary="Oura OAuth callback", include_in_schema=False)
async def callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    if error:
        logger.error("Oura OAuth error: %r", error)
        return _frontend_redirect(settings, "error", "Oura authorization was not completed")

    try:
        await tokens.complete_authorization(state, code)
    except InvalidStateError as exc:
        logger.warning("Rejected Oura OAuth callback: %s", exc)
        return _frontend_redirect(settings, "error", str(exc))
    except ExternalAuthError as exc:
        logger.error("Oura code exchange failed with status %s", exc.status_code)
        return _frontend_redirect(settings, "error", "Failed to complete Oura authorization")
    except LookupError:
        logger.error("Oura OAuth callback for a user that no longer exists")
        return _frontend_redirect(settings, "error", "Invalid user identification")

    return _frontend_redirect(settings, "success", "Oura ring connected")


@router.get("/status", response_model=ConnectionStatus, summary="Oura connection status")
async def connection_status(
    user: dict = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
) -> ConnectionStatus:
    return tokens.connection_status(user)


@router.delete("/connection", summary="Disconnect Oura")
async def disconnect(
    user: dict = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
) -> dict:
    await tokens.disconnect(user["id"])
    return {"message": "Oura integration disconnected successfully", "status": "disconnected"}
