"""
Oura OAuth Client
=================
OAuth2 endpoints and the authenticated data API handle for Oura REST v2.

Responsibilities:
- build_authorization_url(): deterministic authorise URL for a CSRF state
- exchange_code(): trade an auth code for a token pair (one HTTP call)
- refresh_token(): decrypt a stored refresh token and trade it for a new pair
- create_authorized_client(): an OuraClient carrying the bearer token,
  a request timeout and an X-Request-ID trace header

This module never persists anything and never logs token values.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import date
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from sleepolympics.config import Settings
from sleepolympics.errors import (
    CorruptTokenError,
    ExternalAuthError,
    InvalidTokenError,
    OuraAPIError,
    OuraResponseFormatError,
    RateLimitedError,
    RefreshFailedError,
)
from sleepolympics.models.oura import OuraTokenResponse, TokenPair
from sleepolympics.services.secret_box import SecretBox

logger = logging.getLogger(__name__)

OURA_AUTH_URL = "https://cloud.ouraring.com/oauth/authorize"
OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"
OURA_BASE_URL = "https://api.ouraring.com"

OURA_SCOPES = ("email", "personal", "daily", "heartrate", "workout", "session", "spo2Daily")

# Anything shorter is a truncated or placeholder value, not an Oura token.
_MIN_REFRESH_TOKEN_LENGTH = 10


# ---------------------------------------------------------------------------
# OuraClient: thin HTTP wrapper around the Oura v2 API
# ---------------------------------------------------------------------------


class OuraClient:
    """Makes authenticated requests to the Oura REST API v2."""

    def __init__(self, access_token: str, trace_id: str, timeout: float = 10.0) -> None:
        self._token = access_token
        self.trace_id = trace_id
        self._timeout = timeout

    async def fetch_daily_sleep(self, start_date: date, end_date: date) -> list[dict]:
        """GET /v2/usercollection/daily_sleep for the given date range.

        Returns the raw ``data`` items; normalisation is the mapper's job.
        """
        payload = await self._get(
            "/v2/usercollection/daily_sleep",
            params={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
        )
        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise OuraResponseFormatError("daily_sleep response has no 'data' list")
        return items

    async def _get(self, path: str, params: dict) -> object:
        """Shared async GET call with Bearer auth. Raises OuraAPIError on non-2xx."""
        started = time.perf_counter()
        async with httpx.AsyncClient(base_url=OURA_BASE_URL, timeout=self._timeout) as client:
            response = await client.get(
                path,
                params=params,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "X-Request-ID": self.trace_id,
                },
            )
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Oura API GET %s -> %d in %.0fms [request_id=%s]",
            path, response.status_code, elapsed_ms, self.trace_id,
        )

        if response.status_code == 429:
            raise RateLimitedError(response.status_code, response.text)
        if not response.is_success:
            raise OuraAPIError(response.status_code, response.text)
        try:
            return response.json()
        except ValueError as exc:
            raise OuraResponseFormatError("Oura API returned non-JSON body") from exc


# ---------------------------------------------------------------------------
# OuraOAuthClient: authorisation, code exchange, refresh
# ---------------------------------------------------------------------------


class OuraOAuthClient:
    """Talks to Oura's OAuth endpoints on behalf of this application."""

    def __init__(self, settings: Settings, secret_box: SecretBox) -> None:
        self._settings = settings
        self._box = secret_box

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.oura_client_id,
            "redirect_uri": self._settings.oura_redirect_uri,
            "response_type": "code",
            "scope": " ".join(OURA_SCOPES),
            "state": state,
        }
        return f"{OURA_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenPair:
        """Trade an OAuth authorisation code for access + refresh tokens."""
        try:
            response = await self._post_token(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._settings.oura_redirect_uri,
                }
            )
        except httpx.HTTPError as exc:
            logger.error("Oura code exchange transport error: %s", exc.__class__.__name__)
            raise ExternalAuthError(None, str(exc)) from exc

        if not response.is_success:
            logger.error("Oura code exchange rejected with status %d", response.status_code)
            raise ExternalAuthError(response.status_code, response.text)

        try:
            token = OuraTokenResponse(**response.json())
        except (ValueError, ValidationError) as exc:
            raise ExternalAuthError(response.status_code, "unexpected token response") from exc
        if not token.refresh_token:
            raise ExternalAuthError(response.status_code, "token response has no refresh_token")

        logger.info("Oura code exchange succeeded, token expires in %ds", token.expires_in)
        return TokenPair.from_response(token)

    async def refresh_token(self, encrypted_refresh_token: str) -> TokenPair:
        """Use a stored (encrypted) refresh token to obtain a new token pair.

        Raises InvalidTokenError without any network call when the stored
        value cannot be decrypted or is implausibly short, and
        RefreshFailedError when Oura rejects the grant.
        """
        try:
            refresh = self._box.decrypt(encrypted_refresh_token)
        except CorruptTokenError as exc:
            logger.error("Stored Oura refresh token failed decryption")
            raise InvalidTokenError("Refresh token could not be decrypted") from exc

        if len(refresh) < _MIN_REFRESH_TOKEN_LENGTH:
            logger.error("Stored Oura refresh token is implausibly short (%d chars)", len(refresh))
            raise InvalidTokenError("Refresh token is invalid")

        try:
            response = await self._post_token(
                {"grant_type": "refresh_token", "refresh_token": refresh}
            )
        except httpx.HTTPError as exc:
            logger.error("Oura token refresh transport error: %s", exc.__class__.__name__)
            raise RefreshFailedError(None, str(exc)) from exc

        if not response.is_success:
            logger.error("Oura token refresh rejected with status %d", response.status_code)
            raise RefreshFailedError(response.status_code, response.text)

        try:
            token = OuraTokenResponse(**response.json())
        except (ValueError, ValidationError) as exc:
            raise RefreshFailedError(response.status_code, "unexpected token response") from exc

        logger.info(
            "Refreshed Oura token (new refresh token: %s, expires in %ds)",
            "yes" if token.refresh_token else "no", token.expires_in,
        )
        return TokenPair.from_response(token)

    def create_authorized_client(
        self, encrypted_access_token: str, trace_id: Optional[str] = None
    ) -> OuraClient:
        """Decrypt the access token and return a ready-to-use OuraClient."""
        trace_id = trace_id or str(uuid.uuid4())
        try:
            access_token = self._box.decrypt(encrypted_access_token)
        except CorruptTokenError as exc:
            logger.error("Stored Oura access token failed decryption [request_id=%s]", trace_id)
            raise InvalidTokenError("Access token could not be decrypted") from exc
        if not access_token:
            raise InvalidTokenError("Access token is empty")

        return OuraClient(
            access_token,
            trace_id=trace_id,
            timeout=self._settings.oura_request_timeout_seconds,
        )

    async def _post_token(self, form: dict) -> httpx.Response:
        data = {
            **form,
            "client_id": self._settings.oura_client_id,
            "client_secret": self._settings.oura_client_secret,
        }
        async with httpx.AsyncClient(timeout=self._settings.oura_request_timeout_seconds) as client:
            return await client.post(OURA_TOKEN_URL, data=data)
