"""
Token Lifecycle Manager
=======================
Owns the per-user Oura integration state machine:

    DISCONNECTED      --authorise + callback-->  CONNECTED_VALID
    CONNECTED_VALID   --now >= expires_at----->  NEEDS_REFRESH
    NEEDS_REFRESH     --refresh ok------------>  CONNECTED_VALID
    NEEDS_REFRESH     --refresh failed-------->  CONNECTED_INVALID
    CONNECTED_INVALID --re-authorise---------->  CONNECTED_VALID
    any connected     --disconnect------------>  DISCONNECTED

``ensure_usable_token`` never raises for the expected failure modes. A
disconnected or unrefreshable integration degrades to ``SyncSkipped`` so
that a sync hiccup never breaks the user's session flow.

All writes go through ``DocumentStore.update_integration`` which touches
only the ``oura_integration`` column.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from pydantic import ValidationError

from sleepolympics.config import Settings
from sleepolympics.db.store import DocumentStore
from sleepolympics.errors import InvalidStateError, InvalidTokenError, RefreshFailedError
from sleepolympics.models.oura import ConnectionStatus, OAuthState, OuraIntegration
from sleepolympics.services.oura import OuraOAuthClient
from sleepolympics.services.secret_box import SecretBox

logger = logging.getLogger(__name__)

REASON_NOT_CONNECTED = "not connected"
REASON_NEEDS_RECONNECT = "needs reconnect"

# Supabase auth ids are UUIDs; anything much shorter was not issued by us.
_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,128}$")


@dataclass(frozen=True)
class SyncSkipped:
    """A sync cannot talk to Oura right now. Not an error."""

    reason: str
    needs_reconnect: bool = False


def compute_expires_at(expires_in: int, safety_margin: int, now: datetime) -> datetime:
    """Local expiry: Oura's lifetime minus the safety margin, never in the past."""
    return now + timedelta(seconds=max(expires_in - safety_margin, 0))


def is_plausible_user_id(user_id: object) -> bool:
    return isinstance(user_id, str) and bool(_USER_ID_PATTERN.match(user_id))


def _as_utc(value: datetime) -> datetime:
    # Normalise to UTC if naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Decides whether a stored Oura token is usable and keeps it that way."""

    def __init__(
        self,
        store: DocumentStore,
        oauth: OuraOAuthClient,
        secret_box: SecretBox,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._box = secret_box
        self._settings = settings
        self._clock = clock

    # ---- Usable token ----------------------------------------------------

    async def ensure_usable_token(self, user: dict) -> Union[str, SyncSkipped]:
        """Return the (encrypted) access token to use, refreshing at most once.

        The returned value is ready for ``OuraOAuthClient.create_authorized_client``.
        """
        user_id = user.get("id")
        integration = OuraIntegration.from_user(user)

        if not integration.connected or not integration.has_tokens:
            return SyncSkipped(REASON_NOT_CONNECTED)

        if integration.token_invalid:
            logger.info("Oura token for user %s is marked invalid, skipping provider calls", user_id)
            return SyncSkipped(REASON_NEEDS_RECONNECT, needs_reconnect=True)

        now = self._clock()
        if integration.expires_at is not None and now < _as_utc(integration.expires_at):
            return integration.access_token

        logger.info("Refreshing expired Oura token for user %s", user_id)
        try:
            pair = await self._oauth.refresh_token(integration.refresh_token)
        except (InvalidTokenError, RefreshFailedError) as exc:
            logger.warning("Oura token refresh failed for user %s: %s", user_id, exc.__class__.__name__)
            await self.mark_token_invalid(user_id)
            return SyncSkipped(REASON_NEEDS_RECONNECT, needs_reconnect=True)

        access_token = self._box.encrypt(pair.access_token)
        # Oura may omit a new refresh token; the old one stays valid then
        refresh_token = (
            self._box.encrypt(pair.refresh_token) if pair.refresh_token else integration.refresh_token
        )
        expires_at = compute_expires_at(
            pair.expires_in, self._settings.token_expiry_safety_margin_seconds, now
        )

        def apply(current: dict) -> dict:
            current.update(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at.isoformat(),
                last_refreshed=now.isoformat(),
                token_invalid=False,
            )
            return current

        await self._store.update_integration(user_id, apply)
        logger.info("New Oura token for user %s will expire at %s", user_id, expires_at.isoformat())
        return access_token

    async def mark_token_invalid(self, user_id: str) -> None:
        def apply(current: dict) -> dict:
            current["token_invalid"] = True
            return current

        await self._store.update_integration(user_id, apply)
        logger.info("Marked Oura connection as invalid for user %s", user_id)

    # ---- Authorisation flow ----------------------------------------------

    async def begin_authorization(self, user_id: str) -> str:
        """Create a one-time state record and return the Oura authorise URL."""
        if not is_plausible_user_id(user_id):
            raise ValueError("user_id is required")

        now = self._clock()
        record = OAuthState(
            state=secrets.token_urlsafe(32),
            user_id=user_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=self._settings.oauth_state_ttl_minutes),
        )
        await self._store.put_oauth_state(record.model_dump(mode="json"))
        logger.info("Initiating Oura OAuth flow for user %s", user_id)
        return self._oauth.build_authorization_url(record.state)

    async def complete_authorization(self, state: Optional[str], code: Optional[str]) -> OuraIntegration:
        """Validate the callback state, exchange the code, persist the integration.

        The state record is consumed before anything else can fail, so a
        replayed state is always rejected.
        """
        if not state:
            raise InvalidStateError("Missing state parameter")

        raw = await self._store.pop_oauth_state(state)
        if raw is None:
            raise InvalidStateError("Invalid or expired authorization session")

        try:
            record = OAuthState.model_validate(raw)
        except ValidationError as exc:
            raise InvalidStateError("Malformed authorization session") from exc

        now = self._clock()
        if now >= _as_utc(record.expires_at):
            raise InvalidStateError("Authorization session expired")
        if not is_plausible_user_id(record.user_id):
            logger.error("Implausible user id in OAuth state (length %d)", len(record.user_id))
            raise InvalidStateError("Invalid user identification")
        if not code:
            raise InvalidStateError("Missing authorization code")

        pair = await self._oauth.exchange_code(code)
        access_token = self._box.encrypt(pair.access_token)
        refresh_token = self._box.encrypt(pair.refresh_token)
        expires_at = compute_expires_at(
            pair.expires_in, self._settings.token_expiry_safety_margin_seconds, now
        )

        def apply(current: dict) -> dict:
            previous = OuraIntegration.model_validate(current)
            if previous.connected:
                logger.info("User %s already had Oura connected, replacing tokens", record.user_id)
            return OuraIntegration(
                connected=True,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                last_refreshed=now,
                last_sync_date=previous.last_sync_date,
                last_sync_stats=previous.last_sync_stats,
                token_invalid=False,
                connected_at=now,
                provider_user_id=pair.provider_user_id,
            ).to_store()

        updated = await self._store.update_integration(record.user_id, apply)
        logger.info("Oura integration connected for user %s", record.user_id)
        return OuraIntegration.model_validate(updated)

    async def disconnect(self, user_id: str) -> None:
        await self._store.update_integration(
            user_id, lambda _current: OuraIntegration(connected=False).to_store()
        )
        logger.info("Disconnected Oura integration for user %s", user_id)

    def connection_status(self, user: dict) -> ConnectionStatus:
        integration = OuraIntegration.from_user(user)
        return ConnectionStatus(
            connected=integration.connected,
            needs_reconnect=integration.connected and integration.token_invalid,
            connected_at=integration.connected_at,
            last_sync_date=integration.last_sync_date,
        )
