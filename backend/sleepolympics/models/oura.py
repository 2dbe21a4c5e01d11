"""
Oura Integration Models
=======================
Pydantic shapes for the Oura OAuth token endpoint and for the per-user
integration state stored in ``users.oura_integration``.

The integration record holds encrypted tokens. It is never returned to
clients as-is; routers expose ``ConnectionStatus`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


class OuraTokenResponse(BaseModel):
    """Response from the Oura OAuth /oauth/token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 86400  # seconds until expiry
    token_type: Optional[str] = None
    scope: Optional[str] = None
    user_id: Optional[str] = None  # Oura's own user id, informational


@dataclass(frozen=True)
class TokenPair:
    """Plaintext tokens as returned by a successful grant. Never persisted as-is."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    provider_user_id: Optional[str] = None

    @classmethod
    def from_response(cls, payload: OuraTokenResponse) -> "TokenPair":
        return cls(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_in=payload.expires_in,
            provider_user_id=payload.user_id,
        )

    def __repr__(self) -> str:
        return f"TokenPair(expires_in={self.expires_in}, provider_user_id={self.provider_user_id!r})"


class SyncStats(BaseModel):
    """Counts from the last sync run that reached the provider."""

    processed: int = 0
    failed: int = 0
    total_fetched: int = 0
    first_date: Optional[date] = None
    last_date: Optional[date] = None


class OuraIntegration(BaseModel):
    """Stored Oura connection state, one per user."""

    connected: bool = False
    access_token: Optional[str] = None   # ciphertext
    refresh_token: Optional[str] = None  # ciphertext
    expires_at: Optional[datetime] = None
    last_refreshed: Optional[datetime] = None
    last_sync_date: Optional[datetime] = None
    token_invalid: bool = False
    connected_at: Optional[datetime] = None
    provider_user_id: Optional[str] = None
    last_sync_stats: Optional[SyncStats] = None

    @classmethod
    def from_user(cls, user: Optional[dict]) -> "OuraIntegration":
        """Read the integration sub-object from a user row (missing → disconnected)."""
        raw = (user or {}).get("oura_integration") or {}
        return cls.model_validate(raw)

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def to_store(self) -> dict:
        return self.model_dump(mode="json")


class OAuthState(BaseModel):
    """Ephemeral CSRF binding between an authorise request and its callback."""

    state: str
    user_id: str
    issued_at: datetime
    expires_at: datetime


class ConnectionStatus(BaseModel):
    """Client-safe view of the integration. No token material."""

    connected: bool
    needs_reconnect: bool = False
    connected_at: Optional[datetime] = None
    last_sync_date: Optional[datetime] = None


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str
