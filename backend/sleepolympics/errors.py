"""
Error Taxonomy
==============
Exceptions raised by the Oura integration and sync pipeline.

Expected sync outcomes (not connected, needs reconnect, rate limited) are
returned as result objects by the services, not raised. These classes are
for the layers underneath: the crypto box, the OAuth client, the provider
API handle and the document store.
"""

from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """The application is misconfigured for the current environment."""


# ---------------------------------------------------------------------------
# Token storage
# ---------------------------------------------------------------------------


class CorruptTokenError(Exception):
    """Stored ciphertext failed authentication or is malformed."""


class InvalidTokenError(Exception):
    """A stored token cannot be used without re-authorisation."""


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class ExternalAuthError(Exception):
    """Oura rejected an authorisation-code exchange."""

    def __init__(self, status_code: Optional[int], body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Oura token exchange failed ({status_code}): {body}")


class RefreshFailedError(Exception):
    """Oura rejected a refresh-token grant."""

    def __init__(self, provider_status: Optional[int], body: str = "") -> None:
        self.provider_status = provider_status
        self.body = body
        super().__init__(f"Oura token refresh failed ({provider_status}): {body}")


class InvalidStateError(Exception):
    """OAuth callback state is missing, unknown, expired or untrustworthy."""


# ---------------------------------------------------------------------------
# Provider data API
# ---------------------------------------------------------------------------


class OuraAPIError(Exception):
    """Non-2xx response from Oura API."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Oura API error {status_code}: {body}")


class RateLimitedError(OuraAPIError):
    """Oura returned 429. No built-in backoff; the caller retries later."""


class OuraResponseFormatError(Exception):
    """Oura answered 2xx but the body is not the documented shape."""


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class MappingError(Exception):
    """One raw Oura record could not be normalised. Non-fatal."""

    def __init__(self, reason: str, index: int = -1, source_id: Optional[str] = None) -> None:
        self.reason = reason
        self.index = index
        self.source_id = source_id
        super().__init__(f"record {index} ({source_id or 'no id'}): {reason}")


class BatchWriteError(Exception):
    """A batch of daily sleep writes failed. Non-fatal to the sync run."""

    def __init__(self, record_count: int, message: str = "") -> None:
        self.record_count = record_count
        super().__init__(message or f"failed to write batch of {record_count} records")
