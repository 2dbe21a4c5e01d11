"""
Dependency Wiring
=================
FastAPI dependencies that build the service graph from settings.

Every service takes its collaborators in its constructor; this module is
the only place that decides which concrete ones are used. Tests override
these with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from sleepolympics.config import get_settings
from sleepolympics.db.store import DocumentStore, SupabaseDocumentStore
from sleepolympics.db.supabase import get_supabase_client
from sleepolympics.services.oura import OuraOAuthClient
from sleepolympics.services.secret_box import get_secret_box
from sleepolympics.services.summary import SummaryAggregator
from sleepolympics.services.sync import SyncReconciler
from sleepolympics.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


@lru_cache
def get_store() -> DocumentStore:
    return SupabaseDocumentStore(get_supabase_client())


@lru_cache
def get_oauth_client() -> OuraOAuthClient:
    return OuraOAuthClient(get_settings(), get_secret_box())


@lru_cache
def get_token_manager() -> TokenLifecycleManager:
    return TokenLifecycleManager(get_store(), get_oauth_client(), get_secret_box(), get_settings())


@lru_cache
def get_summary_aggregator() -> SummaryAggregator:
    return SummaryAggregator(get_store(), get_settings())


@lru_cache
def get_sync_reconciler() -> SyncReconciler:
    # Cached: the reconciler owns the background summary tasks
    return SyncReconciler(
        get_store(),
        get_token_manager(),
        get_oauth_client(),
        get_summary_aggregator(),
        get_settings(),
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def verify_bearer_token(
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> str:
    """Verify the JWT and return the authenticated user id.

    Raises HTTPException 401 if the token is invalid or missing.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Missing or invalid authorization header", "code": "auth_required"},
        )

    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Empty bearer token", "code": "auth_required"},
        )

    try:
        auth_response = get_supabase_client().auth.get_user(token)
    except Exception as exc:
        logger.warning("Auth token verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid or expired token", "code": "auth_invalid"},
        ) from exc

    if not auth_response or not auth_response.user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "User not found for token", "code": "auth_invalid"},
        )

    return auth_response.user.id


async def get_current_user(
    user_id: str = Depends(verify_bearer_token),
    store: DocumentStore = Depends(get_store),
) -> dict:
    """The authenticated user's row, including ``oura_integration``."""
    user = await store.get_user(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "User profile not found", "code": "user_not_found"},
        )
    return user
