"""
Supabase Client
===============
Thin wrapper that provides a configured Supabase client for
dependency injection into the document store and auth helper.

Uses the service_role key (not the anon key) because the backend writes
integration state and daily sleep rows on behalf of authenticated users.
RLS still protects direct client access from the app.
"""

from functools import lru_cache

from supabase import Client, create_client

from sleepolympics.config import get_settings


@lru_cache
def get_supabase_client() -> Client:
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_key)
