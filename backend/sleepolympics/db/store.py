"""
Document Store
==============
The keyed store the sync pipeline reads and writes, as a Protocol, plus
the Supabase-backed implementation used in production.

Tables:

    users            id, oura_integration jsonb, ...profile columns
    oauth_states     state (pk), user_id, issued_at, expires_at
    sleep_daily      user_id, date_id, date, score, metrics jsonb, tags text[],
                     notes, source_data jsonb, updated_at
                     UNIQUE(user_id, date_id)
    sleep_summaries  user_id (pk), summary jsonb, updated_at

Integration updates only ever write the ``oura_integration`` column so that
concurrent profile edits on the same user row are not clobbered. Daily
writes are upserts that list only the columns they set (merge semantics).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional, Protocol

from supabase import Client

from sleepolympics.errors import BatchWriteError

logger = logging.getLogger(__name__)

IntegrationMutator = Callable[[dict], dict]


class DocumentStore(Protocol):
    """Storage operations needed by the Oura integration and sync services."""

    async def get_user(self, user_id: str) -> Optional[dict]: ...

    async def update_integration(self, user_id: str, mutate: IntegrationMutator) -> dict:
        """Read-modify-write of ``users.oura_integration``. Returns the new value."""
        ...

    async def put_oauth_state(self, record: dict) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        """Read and delete a state record in one step. None if absent."""
        ...

    async def get_sleep_record(self, user_id: str, date_id: str) -> Optional[dict]: ...

    async def get_sleep_records(self, user_id: str, date_ids: list[str]) -> dict[str, dict]:
        """Existing rows for *date_ids*, keyed by date_id."""
        ...

    async def write_sleep_batch(self, user_id: str, rows: list[dict]) -> None:
        """Merge-upsert *rows*. Raises BatchWriteError if the batch fails."""
        ...

    async def list_sleep_records(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[dict]:
        """Rows with start <= date <= end, date ascending."""
        ...

    async def update_sleep_annotations(
        self,
        user_id: str,
        date_id: str,
        notes: Optional[str],
        tags: Optional[list[str]],
    ) -> Optional[dict]:
        """Set notes/tags on an existing row. None if the row does not exist."""
        ...

    async def get_summary(self, user_id: str) -> Optional[dict]: ...

    async def put_summary(self, user_id: str, summary: dict) -> None:
        """Replace the stored summary wholesale."""
        ...


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _execute(query):
    # supabase-py Client is blocking; keep it off the event loop
    return await asyncio.to_thread(query.execute)


def _single(result) -> Optional[dict]:
    # maybe_single() returns None instead of an empty response on newer clients
    if result is None or not result.data:
        return None
    return result.data


class SupabaseDocumentStore:
    """DocumentStore over Supabase (PostgREST) tables."""

    def __init__(self, client: Client) -> None:
        self._db = client

    # ---- Users / integration ---------------------------------------------

    async def get_user(self, user_id: str) -> Optional[dict]:
        result = await _execute(
            self._db.table("users")
            .select("*")
            .eq("id", user_id)
            .maybe_single()
        )
        return _single(result)

    async def update_integration(self, user_id: str, mutate: IntegrationMutator) -> dict:
        current = await _execute(
            self._db.table("users")
            .select("oura_integration")
            .eq("id", user_id)
            .maybe_single()
        )
        row = _single(current)
        if row is None:
            raise LookupError(f"User not found: {user_id}")

        updated = mutate(dict(row.get("oura_integration") or {}))
        await _execute(
            self._db.table("users").update({"oura_integration": updated}).eq("id", user_id)
        )
        return updated

    # ---- OAuth state -----------------------------------------------------

    async def put_oauth_state(self, record: dict) -> None:
        await _execute(self._db.table("oauth_states").insert(record))

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        # DELETE ... RETURNING: the row comes back to exactly one caller
        result = await _execute(self._db.table("oauth_states").delete().eq("state", state))
        if not result.data:
            return None
        return result.data[0]

    # ---- Daily sleep -----------------------------------------------------

    async def get_sleep_record(self, user_id: str, date_id: str) -> Optional[dict]:
        result = await _execute(
            self._db.table("sleep_daily")
            .select("*")
            .eq("user_id", user_id)
            .eq("date_id", date_id)
            .maybe_single()
        )
        return _single(result)

    async def get_sleep_records(self, user_id: str, date_ids: list[str]) -> dict[str, dict]:
        if not date_ids:
            return {}
        result = await _execute(
            self._db.table("sleep_daily")
            .select("*")
            .eq("user_id", user_id)
            .in_("date_id", date_ids)
        )
        return {row["date_id"]: row for row in (result.data or [])}

    async def write_sleep_batch(self, user_id: str, rows: list[dict]) -> None:
        stamped = [{**row, "user_id": user_id, "updated_at": _now_iso()} for row in rows]
        try:
            await _execute(
                self._db.table("sleep_daily").upsert(stamped, on_conflict="user_id,date_id")
            )
        except Exception as exc:
            logger.error(
                "Batch upsert of %d sleep_daily rows failed for user %s: %s",
                len(rows), user_id, exc,
            )
            raise BatchWriteError(len(rows), str(exc)) from exc

    async def list_sleep_records(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[dict]:
        query = self._db.table("sleep_daily").select("*").eq("user_id", user_id)
        if start is not None:
            query = query.gte("date", start.isoformat())
        if end is not None:
            query = query.lte("date", end.isoformat())
        result = await _execute(query.order("date"))
        return result.data or []

    async def update_sleep_annotations(
        self,
        user_id: str,
        date_id: str,
        notes: Optional[str],
        tags: Optional[list[str]],
    ) -> Optional[dict]:
        changes: dict = {"updated_at": _now_iso()}
        if notes is not None:
            changes["notes"] = notes
        if tags is not None:
            changes["tags"] = tags

        result = await _execute(
            self._db.table("sleep_daily")
            .update(changes)
            .eq("user_id", user_id)
            .eq("date_id", date_id)
        )
        if not result.data:
            return None
        return result.data[0]

    # ---- Summaries -------------------------------------------------------

    async def get_summary(self, user_id: str) -> Optional[dict]:
        result = await _execute(
            self._db.table("sleep_summaries")
            .select("summary")
            .eq("user_id", user_id)
            .maybe_single()
        )
        row = _single(result)
        return row["summary"] if row else None

    async def put_summary(self, user_id: str, summary: dict) -> None:
        await _execute(
            self._db.table("sleep_summaries").upsert(
                {"user_id": user_id, "summary": summary, "updated_at": _now_iso()},
                on_conflict="user_id",
            )
        )
