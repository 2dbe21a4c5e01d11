"""
Sync Reconciler
===============
Pulls Oura daily sleep for a user and merge-upserts it into ``sleep_daily``.

Pipeline for one run:
    1. Obtain a usable token (TokenLifecycleManager). Skips end the run.
    2. Compute the fetch window: trailing ``sync_lookback_months`` on first
       sync, otherwise the day after the last sync (never older than the
       lookback) through today, UTC calendar days.
    3. One provider call for the window; failures are classified into
       reconnect / rate limited / provider unavailable results.
    4. Normalise with the Record Mapper.
    5. Merge-upsert in bounded batches. User-owned tags and notes on
       existing days are carried forward. A failing batch is counted as
       failed and the next batch still runs.
    6. Bookkeeping on the integration: last_sync_date, token_invalid
       cleared, last_sync_stats.
    7. Summary recomputation in the background. Its failure is logged and
       never reaches the caller.

``sync`` never raises for provider-side or partial-data problems. It always
returns a SyncResult. Only a missing user id is a hard error.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from sleepolympics.config import Settings
from sleepolympics.db.store import DocumentStore
from sleepolympics.errors import (
    InvalidTokenError,
    OuraAPIError,
    OuraResponseFormatError,
    RateLimitedError,
)
from sleepolympics.models.oura import OuraIntegration, SyncStats
from sleepolympics.models.sleep import DailySleepRecord, SyncResult
from sleepolympics.services.oura import OuraOAuthClient
from sleepolympics.services.record_mapper import map_records
from sleepolympics.services.summary import SummaryAggregator
from sleepolympics.services.token_manager import (
    REASON_NEEDS_RECONNECT,
    SyncSkipped,
    TokenLifecycleManager,
)

logger = logging.getLogger(__name__)

REASON_USER_NOT_FOUND = "user not found"
REASON_RATE_LIMITED = "rate limited"
REASON_PROVIDER_UNAVAILABLE = "provider unavailable"
REASON_INVALID_RESPONSE = "invalid provider response"

_AUTH_FAILURE_STATUSES = (401, 403)


# ---------------------------------------------------------------------------
# Window selection
# ---------------------------------------------------------------------------

def months_before(day: date, months: int) -> date:
    """Same day-of-month *months* earlier, clamped to the month's length."""
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def compute_sync_window(
    last_sync_date: Optional[datetime], today: date, lookback_months: int
) -> tuple[date, date]:
    """Inclusive (start, end) calendar days to fetch. start > end means nothing to do."""
    floor = months_before(today, lookback_months)
    if last_sync_date is None:
        return floor, today
    if last_sync_date.tzinfo is not None:
        last_sync_date = last_sync_date.astimezone(timezone.utc)
    return max(last_sync_date.date() + timedelta(days=1), floor), today


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncReconciler:
    """Runs Oura → sleep_daily sync for one user at a time."""

    def __init__(
        self,
        store: DocumentStore,
        tokens: TokenLifecycleManager,
        oauth: OuraOAuthClient,
        summaries: SummaryAggregator,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._oauth = oauth
        self._summaries = summaries
        self._settings = settings
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    async def sync(self, user_id: str) -> SyncResult:
        if not user_id:
            raise ValueError("user_id is required")

        user = await self._store.get_user(user_id)
        if user is None:
            logger.error("User not found for sync: %s", user_id)
            return SyncResult(skipped_reason=REASON_USER_NOT_FOUND)

        token = await self._tokens.ensure_usable_token(user)
        if isinstance(token, SyncSkipped):
            logger.info("Skipping Oura sync for user %s: %s", user_id, token.reason)
            return SyncResult(skipped_reason=token.reason, needs_reconnect=token.needs_reconnect)

        integration = OuraIntegration.from_user(user)
        now = self._clock()
        start, end = compute_sync_window(
            integration.last_sync_date, now.date(), self._settings.sync_lookback_months
        )
        if start > end:
            logger.info("Oura data for user %s already synced through %s", user_id, end)
            return SyncResult()

        # ---- Fetch -----------------------------------------------------
        trace_id = str(uuid.uuid4())
        logger.info("Fetching Oura sleep %s..%s for user %s [request_id=%s]", start, end, user_id, trace_id)
        try:
            client = self._oauth.create_authorized_client(token, trace_id)
            raw_records = await client.fetch_daily_sleep(start, end)
        except InvalidTokenError:
            await self._tokens.mark_token_invalid(user_id)
            return SyncResult(skipped_reason=REASON_NEEDS_RECONNECT, needs_reconnect=True)
        except RateLimitedError:
            logger.warning("Oura rate limit hit for user %s [request_id=%s]", user_id, trace_id)
            return SyncResult(skipped_reason=REASON_RATE_LIMITED)
        except OuraAPIError as exc:
            if exc.status_code in _AUTH_FAILURE_STATUSES:
                logger.warning("Oura rejected credentials for user %s (%d)", user_id, exc.status_code)
                await self._tokens.mark_token_invalid(user_id)
                return SyncResult(skipped_reason=REASON_NEEDS_RECONNECT, needs_reconnect=True)
            logger.error("Oura API error %d for user %s [request_id=%s]", exc.status_code, user_id, trace_id)
            return SyncResult(skipped_reason=REASON_PROVIDER_UNAVAILABLE)
        except OuraResponseFormatError as exc:
            logger.error("Invalid Oura response for user %s: %s [request_id=%s]", user_id, exc, trace_id)
            return SyncResult(skipped_reason=REASON_INVALID_RESPONSE)
        except httpx.HTTPError as exc:
            logger.error(
                "Oura request failed for user %s: %s [request_id=%s]",
                user_id, exc.__class__.__name__, trace_id,
            )
            return SyncResult(skipped_reason=REASON_PROVIDER_UNAVAILABLE)

        # ---- Normalise + merge ----------------------------------------
        outcome = map_records(raw_records, user_id)
        written, failed = await self._merge_upsert(user_id, outcome.records)
        failed += len(outcome.errors)

        stats = SyncStats(
            processed=len(written),
            failed=failed,
            total_fetched=len(raw_records),
            first_date=written[0].date if written else None,
            last_date=written[-1].date if written else None,
        )
        await self._record_sync(user_id, now, stats)

        if written:
            self._schedule_summary(user_id)

        logger.info(
            "Oura sync for user %s: %d processed, %d failed, %d fetched",
            user_id, stats.processed, stats.failed, stats.total_fetched,
        )
        return SyncResult(
            processed=stats.processed,
            failed=stats.failed,
            total_fetched=stats.total_fetched,
            mapping_errors=len(outcome.errors),
        )

    async def wait_for_background(self) -> None:
        """Await pending summary recomputations (tests, graceful shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ---- Internals -------------------------------------------------------

    async def _merge_upsert(
        self, user_id: str, records: list[DailySleepRecord]
    ) -> tuple[list[DailySleepRecord], int]:
        """Write *records* in batches. Returns (written records in date order, failed count)."""
        # One row per day; a later duplicate from Oura supersedes the earlier one
        by_day = {record.date_id: record for record in records}
        ordered = [by_day[date_id] for date_id in sorted(by_day)]

        written: list[DailySleepRecord] = []
        failed = 0
        size = self._settings.sync_batch_size

        for offset in range(0, len(ordered), size):
            batch = ordered[offset:offset + size]
            try:
                existing = await self._store.get_sleep_records(
                    user_id, [record.date_id for record in batch]
                )
                rows = [_merged_row(record, existing.get(record.date_id)) for record in batch]
                await self._store.write_sleep_batch(user_id, rows)
            except Exception as exc:
                logger.error(
                    "Sleep batch %d-%d failed for user %s: %s",
                    offset, offset + len(batch) - 1, user_id, exc,
                )
                failed += len(batch)
                continue
            written.extend(batch)

        return written, failed

    async def _record_sync(self, user_id: str, now: datetime, stats: SyncStats) -> None:
        def apply(current: dict) -> dict:
            current.update(
                last_sync_date=now.isoformat(),
                token_invalid=False,
                last_sync_stats=stats.model_dump(mode="json"),
            )
            return current

        await self._store.update_integration(user_id, apply)

    def _schedule_summary(self, user_id: str) -> None:
        task = asyncio.create_task(self._recompute_summary(user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _recompute_summary(self, user_id: str) -> None:
        try:
            await self._summaries.recompute(user_id)
        except Exception:
            logger.exception("Sleep summary recompute failed for user %s", user_id)


def _merged_row(record: DailySleepRecord, existing: Optional[dict]) -> dict:
    """Row for *record*, carrying forward user-owned fields from *existing*."""
    row = record.to_row()
    row.pop("updated_at", None)
    if existing:
        row["tags"] = existing.get("tags") or []
        row["notes"] = existing.get("notes") or ""
    return row
