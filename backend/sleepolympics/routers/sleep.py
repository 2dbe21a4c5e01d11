"""
Sleep Router
============
POST /api/v1/sleep/sync               — Pull Oura data for the current user
GET  /api/v1/sleep/summary            — Derived statistics (computed on miss)
GET  /api/v1/sleep                    — Daily records for a date range
GET  /api/v1/sleep/{date_id}          — One day
PUT  /api/v1/sleep/{date_id}/notes    — Update the user's notes and tags

Sync always answers 200. A run that could not talk to Oura carries a
``skipped_reason`` and, when the user has to re-authorise,
``needs_reconnect``. Losing a sync must never break the app session.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from sleepolympics.db.store import DocumentStore
from sleepolympics.dependencies import (
    get_current_user,
    get_store,
    get_summary_aggregator,
    get_sync_reconciler,
)
from sleepolympics.models.sleep import (
    DailySleepRecord,
    SleepNoteUpdate,
    SleepRangeResponse,
    SleepSummary,
    SyncResult,
)
from sleepolympics.services.summary import SummaryAggregator
from sleepolympics.services.sync import SyncReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sleep", tags=["sleep"])

DEFAULT_RANGE_DAYS = 7
MAX_RANGE_DAYS = 90


@router.post(
    "/sync",
    response_model=SyncResult,
    status_code=status.HTTP_200_OK,
    summary="Sync sleep data from Oura",
    description=(
        "Fetch new Oura daily sleep since the last sync (six months on first "
        "sync) and merge it into the user's records. User notes and tags are "
        "preserved."
    ),
)
async def sync_sleep(
    user: dict = Depends(get_current_user),
    reconciler: SyncReconciler = Depends(get_sync_reconciler),
) -> SyncResult:
    return await reconciler.sync(user["id"])


@router.get("/summary", response_model=SleepSummary, summary="Sleep summary")
async def get_summary(
    user: dict = Depends(get_current_user),
    summaries: SummaryAggregator = Depends(get_summary_aggregator),
) -> SleepSummary:
    summary = await summaries.get_or_recompute(user["id"])
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "No sleep data to summarise yet", "code": "summary_not_found"},
        )
    return summary


@router.get("", response_model=SleepRangeResponse, summary="Sleep records for a date range")
async def get_sleep_range(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    days: Optional[int] = Query(default=None, ge=1, le=MAX_RANGE_DAYS),
    user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
) -> SleepRangeResponse:
    today = datetime.now(timezone.utc).date()

    if days is not None:
        start, end = today - timedelta(days=days), today
    elif start_date and end_date:
        start, end = start_date, end_date
    elif start_date or end_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Provide both start_date and end_date", "code": "invalid_range"},
        )
    else:
        start, end = today - timedelta(days=DEFAULT_RANGE_DAYS), today

    if start > end or (end - start).days > MAX_RANGE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": f"Date range must be ascending and at most {MAX_RANGE_DAYS} days",
                "code": "invalid_range",
            },
        )

    rows = await store.list_sleep_records(user["id"], start=start, end=end)
    records = [DailySleepRecord.model_validate(row) for row in rows]
    return SleepRangeResponse(sleep_data=records, no_data=not records)


@router.get("/{date_id}", response_model=DailySleepRecord, summary="Sleep record for one day")
async def get_sleep_day(
    date_id: date,
    user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
) -> DailySleepRecord:
    row = await store.get_sleep_record(user["id"], date_id.isoformat())
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Sleep data not found for this date", "code": "sleep_not_found"},
        )
    return DailySleepRecord.model_validate(row)


@router.put("/{date_id}/notes", response_model=DailySleepRecord, summary="Update notes and tags")
async def update_sleep_notes(
    date_id: date,
    body: SleepNoteUpdate,
    user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
) -> DailySleepRecord:
    if body.notes is None and body.tags is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Provide notes and/or tags", "code": "empty_update"},
        )

    row = await store.update_sleep_annotations(user["id"], date_id.isoformat(), body.notes, body.tags)
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Sleep data not found for this date", "code": "sleep_not_found"},
        )
    return DailySleepRecord.model_validate(row)
