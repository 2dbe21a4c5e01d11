"""
Sleep Schemas
=============
Canonical daily sleep records, derived summaries and the sync result
returned to the app.

Key design decisions:
- Every metric is Optional. Oura does not report every field on every API
  version and we do not fabricate values, with one documented exception:
  stage durations estimated from contributor percentages, flagged via
  ``source_data.source_type``.
- ``tags`` and ``notes`` belong to the user. Sync carries them forward and
  only the notes endpoint changes them.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

SOURCE_TYPE_EXACT = "oura_sleep"
SOURCE_TYPE_ESTIMATED = "oura_sleep_estimated"


# ---------------------------------------------------------------------------
# Daily records
# ---------------------------------------------------------------------------

class SleepMetrics(BaseModel):
    total_sleep_seconds: Optional[int] = None
    efficiency_percent: Optional[float] = None
    deep_sleep_seconds: Optional[int] = None
    rem_sleep_seconds: Optional[int] = None
    light_sleep_seconds: Optional[int] = None
    latency_seconds: Optional[int] = None
    heart_rate_avg: Optional[float] = None
    heart_rate_lowest: Optional[float] = None
    hrv: Optional[float] = None
    respiratory_rate: Optional[float] = None


class SourceData(BaseModel):
    """Provenance of a daily record. Informational only."""

    provider: str = "oura"
    source_type: str = SOURCE_TYPE_EXACT
    source_id: str


class DailySleepRecord(BaseModel):
    """One user's normalised sleep for one calendar day."""

    user_id: str
    date_id: str  # ISO calendar date, the record key with user_id
    date: date
    score: int = Field(..., ge=0, le=100)
    metrics: SleepMetrics = Field(default_factory=SleepMetrics)
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    source_data: Optional[SourceData] = None
    updated_at: Optional[datetime] = None

    @property
    def is_estimated(self) -> bool:
        return bool(self.source_data and self.source_data.source_type == SOURCE_TYPE_ESTIMATED)

    def to_row(self) -> dict:
        """Column dict for the ``sleep_daily`` table."""
        return self.model_dump(mode="json")


class SleepNoteUpdate(BaseModel):
    """Payload for the manual notes/tags endpoint. Touches nothing else."""

    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[list[str]] = Field(default=None, max_length=20)


class SleepRangeResponse(BaseModel):
    sleep_data: list[DailySleepRecord]
    no_data: bool


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

class PeriodAverage(BaseModel):
    average: float
    start_date: date
    end_date: date


class OverallStats(BaseModel):
    average: float
    best_score: int
    best_score_date: date
    worst_score: int
    worst_score_date: date


class StreakStats(BaseModel):
    threshold: int
    current: int = 0
    longest: int = 0
    longest_start: Optional[date] = None
    longest_end: Optional[date] = None


class MonthlyAverage(BaseModel):
    month: str  # YYYY-MM
    average: float


class SleepSummary(BaseModel):
    """Derived statistics for one user. Rewritten wholesale on every recompute."""

    user_id: str
    updated_at: datetime
    record_count: int
    current_month: PeriodAverage
    previous_month: PeriodAverage
    overall: OverallStats
    good_streak: StreakStats
    excellent_streak: StreakStats
    monthly_trend: list[MonthlyAverage]


# ---------------------------------------------------------------------------
# Sync result (caller-facing)
# ---------------------------------------------------------------------------

class SyncResult(BaseModel):
    """What a sync run did. Returned with HTTP 200 even when nothing happened."""

    processed: int = 0
    failed: int = 0
    total_fetched: int = 0
    skipped_reason: Optional[str] = None
    needs_reconnect: bool = False
    mapping_errors: int = 0
