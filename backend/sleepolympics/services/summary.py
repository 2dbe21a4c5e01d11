"""
Summary Aggregator
==================
Recomputes a user's SleepSummary from their daily records.

The summary is entirely derived: it is rebuilt from scratch after every
sync (and on a read-miss) and written as a full replace, never patched.
History is bounded to ``summary_history_days`` to keep the cost flat.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import pandas as pd

from sleepolympics.config import Settings
from sleepolympics.db.store import DocumentStore
from sleepolympics.models.sleep import (
    MonthlyAverage,
    OverallStats,
    PeriodAverage,
    SleepSummary,
    StreakStats,
)

logger = logging.getLogger(__name__)

TREND_MONTHS = 6


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def calculate_streak(scores: Iterable[tuple[date, int]], threshold: int) -> StreakStats:
    """Current and longest run of consecutive records scoring >= threshold.

    A run is "current" only if it reaches the most recent record. On equal
    lengths the most recent run is reported as the longest.
    """
    current = longest = 0
    current_start: Optional[date] = None
    longest_start: Optional[date] = None
    longest_end: Optional[date] = None

    for day, score in sorted(scores, key=lambda item: item[0]):
        if score >= threshold:
            if current == 0:
                current_start = day
            current += 1
            if current >= longest:
                longest, longest_start, longest_end = current, current_start, day
        else:
            current = 0

    return StreakStats(
        threshold=threshold,
        current=current,
        longest=longest,
        longest_start=longest_start,
        longest_end=longest_end,
    )


def _month_bounds(today: date) -> tuple[date, date, date]:
    """(current month start, previous month start, previous month end)."""
    current_start = today.replace(day=1)
    previous_end = current_start - timedelta(days=1)
    return current_start, previous_end.replace(day=1), previous_end


def _mean(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    return round(float(series.mean()), 1)


def build_summary(user_id: str, rows: list[dict], now: datetime, settings: Settings) -> Optional[SleepSummary]:
    """Compute the summary for *rows* (daily record dicts). None when empty."""
    scored = [row for row in rows if row.get("score") is not None and row.get("date")]
    if not scored:
        return None

    df = pd.DataFrame({"date": [row["date"] for row in scored], "score": [row["score"] for row in scored]})
    df["date"] = pd.to_datetime(df["date"]).dt.date
    df["score"] = df["score"].astype(int)
    df = df.sort_values("date").reset_index(drop=True)

    today = now.date()
    current_start, previous_start, previous_end = _month_bounds(today)
    current_mask = (df["date"] >= current_start) & (df["date"] <= today)
    previous_mask = (df["date"] >= previous_start) & (df["date"] <= previous_end)

    # Best ties go to the earliest date, worst ties to the latest
    best = df.sort_values(["score", "date"], ascending=[False, True]).iloc[0]
    worst = df.sort_values(["score", "date"], ascending=[True, False]).iloc[0]

    df["month"] = df["date"].map(lambda d: d.strftime("%Y-%m"))
    monthly = df.groupby("month")["score"].mean().sort_index().tail(TREND_MONTHS)

    pairs = list(zip(df["date"], df["score"]))

    return SleepSummary(
        user_id=user_id,
        updated_at=now,
        record_count=len(df),
        current_month=PeriodAverage(
            average=_mean(df.loc[current_mask, "score"]),
            start_date=current_start,
            end_date=today,
        ),
        previous_month=PeriodAverage(
            average=_mean(df.loc[previous_mask, "score"]),
            start_date=previous_start,
            end_date=previous_end,
        ),
        overall=OverallStats(
            average=_mean(df["score"]),
            best_score=int(best["score"]),
            best_score_date=best["date"],
            worst_score=int(worst["score"]),
            worst_score_date=worst["date"],
        ),
        good_streak=calculate_streak(pairs, settings.good_score_threshold),
        excellent_streak=calculate_streak(pairs, settings.excellent_score_threshold),
        monthly_trend=[
            MonthlyAverage(month=month, average=round(float(avg), 1))
            for month, avg in monthly.items()
        ],
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SummaryAggregator:
    """Rebuilds and stores per-user sleep summaries."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    async def recompute(self, user_id: str) -> Optional[SleepSummary]:
        """Rebuild the summary for *user_id*; None (and no write) if there are no records."""
        now = self._clock()
        start = now.date() - timedelta(days=self._settings.summary_history_days)
        rows = await self._store.list_sleep_records(user_id, start=start)

        summary = build_summary(user_id, rows, now, self._settings)
        if summary is None:
            logger.debug("No sleep records for user %s, no summary written", user_id)
            return None

        await self._store.put_summary(user_id, summary.model_dump(mode="json"))
        logger.info("Recomputed sleep summary for user %s from %d records", user_id, summary.record_count)
        return summary

    async def get_or_recompute(self, user_id: str) -> Optional[SleepSummary]:
        stored = await self._store.get_summary(user_id)
        if stored:
            return SleepSummary.model_validate(stored)
        return await self.recompute(user_id)
