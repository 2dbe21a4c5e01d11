"""
Record Mapper
=============
Normalises raw Oura ``daily_sleep`` items into DailySleepRecord.

Oura payloads differ by API version: v1 summaries use ``summary_date`` and
short duration names (``total``, ``deep``, ``rem``), v2 detail items use
``total_sleep_duration`` and friends, and the v2 daily summary only exposes
percentage *contributors*. Each field is therefore resolved by an ordered
list of named strategies; the first one that yields a value wins:

    direct top-level field  ->  same field under ``sleep``  ->  estimate

The estimate exists because some API versions expose no raw durations at
all. It assumes an 8 hour baseline and typical stage ratios:

    total   = 28800s x total_sleep%
    deep    = total x 0.20 x deep_sleep%
    rem     = total x 0.22 x rem_sleep%
    light   = total - deep - rem
    latency = 1800s x (1 - latency%)

Any estimated value marks the record ``oura_sleep_estimated``.

Pure: no I/O, no clock. Records without a usable day or score are dropped
and reported as MappingError, never silently.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Optional

from pydantic import ValidationError

from sleepolympics.errors import MappingError
from sleepolympics.models.sleep import (
    SOURCE_TYPE_ESTIMATED,
    SOURCE_TYPE_EXACT,
    DailySleepRecord,
    SleepMetrics,
    SourceData,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Estimation constants
# ---------------------------------------------------------------------------

BASELINE_SLEEP_SECONDS = 28800  # 8 hours
DEEP_SLEEP_RATIO = 0.20
REM_SLEEP_RATIO = 0.22
MAX_LATENCY_SECONDS = 1800

# Contributor defaults when the payload omits one
DEFAULT_TOTAL_CONTRIBUTOR = 90
DEFAULT_DEEP_CONTRIBUTOR = 90
DEFAULT_REM_CONTRIBUTOR = 90
DEFAULT_LATENCY_CONTRIBUTOR = 80


# ---------------------------------------------------------------------------
# Strategy plumbing
# ---------------------------------------------------------------------------

@dataclass
class _Context:
    raw: dict
    resolved: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Strategy:
    """One way of reading a field. ``extract`` returns None to decline."""

    name: str
    extract: Callable[[_Context], Optional[Any]]
    estimated: bool = False


def _number(value: Any) -> Optional[float]:
    """Finite float from an int, float or numeric string; None otherwise."""
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    # NaN and Infinity are valid JSON to httpx but not measurements
    return number if math.isfinite(number) else None


def _direct(name: str) -> Strategy:
    return Strategy(name, lambda ctx: _number(ctx.raw.get(name)))


def _nested(container: str, name: str) -> Strategy:
    def extract(ctx: _Context) -> Optional[float]:
        inner = ctx.raw.get(container)
        return _number(inner.get(name)) if isinstance(inner, dict) else None

    return Strategy(f"{container}.{name}", extract)


def _contributor(raw: dict, name: str, default: float) -> float:
    contributors = raw.get("contributors")
    value = _number(contributors.get(name)) if isinstance(contributors, dict) else None
    if value is None:
        return default
    return min(max(value, 0.0), 100.0)


def _calendar_day(name: str) -> Strategy:
    def extract(ctx: _Context) -> Optional[date]:
        value = ctx.raw.get(name)
        if not isinstance(value, str) or len(value) < 10:
            return None
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None

    return Strategy(name, extract)


def _resolve(strategies: list[Strategy], ctx: _Context) -> tuple[Optional[Any], Optional[Strategy]]:
    for strategy in strategies:
        value = strategy.extract(ctx)
        if value is not None:
            return value, strategy
    return None, None


# ---------------------------------------------------------------------------
# Estimates (last resort in each duration chain)
# ---------------------------------------------------------------------------

def _estimate_total(ctx: _Context) -> float:
    return BASELINE_SLEEP_SECONDS * _contributor(ctx.raw, "total_sleep", DEFAULT_TOTAL_CONTRIBUTOR) / 100


def _estimate_deep(ctx: _Context) -> float:
    pct = _contributor(ctx.raw, "deep_sleep", DEFAULT_DEEP_CONTRIBUTOR)
    return ctx.resolved["total_sleep_seconds"] * DEEP_SLEEP_RATIO * pct / 100


def _estimate_rem(ctx: _Context) -> float:
    pct = _contributor(ctx.raw, "rem_sleep", DEFAULT_REM_CONTRIBUTOR)
    return ctx.resolved["total_sleep_seconds"] * REM_SLEEP_RATIO * pct / 100


def _estimate_light(ctx: _Context) -> float:
    r = ctx.resolved
    return max(r["total_sleep_seconds"] - r["deep_sleep_seconds"] - r["rem_sleep_seconds"], 0)


def _estimate_latency(ctx: _Context) -> float:
    return MAX_LATENCY_SECONDS * (1 - _contributor(ctx.raw, "latency", DEFAULT_LATENCY_CONTRIBUTOR) / 100)


def _efficiency_contributor(ctx: _Context) -> Optional[float]:
    contributors = ctx.raw.get("contributors")
    return _number(contributors.get("efficiency")) if isinstance(contributors, dict) else None


def _duration_chain(metric: str, names: tuple[str, ...], estimate: Callable[[_Context], float]) -> list[Strategy]:
    chain = [_direct(name) for name in names]
    chain += [_nested("sleep", name) for name in names]
    chain.append(Strategy(f"estimate:{metric}", estimate, estimated=True))
    return chain


def _optional_chain(names: tuple[str, ...]) -> list[Strategy]:
    return [_direct(name) for name in names] + [_nested("sleep", name) for name in names]


DAY_STRATEGIES = [
    _calendar_day("day"),
    _calendar_day("summary_date"),
    _calendar_day("date"),
    _calendar_day("bedtime_start"),
]

SCORE_STRATEGIES = [
    _direct("score"),
    _direct("sleep_score"),
    _nested("score_nested", "total"),
]

# Resolution order matters: light and the stage estimates read the total.
DURATION_STRATEGIES: list[tuple[str, list[Strategy]]] = [
    ("total_sleep_seconds", _duration_chain("total", ("total_sleep_duration", "total"), _estimate_total)),
    ("deep_sleep_seconds", _duration_chain("deep", ("deep_sleep_duration", "deep"), _estimate_deep)),
    ("rem_sleep_seconds", _duration_chain("rem", ("rem_sleep_duration", "rem"), _estimate_rem)),
    ("light_sleep_seconds", _duration_chain("light", ("light_sleep_duration", "light"), _estimate_light)),
    ("latency_seconds", _duration_chain("latency", ("onset_latency", "latency"), _estimate_latency)),
]

MEASURE_STRATEGIES: list[tuple[str, list[Strategy]]] = [
    (
        "efficiency_percent",
        _optional_chain(("efficiency",))
        + [Strategy("contributors.efficiency", _efficiency_contributor, estimated=True)],
    ),
    ("heart_rate_avg", _optional_chain(("hr_average", "average_heart_rate"))),
    ("heart_rate_lowest", _optional_chain(("hr_lowest", "lowest_heart_rate"))),
    ("hrv", _optional_chain(("rmssd", "average_hrv"))),
    ("respiratory_rate", _optional_chain(("breath_average", "average_breath"))),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass
class MappingOutcome:
    records: list[DailySleepRecord]
    errors: list[MappingError]


def map_record(raw: Any, user_id: str, index: int = -1) -> DailySleepRecord:
    """Normalise one raw item or raise MappingError."""
    if not isinstance(raw, dict):
        raise MappingError("record is not an object", index)

    source_id = raw.get("id") if isinstance(raw.get("id"), str) else None
    ctx = _Context(raw)

    day, _ = _resolve(DAY_STRATEGIES, ctx)
    if day is None:
        raise MappingError("missing or unparseable day", index, source_id)

    score, _ = _resolve(SCORE_STRATEGIES, ctx)
    if score is None:
        raise MappingError("missing or non-numeric score", index, source_id)
    if not 0 <= score <= 100:
        raise MappingError(f"score {score:g} outside 0-100", index, source_id)

    estimated = False
    for metric, chain in DURATION_STRATEGIES:
        value, strategy = _resolve(chain, ctx)
        ctx.resolved[metric] = value
        estimated = estimated or strategy.estimated

    measures: dict[str, Optional[float]] = {}
    for metric, chain in MEASURE_STRATEGIES:
        value, strategy = _resolve(chain, ctx)
        measures[metric] = value
        estimated = estimated or bool(strategy and strategy.estimated)

    date_id = day.isoformat()
    try:
        durations = {metric: round(value) for metric, value in ctx.resolved.items()}
    except (ValueError, OverflowError) as exc:
        raise MappingError(f"unrepresentable duration: {exc}", index, source_id) from exc

    try:
        return DailySleepRecord(
            user_id=user_id,
            date_id=date_id,
            date=day,
            score=round(score),
            metrics=SleepMetrics(
                **durations,
                **measures,
            ),
            source_data=SourceData(
                source_type=SOURCE_TYPE_ESTIMATED if estimated else SOURCE_TYPE_EXACT,
                source_id=source_id or f"oura-{date_id}",
            ),
        )
    except ValidationError as exc:
        raise MappingError(f"invalid normalised record: {exc.error_count()} errors", index, source_id) from exc


def map_records(raw_records: list[Any], user_id: str) -> MappingOutcome:
    """Normalise a batch of raw items, collecting per-record errors."""
    records: list[DailySleepRecord] = []
    errors: list[MappingError] = []

    for index, raw in enumerate(raw_records):
        try:
            records.append(map_record(raw, user_id, index))
        except MappingError as exc:
            logger.warning("Skipping Oura record for user %s: %s", user_id, exc)
            errors.append(exc)

    return MappingOutcome(records=records, errors=errors)
