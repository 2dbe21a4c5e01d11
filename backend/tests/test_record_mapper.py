"""
Tests for Record Mapper
=======================
Covers:
- Day and score resolution, rejection of unusable records
- v2 detail fields used verbatim, v1 short names, nested ``sleep`` object
- Contributor-based estimates and the estimated source_type
- Batch mapping collects errors without dropping good records

Run: pytest tests/test_record_mapper.py -v
"""

from __future__ import annotations

from datetime import date

import pytest

from conftest import USER_ID
from sleepolympics.errors import MappingError
from sleepolympics.models.sleep import SOURCE_TYPE_ESTIMATED, SOURCE_TYPE_EXACT
from sleepolympics.services.record_mapper import map_record, map_records

_V2_DETAIL = {
    "id": "8d2c6b0e-sleep",
    "day": "2024-01-12",
    "score": 80,
    "total_sleep_duration": 27000,
    "deep_sleep_duration": 5400,
    "rem_sleep_duration": 6000,
    "light_sleep_duration": 15600,
    "onset_latency": 600,
    "efficiency": 92,
    "average_heart_rate": 55.5,
    "lowest_heart_rate": 48,
    "average_hrv": 42,
    "average_breath": 14.5,
}

_V1_SUMMARY = {
    "summary_date": "2024-01-12",
    "score": 77,
    "total": 25200,
    "deep": 3600,
    "rem": 5400,
    "light": 16200,
    "latency": 900,
    "efficiency": 88,
    "hr_average": 56,
    "hr_lowest": 50,
    "rmssd": 40,
    "breath_average": 15,
}

_V2_DAILY = {
    "id": "daily-1",
    "day": "2024-01-12",
    "score": 82,
    "contributors": {
        "total_sleep": 100,
        "deep_sleep": 50,
        "rem_sleep": 100,
        "latency": 100,
        "efficiency": 90,
    },
}


# ---------------------------------------------------------------------------
# TestRequiredFields
# ---------------------------------------------------------------------------

class TestRequiredFields:

    def test_missing_day_raises(self):
        with pytest.raises(MappingError):
            map_record({"score": 80}, USER_ID)

    def test_unparseable_day_raises(self):
        with pytest.raises(MappingError):
            map_record({"day": "yesterday", "score": 80}, USER_ID)

    def test_missing_score_raises(self):
        with pytest.raises(MappingError) as exc_info:
            map_record({"day": "2024-01-12", "id": "abc"}, USER_ID, index=3)

        assert exc_info.value.index == 3
        assert exc_info.value.source_id == "abc"

    @pytest.mark.parametrize("score", [-1, 101, "high", True])
    def test_bad_score_raises(self, score):
        with pytest.raises(MappingError):
            map_record({"day": "2024-01-12", "score": score}, USER_ID)

    def test_non_object_raises(self):
        with pytest.raises(MappingError):
            map_record(["2024-01-12", 80], USER_ID)

    def test_day_falls_back_to_bedtime_start(self):
        record = map_record({"bedtime_start": "2024-01-12T23:10:00+01:00", "score": 70}, USER_ID)
        assert record.date == date(2024, 1, 12)

    def test_score_falls_back_to_sleep_score(self):
        record = map_record({"day": "2024-01-12", "sleep_score": 64}, USER_ID)
        assert record.score == 64


# ---------------------------------------------------------------------------
# TestExactFields
# ---------------------------------------------------------------------------

class TestExactFields:

    def test_v2_detail_fields_used_verbatim(self):
        record = map_record(_V2_DETAIL, USER_ID)

        assert record.user_id == USER_ID
        assert record.date_id == "2024-01-12"
        assert record.score == 80
        assert record.metrics.total_sleep_seconds == 27000
        assert record.metrics.deep_sleep_seconds == 5400
        assert record.metrics.rem_sleep_seconds == 6000
        assert record.metrics.light_sleep_seconds == 15600
        assert record.metrics.latency_seconds == 600
        assert record.metrics.efficiency_percent == 92
        assert record.metrics.heart_rate_avg == 55.5
        assert record.metrics.heart_rate_lowest == 48
        assert record.metrics.hrv == 42
        assert record.metrics.respiratory_rate == 14.5
        assert record.source_data.source_type == SOURCE_TYPE_EXACT
        assert record.source_data.source_id == "8d2c6b0e-sleep"

    def test_v1_short_names(self):
        record = map_record(_V1_SUMMARY, USER_ID)

        assert record.date_id == "2024-01-12"
        assert record.metrics.total_sleep_seconds == 25200
        assert record.metrics.deep_sleep_seconds == 3600
        assert record.metrics.light_sleep_seconds == 16200
        assert record.metrics.latency_seconds == 900
        assert record.metrics.hrv == 40
        assert record.metrics.respiratory_rate == 15
        assert record.source_data.source_type == SOURCE_TYPE_EXACT
        assert record.source_data.source_id == "oura-2024-01-12"

    def test_nested_sleep_object(self):
        raw = {
            "day": "2024-01-12",
            "score": 75,
            "sleep": {
                "total_sleep_duration": 26000,
                "deep_sleep_duration": 5000,
                "rem_sleep_duration": 5500,
                "light_sleep_duration": 15500,
                "onset_latency": 300,
                "efficiency": 90,
            },
        }
        record = map_record(raw, USER_ID)

        assert record.metrics.total_sleep_seconds == 26000
        assert record.metrics.latency_seconds == 300
        assert record.source_data.source_type == SOURCE_TYPE_EXACT

    def test_absent_optional_measures_stay_null(self):
        raw = {key: value for key, value in _V2_DETAIL.items() if key != "average_hrv"}
        assert map_record(raw, USER_ID).metrics.hrv is None

    def test_new_records_have_empty_annotations(self):
        record = map_record(_V2_DETAIL, USER_ID)
        assert record.tags == []
        assert record.notes == ""


# ---------------------------------------------------------------------------
# TestEstimates
# ---------------------------------------------------------------------------

class TestEstimates:

    def test_contributor_estimates(self):
        record = map_record(_V2_DAILY, USER_ID)

        assert record.metrics.total_sleep_seconds == 28800
        assert record.metrics.deep_sleep_seconds == 2880
        assert record.metrics.rem_sleep_seconds == 6336
        assert record.metrics.light_sleep_seconds == 28800 - 2880 - 6336
        assert record.metrics.latency_seconds == 0
        assert record.metrics.efficiency_percent == 90
        assert record.source_data.source_type == SOURCE_TYPE_ESTIMATED
        assert record.is_estimated

    def test_missing_contributors_use_defaults(self):
        record = map_record({"day": "2024-01-12", "score": 70}, USER_ID)

        assert record.metrics.total_sleep_seconds == 25920  # 28800 x 90%
        assert record.metrics.latency_seconds == 360  # 1800 x (1 - 80%)
        assert record.source_data.source_type == SOURCE_TYPE_ESTIMATED

    def test_single_estimated_field_marks_record(self):
        raw = {key: value for key, value in _V2_DETAIL.items() if key != "onset_latency"}
        record = map_record(raw, USER_ID)

        assert record.metrics.total_sleep_seconds == 27000
        assert record.source_data.source_type == SOURCE_TYPE_ESTIMATED


# ---------------------------------------------------------------------------
# TestMapRecords
# ---------------------------------------------------------------------------

class TestMapRecords:

    def test_collects_errors_and_keeps_good_records(self):
        outcome = map_records([_V2_DETAIL, {"score": 50}, "garbage", _V1_SUMMARY], USER_ID)

        assert len(outcome.records) == 2
        assert [error.index for error in outcome.errors] == [1, 2]

    def test_empty_input(self):
        outcome = map_records([], USER_ID)
        assert outcome.records == []
        assert outcome.errors == []


# ---------------------------------------------------------------------------
# TestNonFiniteValues
# ---------------------------------------------------------------------------

class TestNonFiniteValues:

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), "nan", "Infinity"])
    def test_non_finite_duration_treated_as_unreported(self, value):
        raw = {**_V2_DETAIL, "total_sleep_duration": value}
        record = map_record(raw, USER_ID)

        # Falls through to the contributor estimate (default 90% of 8 h)
        assert record.metrics.total_sleep_seconds == 25920
        assert record.source_data.source_type == SOURCE_TYPE_ESTIMATED

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_non_finite_measure_stays_null(self, value):
        record = map_record({**_V2_DETAIL, "average_hrv": value}, USER_ID)
        assert record.metrics.hrv is None

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "NaN"])
    def test_non_finite_score_is_a_mapping_error(self, value):
        with pytest.raises(MappingError):
            map_record({"day": "2024-01-12", "score": value}, USER_ID)

    def test_huge_integer_is_not_a_number(self):
        with pytest.raises(MappingError):
            map_record({"day": "2024-01-12", "score": 10**400}, USER_ID)

    def test_batch_with_non_finite_values_does_not_raise(self):
        outcome = map_records(
            [
                _V2_DETAIL,
                {"day": "2024-01-13", "score": 80, "total_sleep_duration": float("nan")},
                {"day": "2024-01-14", "score": float("nan")},
            ],
            USER_ID,
        )

        assert [record.date_id for record in outcome.records] == ["2024-01-12", "2024-01-13"]
        assert [error.index for error in outcome.errors] == [2]
