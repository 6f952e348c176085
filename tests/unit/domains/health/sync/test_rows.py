"""Tests for outbox entry -> remote row translation."""

from __future__ import annotations

import pytest

from vitalsync.core.storage.models import UPSERT, OutboxEntry
from vitalsync.domains.health.sync.record_types import TABLES_FOR_TYPE
from vitalsync.domains.health.sync.rows import (
    InvalidPayloadError,
    build_rows,
    exercise_type_name,
)


def _entry(data_type: str, payload: dict, **kwargs) -> OutboxEntry:
    return OutboxEntry(
        source_id=kwargs.pop("source_id", "rec-1"),
        data_type=data_type,
        operation=UPSERT,
        date=kwargs.pop("date", "2026-10-15"),
        payload=payload,
        id=1,
    )


class TestCommonColumns:
    def test_identity_columns(self):
        rows = build_rows(_entry("steps", {"value_count": 900}), source="health_connect", user_id="u-1")
        assert rows == [("steps_daily", {
            "date": "2026-10-15",
            "source": "health_connect",
            "source_measure_id": "rec-1",
            "user_id": "u-1",
            "value_count": 900,
        })]

    def test_user_id_omitted_when_unset(self):
        (_table, row), = build_rows(_entry("hrv", {"value_ms": 48.0}), source="health_connect")
        assert "user_id" not in row
        assert row["value_rmssd_ms"] == 48.0

    def test_rows_only_target_known_tables(self):
        rows = build_rows(_entry("weight", {"value_kg": 70}), source="hc")
        assert {table for table, _ in rows} <= set(TABLES_FOR_TYPE["weight"])


class TestSleepFanOut:
    def test_full_session(self):
        payload = {
            "duration_minutes": 450,
            "start_time": "2026-10-14T23:00:00+00:00",
            "end_time": "2026-10-15T06:30:00+00:00",
            "rem_minutes": 90, "deep_minutes": 80, "light_minutes": 250, "awake_minutes": 30,
        }
        rows = dict(build_rows(_entry("sleep", payload), source="health_connect"))
        assert rows["sleep_duration_daily"]["value_hours"] == 7.5
        assert rows["fell_asleep_time_daily"]["value_at"] == payload["start_time"]
        assert rows["woke_up_time_daily"]["value_at"] == payload["end_time"]
        assert rows["sleep_stages_daily"]["deep_minutes"] == 80

    def test_no_stage_row_without_stage_data(self):
        payload = {"duration_minutes": 420, "rem_minutes": 0, "deep_minutes": 0,
                   "light_minutes": 0, "awake_minutes": 15}
        tables = [table for table, _ in build_rows(_entry("sleep", payload), source="hc")]
        assert tables == ["sleep_duration_daily"]

    def test_session_without_duration_gets_zero_hours(self):
        rows = build_rows(_entry("sleep", {}), source="hc")
        assert [table for table, _ in rows] == ["sleep_duration_daily"]
        assert rows[0][1]["value_hours"] == 0.0

    def test_times_without_duration(self):
        payload = {"start_time": "2026-10-14T23:00:00+00:00"}
        rows = dict(build_rows(_entry("sleep", payload), source="hc"))
        assert rows["sleep_duration_daily"]["value_hours"] == 0.0
        assert rows["fell_asleep_time_daily"]["value_at"] == payload["start_time"]


class TestValidation:
    def test_missing_required_value(self):
        with pytest.raises(InvalidPayloadError, match="value_kg"):
            build_rows(_entry("weight", {}), source="hc")

    def test_blood_pressure_needs_both_values(self):
        with pytest.raises(InvalidPayloadError, match="diastolic"):
            build_rows(_entry("blood_pressure", {"systolic_mmhg": 120}), source="hc")

    def test_missing_date(self):
        with pytest.raises(InvalidPayloadError, match="no date"):
            build_rows(_entry("steps", {"value_count": 1}, date=""), source="hc")

    def test_unknown_type(self):
        with pytest.raises(InvalidPayloadError, match="Unknown data type"):
            build_rows(_entry("mood", {"value": 3}), source="hc")


class TestTypeSpecific:
    def test_exercise_activity_name(self):
        (_table, row), = build_rows(
            _entry("exercise", {"duration_minutes": 42, "exercise_type": 54}), source="hc"
        )
        assert row["value_minutes"] == 42
        assert row["activity_type"] == "RUNNING"

    def test_unmapped_exercise_type(self):
        assert exercise_type_name(9999) == "OTHER"
        assert exercise_type_name(None) == "OTHER"

    def test_blood_glucose_meal_type(self):
        (_table, row), = build_rows(
            _entry("blood_glucose", {"value_mmol_l": 5.1, "meal_type": "FASTING"}), source="hc"
        )
        assert row["meal_type"] == "FASTING"
