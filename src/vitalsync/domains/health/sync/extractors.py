"""Platform record -> outbox payload extraction.

One extractor per data type, selected once through :data:`EXTRACTORS`. Every
extractor is total over its record shape: a missing optional measurement
leaves its key out of the payload instead of raising.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone, tzinfo
from typing import Any

from vitalsync.domains.health.connectors.models import HealthRecord
from vitalsync.domains.health.sync import record_types as rt

Extractor = Callable[[HealthRecord], dict[str, Any]]

_SLEEP_STAGE_KEYS = {
    "rem": "rem_minutes",
    "deep": "deep_minutes",
    "light": "light_minutes",
    "awake": "awake_minutes",
}


class ExtractionError(Exception):
    """Raised when no extractor exists for a data type."""


def _minutes_between(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() // 60)


def _copy_values(record: HealthRecord, mapping: dict[str, str]) -> dict[str, Any]:
    """Copy present ``values`` keys to payload keys (``{source: target}``)."""
    return {
        target: record.values[source]
        for source, target in mapping.items()
        if record.values.get(source) is not None
    }


def _interval_times(record: HealthRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    duration = _minutes_between(record.start_time, record.end_time)
    if duration is not None:
        payload["duration_minutes"] = duration
    if record.start_time is not None:
        payload["start_time"] = record.start_time.isoformat()
    if record.end_time is not None:
        payload["end_time"] = record.end_time.isoformat()
    return payload


# ---------------------------------------------------------------------------
# Per-type extractors
# ---------------------------------------------------------------------------

def extract_sleep(record: HealthRecord) -> dict[str, Any]:
    """Session duration plus minutes bucketed per sleep stage."""
    payload = _interval_times(record)
    buckets = dict.fromkeys(_SLEEP_STAGE_KEYS.values(), 0)
    for stage in record.stages:
        key = _SLEEP_STAGE_KEYS.get(stage.stage.lower())
        if key is None:
            continue
        buckets[key] += _minutes_between(stage.start_time, stage.end_time) or 0
    payload.update(buckets)
    return payload


def extract_exercise(record: HealthRecord) -> dict[str, Any]:
    payload = _interval_times(record)
    payload.update(_copy_values(record, {"exercise_type": "exercise_type"}))
    return payload


def extract_blood_glucose(record: HealthRecord) -> dict[str, Any]:
    payload = _copy_values(record, {"mmol_per_l": "value_mmol_l"})
    payload["meal_type"] = str(record.values.get("relation_to_meal") or "GENERAL")
    return payload


def _values(**mapping: str) -> Extractor:
    """Extractor copying measurements straight across (``source=target``)."""

    def extract(record: HealthRecord) -> dict[str, Any]:
        return _copy_values(record, mapping)

    return extract


EXTRACTORS: dict[str, Extractor] = {
    rt.SLEEP: extract_sleep,
    rt.HRV: _values(rmssd_ms="value_ms"),
    rt.RESTING_HR: _values(bpm="value_bpm"),
    rt.STEPS: _values(count="value_count"),
    rt.EXERCISE: extract_exercise,
    rt.WEIGHT: _values(kilograms="value_kg"),
    rt.BODY_FAT: _values(percent="value_pct"),
    rt.HYDRATION: _values(milliliters="value_ml"),
    rt.BLOOD_PRESSURE: _values(systolic_mmhg="systolic_mmhg", diastolic_mmhg="diastolic_mmhg"),
    rt.BLOOD_GLUCOSE: extract_blood_glucose,
    rt.SPO2: _values(percent="value_pct"),
    rt.RESPIRATORY_RATE: _values(rate="value_bpm"),
    rt.SKIN_TEMP: _values(celsius="value_celsius"),
}


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def extract_payload(data_type: str, record: HealthRecord) -> dict[str, Any]:
    """Run the extractor registered for ``data_type``.

    Raises:
        ExtractionError: If ``data_type`` has no extractor.
    """
    extractor = EXTRACTORS.get(data_type)
    if extractor is None:
        raise ExtractionError(f"Unsupported data type: {data_type!r}")
    return extractor(record)


def record_date(record: HealthRecord, tz: tzinfo | None = None) -> str:
    """Local calendar date (``YYYY-MM-DD``) a record belongs to.

    Interval records are dated by their end, instants by their time. Naive
    datetimes are taken as UTC. ``tz=None`` uses the host's local zone.
    Returns "" when the record carries no time at all.
    """
    anchor = record.anchor_time
    if anchor is None:
        return ""
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)
    return anchor.astimezone(tz).date().isoformat()
