"""Outbox entry -> remote table rows.

Each UPSERT entry becomes one or more ``(table, row)`` pairs. Sleep sessions
fan out into duration, fell-asleep, woke-up and stage tables; every other
type writes a single metric table. Rows always carry ``date``, ``source`` and
``source_measure_id`` so the remote upsert is idempotent under
``user_id,source,date``.
"""

from __future__ import annotations

from typing import Any

from vitalsync.core.storage.models import OutboxEntry
from vitalsync.domains.health.sync import record_types as rt

TableRow = tuple[str, dict[str, Any]]

EXERCISE_TYPE_NAMES: dict[int, str] = {
    1: "BACK_EXTENSION", 2: "BADMINTON", 3: "BARBELL_SHOULDER_PRESS", 4: "BASEBALL",
    5: "BASKETBALL", 8: "BIKING", 9: "BIKING_STATIONARY", 10: "BOOT_CAMP", 12: "BOXING",
    14: "BURPEE", 16: "CALISTHENICS", 17: "CRICKET", 18: "CRUNCH", 19: "DANCING",
    20: "DEADLIFT", 22: "ELLIPTICAL", 24: "FENCING", 25: "FOOTBALL_AMERICAN",
    26: "FOOTBALL_AUSTRALIAN", 28: "GOLF", 29: "GUIDED_BREATHING", 30: "GYMNASTICS",
    31: "HANDBALL", 32: "HIGH_INTENSITY_INTERVAL_TRAINING", 33: "HIKING",
    34: "ICE_HOCKEY", 35: "ICE_SKATING", 37: "JUMPING_JACK", 39: "LAT_PULL_DOWN",
    40: "LUNGE", 41: "MARTIAL_ARTS", 44: "PADDLING", 45: "PARAGLIDING", 46: "PILATES",
    47: "PLANK", 48: "RACQUETBALL", 49: "ROCK_CLIMBING", 50: "ROLLER_HOCKEY",
    51: "ROWING", 52: "ROWING_MACHINE", 53: "RUGBY", 54: "RUNNING",
    55: "RUNNING_TREADMILL", 56: "SAILING", 57: "SCUBA_DIVING", 58: "SKATING",
    59: "SKIING", 60: "SNOWBOARDING", 61: "SNOWSHOEING", 62: "SOCCER", 63: "SOFTBALL",
    64: "SQUASH", 65: "SQUAT", 66: "STAIR_CLIMBING", 67: "STAIR_CLIMBING_MACHINE",
    68: "STRENGTH_TRAINING", 69: "STRETCHING", 70: "SURFING", 71: "SWIMMING_OPEN_WATER",
    72: "SWIMMING_POOL", 73: "TABLE_TENNIS", 74: "TENNIS", 75: "VOLLEYBALL",
    76: "WALKING", 77: "WATER_POLO", 78: "WEIGHTLIFTING", 79: "WHEELCHAIR", 80: "YOGA",
}

# Single-table types: data type -> ((payload key, column), ...) all required
_VALUE_COLUMNS: dict[str, tuple[tuple[str, str], ...]] = {
    rt.HRV: (("value_ms", "value_rmssd_ms"),),
    rt.RESTING_HR: (("value_bpm", "value_bpm"),),
    rt.STEPS: (("value_count", "value_count"),),
    rt.WEIGHT: (("value_kg", "value_kg"),),
    rt.BODY_FAT: (("value_pct", "value_pct"),),
    rt.HYDRATION: (("value_ml", "value_ml"),),
    rt.BLOOD_PRESSURE: (("systolic_mmhg", "systolic_mmhg"), ("diastolic_mmhg", "diastolic_mmhg")),
    rt.BLOOD_GLUCOSE: (("value_mmol_l", "value_mmol_l"),),
    rt.SPO2: (("value_pct", "value_pct"),),
    rt.RESPIRATORY_RATE: (("value_bpm", "value_bpm"),),
    rt.SKIN_TEMP: (("value_celsius", "value_celsius"),),
}


class InvalidPayloadError(Exception):
    """An outbox entry cannot be turned into remote rows; retrying won't help."""


def exercise_type_name(exercise_type: Any) -> str:
    try:
        return EXERCISE_TYPE_NAMES.get(int(exercise_type), "OTHER")
    except (TypeError, ValueError):
        return "OTHER"


def build_rows(entry: OutboxEntry, *, source: str, user_id: str = "") -> list[TableRow]:
    """Translate an UPSERT entry into the rows it writes.

    Raises:
        InvalidPayloadError: Unknown data type, missing date, or a required
            measurement absent from the payload.
    """
    if entry.data_type not in rt.TABLES_FOR_TYPE:
        raise InvalidPayloadError(f"Unknown data type: {entry.data_type!r}")
    if not entry.date:
        raise InvalidPayloadError(f"Entry {entry.id} has no date")

    base: dict[str, Any] = {
        "date": entry.date,
        "source": source,
        "source_measure_id": entry.source_id,
    }
    if user_id:
        base["user_id"] = user_id

    payload = entry.payload
    if entry.data_type == rt.SLEEP:
        rows = _sleep_rows(base, payload)
    elif entry.data_type == rt.EXERCISE:
        rows = [("time_in_high_hr_zones_daily", {
            **base,
            "value_minutes": int(payload.get("duration_minutes") or 0),
            "activity_type": exercise_type_name(payload.get("exercise_type")),
        })]
    else:
        row = dict(base)
        for key, column in _VALUE_COLUMNS[entry.data_type]:
            if payload.get(key) is None:
                raise InvalidPayloadError(f"Missing {key} for {entry.data_type}")
            row[column] = payload[key]
        if entry.data_type == rt.BLOOD_GLUCOSE:
            row["meal_type"] = payload.get("meal_type") or "GENERAL"
        rows = [(rt.TABLES_FOR_TYPE[entry.data_type][0], row)]

    return rows


def _sleep_rows(base: dict[str, Any], payload: dict[str, Any]) -> list[TableRow]:
    # Every session gets a duration row, 0 h when the device reported none
    rows: list[TableRow] = [("sleep_duration_daily", {
        **base, "value_hours": round((payload.get("duration_minutes") or 0) / 60.0, 4),
    })]
    if payload.get("start_time"):
        rows.append(("fell_asleep_time_daily", {**base, "value_at": payload["start_time"]}))
    if payload.get("end_time"):
        rows.append(("woke_up_time_daily", {**base, "value_at": payload["end_time"]}))

    stages = {
        key: int(payload.get(key) or 0)
        for key in ("rem_minutes", "deep_minutes", "light_minutes", "awake_minutes")
    }
    if stages["rem_minutes"] or stages["deep_minutes"] or stages["light_minutes"]:
        rows.append(("sleep_stages_daily", {**base, **stages}))
    return rows
