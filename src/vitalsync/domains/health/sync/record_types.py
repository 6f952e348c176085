"""Static tables describing every tracked health data type.

Adding a tracked type means adding one row to each table here plus an
extractor and a row builder; no schema change is involved.
"""

from __future__ import annotations

SLEEP = "sleep"
HRV = "hrv"
RESTING_HR = "resting_hr"
STEPS = "steps"
EXERCISE = "exercise"
WEIGHT = "weight"
BODY_FAT = "body_fat"
HYDRATION = "hydration"
BLOOD_PRESSURE = "blood_pressure"
BLOOD_GLUCOSE = "blood_glucose"
SPO2 = "spo2"
RESPIRATORY_RATE = "respiratory_rate"
SKIN_TEMP = "skin_temp"

# Processing order of a sync run
SUPPORTED_TYPES: tuple[str, ...] = (
    SLEEP,
    HRV,
    RESTING_HR,
    STEPS,
    EXERCISE,
    WEIGHT,
    BODY_FAT,
    HYDRATION,
    BLOOD_PRESSURE,
    BLOOD_GLUCOSE,
    SPO2,
    RESPIRATORY_RATE,
    SKIN_TEMP,
)

# Data type -> metric name in the remote metric_settings
METRIC_FOR_TYPE: dict[str, str] = {
    SLEEP: "sleep_duration_daily",
    HRV: "hrv_daily",
    RESTING_HR: "resting_hr_daily",
    STEPS: "steps_daily",
    EXERCISE: "time_in_high_hr_zones_daily",
    WEIGHT: "weight_daily",
    BODY_FAT: "body_fat_daily",
    HYDRATION: "hydration_daily",
    BLOOD_PRESSURE: "blood_pressure_daily",
    BLOOD_GLUCOSE: "blood_glucose_daily",
    SPO2: "spo2_daily",
    RESPIRATORY_RATE: "respiratory_rate_daily",
    SKIN_TEMP: "skin_temp_daily",
}

# Data type -> every remote table an UPSERT may write (and a DELETE clears)
TABLES_FOR_TYPE: dict[str, tuple[str, ...]] = {
    SLEEP: (
        "sleep_duration_daily",
        "fell_asleep_time_daily",
        "woke_up_time_daily",
        "sleep_stages_daily",
    ),
    HRV: ("hrv_daily",),
    RESTING_HR: ("resting_hr_daily",),
    STEPS: ("steps_daily",),
    EXERCISE: ("time_in_high_hr_zones_daily",),
    WEIGHT: ("weight_daily",),
    BODY_FAT: ("body_fat_daily",),
    HYDRATION: ("hydration_daily",),
    BLOOD_PRESSURE: ("blood_pressure_daily",),
    BLOOD_GLUCOSE: ("blood_glucose_daily",),
    SPO2: ("spo2_daily",),
    RESPIRATORY_RATE: ("respiratory_rate_daily",),
    SKIN_TEMP: ("skin_temp_daily",),
}

# Natural conflict key shared by every metric table
CONFLICT_KEY = "user_id,source,date"


def is_supported(data_type: str) -> bool:
    return data_type in METRIC_FOR_TYPE
