"""Platform-side models: records, changes and change pages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class PlatformUnavailableError(Exception):
    """The platform health subsystem cannot be reached at all."""


@dataclass(frozen=True)
class SleepStage:
    """One contiguous stage inside a sleep session."""

    stage: str  # 'rem' | 'deep' | 'light' | 'awake' | other platform labels
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class HealthRecord:
    """A platform health record.

    Instant readings (weight, HRV, ...) set ``time``; interval records
    (steps, sleep, exercise, ...) set ``start_time``/``end_time``. Measured
    quantities live in ``values`` under type-specific keys, e.g.
    ``{"kilograms": 71.4}`` or ``{"systolic_mmhg": 121, "diastolic_mmhg": 79}``.
    """

    record_id: str
    data_type: str
    time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    values: dict[str, Any] = field(default_factory=dict)
    stages: tuple[SleepStage, ...] = ()

    @property
    def anchor_time(self) -> datetime | None:
        """The instant a record is dated by: end of an interval, else its time."""
        return self.end_time or self.time or self.start_time


@dataclass(frozen=True)
class RecordChange:
    """One entry of a change feed.

    Upserts carry the full record; deletions only the record id.
    """

    record_id: str
    record: HealthRecord | None = None

    @property
    def is_deletion(self) -> bool:
        return self.record is None


@dataclass(frozen=True)
class ChangesPage:
    """A page of the platform's change feed."""

    changes: list[RecordChange] = field(default_factory=list)
    next_token: str = ""
    has_more: bool = False
    token_expired: bool = False
