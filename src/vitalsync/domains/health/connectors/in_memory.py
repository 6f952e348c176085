"""In-memory health platform with a change feed. Always available.

Used as the default data source when no device platform is wired in, and as
the platform double throughout the test suite. Semantics follow a
Health Connect-style store: records are upserted or deleted, every mutation
appends to a change log, and change tokens are cursors into that log scoped
to a set of data types.
"""

from __future__ import annotations

import itertools
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime

from vitalsync.domains.health.connectors.models import (
    ChangesPage,
    HealthRecord,
    PlatformUnavailableError,
    RecordChange,
)


@dataclass(frozen=True)
class _Cursor:
    position: int
    data_types: frozenset[str]


@dataclass(frozen=True)
class _LogEntry:
    data_type: str
    change: RecordChange


class InMemoryHealthPlatform:
    """Dict-backed ``HealthDataSource``.

    Usage::

        platform = InMemoryHealthPlatform(authorized_types=["steps"])
        platform.upsert_record(HealthRecord("r1", "steps", ...))
        token = await platform.request_change_token({"steps"})
    """

    def __init__(
        self,
        authorized_types: Collection[str] | None = None,
        *,
        page_size: int = 100,
        available: bool = True,
    ) -> None:
        self._authorized = list(authorized_types) if authorized_types is not None else []
        self._page_size = page_size
        self.available = available
        self._records: dict[str, HealthRecord] = {}
        self._log: list[_LogEntry] = []
        self._cursors: dict[str, _Cursor] = {}
        self._expired: set[str] = set()
        self._token_ids = itertools.count(1)
        self._failures: dict[str, Exception] = {}
        self.pull_count = 0

    # ------------------------------------------------------------------
    # Mutation / test controls
    # ------------------------------------------------------------------

    def authorize(self, *data_types: str) -> None:
        for data_type in data_types:
            if data_type not in self._authorized:
                self._authorized.append(data_type)

    def upsert_record(self, record: HealthRecord) -> None:
        self._records[record.record_id] = record
        self._log.append(_LogEntry(record.data_type, RecordChange(record.record_id, record)))

    def delete_record(self, record_id: str) -> None:
        record = self._records.pop(record_id, None)
        if record is None:
            raise KeyError(record_id)
        self._log.append(_LogEntry(record.data_type, RecordChange(record_id)))

    def expire_token(self, token: str) -> None:
        self._expired.add(token)

    def fail_type(self, data_type: str, exc: Exception) -> None:
        """Make every read or pull touching ``data_type`` raise ``exc``."""
        self._failures[data_type] = exc

    # ------------------------------------------------------------------
    # HealthDataSource
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        return self.available

    async def list_authorized_types(self) -> list[str]:
        self._check_available()
        return list(self._authorized)

    async def request_change_token(self, data_types: Collection[str]) -> str:
        self._check_available()
        return self._issue(len(self._log), frozenset(data_types))

    async def pull_changes(self, token: str) -> ChangesPage:
        self._check_available()
        self.pull_count += 1
        if token in self._expired:
            return ChangesPage(token_expired=True)
        cursor = self._cursors.get(token)
        if cursor is None:
            # Unknown tokens behave like expired ones on the real platform
            return ChangesPage(token_expired=True)
        for data_type in cursor.data_types:
            self._raise_if_failing(data_type)

        changes: list[RecordChange] = []
        position = cursor.position
        while position < len(self._log) and len(changes) < self._page_size:
            entry = self._log[position]
            position += 1
            if entry.data_type in cursor.data_types:
                changes.append(entry.change)

        has_more = any(
            entry.data_type in cursor.data_types for entry in self._log[position:]
        )
        if not changes and not has_more:
            return ChangesPage(next_token=token)
        return ChangesPage(
            changes=changes,
            next_token=self._issue(position, cursor.data_types),
            has_more=has_more,
        )

    async def read_records(
        self, data_type: str, start: datetime, end: datetime
    ) -> list[HealthRecord]:
        self._check_available()
        self._raise_if_failing(data_type)
        return [
            record
            for record in self._records.values()
            if record.data_type == data_type
            and record.anchor_time is not None
            and start <= record.anchor_time <= end
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _issue(self, position: int, data_types: frozenset[str]) -> str:
        token = f"tok-{next(self._token_ids)}"
        self._cursors[token] = _Cursor(position, data_types)
        return token

    def _check_available(self) -> None:
        if not self.available:
            raise PlatformUnavailableError("In-memory platform marked unavailable")

    def _raise_if_failing(self, data_type: str) -> None:
        exc = self._failures.get(data_type)
        if exc is not None:
            raise exc
