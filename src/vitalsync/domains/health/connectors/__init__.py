"""Health platform connectors — abstraction over the device health store."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Protocol, runtime_checkable

from vitalsync.domains.health.connectors.models import ChangesPage, HealthRecord


@runtime_checkable
class HealthDataSource(Protocol):
    """Abstract interface to a platform health store with change tokens.

    The sync engine calls these methods without knowing which platform
    (Health Connect, a test double, ...) is behind them.
    """

    async def is_available(self) -> bool:
        """Whether the platform's health subsystem can be used at all."""
        ...

    async def list_authorized_types(self) -> list[str]:
        """Data types the user has granted read access to."""
        ...

    async def request_change_token(self, data_types: Collection[str]) -> str:
        """Issue a token marking "everything up to now" for ``data_types``."""
        ...

    async def pull_changes(self, token: str) -> ChangesPage:
        """Return the next page of changes since ``token``."""
        ...

    async def read_records(
        self, data_type: str, start: datetime, end: datetime
    ) -> list[HealthRecord]:
        """Read all records of ``data_type`` in ``[start, end]``."""
        ...
