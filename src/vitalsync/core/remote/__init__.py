"""Remote collaborators — the settings service and the remote data store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class MetricSetting:
    """One row of the user's remote ``metric_settings``."""

    metric: str
    enabled: bool
    preferred_source: str | None = None
    allowed_sources: tuple[str, ...] = field(default_factory=tuple)


@runtime_checkable
class MetricSettingsSource(Protocol):
    """Remote settings API: which metrics the user collects, and from where."""

    async def get_metric_settings(self) -> list[MetricSetting]:
        ...


@runtime_checkable
class RemoteStore(Protocol):
    """Remote storage API with idempotent upsert semantics.

    Implementations raise :class:`RemoteUnavailableError` for failures worth
    retrying and :class:`RemoteRejectedError` when the remote side refuses
    the write outright.
    """

    async def upsert(
        self, table: str, rows: list[dict[str, Any]], conflict_key: str
    ) -> None:
        """Insert-or-merge ``rows`` into ``table`` keyed by ``conflict_key``."""
        ...

    async def delete(self, table: str, source_measure_id: str) -> None:
        """Delete this source's row(s) carrying ``source_measure_id``."""
        ...


class RemoteStoreError(Exception):
    """Base exception for remote settings/storage failures."""


class RemoteUnavailableError(RemoteStoreError):
    """Network failure, timeout, or a server-side (5xx) error; retry later."""


class RemoteRejectedError(RemoteStoreError):
    """The remote side rejected the request (4xx); retrying will not help."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
