"""Sync orchestrator — one run over every authorized, enabled data type."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.storage.state import LAST_SYNC_AT, SyncStateStore
from vitalsync.domains.health.connectors import HealthDataSource
from vitalsync.domains.health.sync.detector import (
    FAILED,
    SKIPPED,
    ChangeDetector,
    TypeSyncResult,
)
from vitalsync.domains.health.sync.metric_gate import MetricGate
from vitalsync.domains.health.sync.record_types import SUPPORTED_TYPES

logger = logging.getLogger(__name__)

RUN_SUCCESS = "success"
RUN_RETRY = "retry"


@dataclass
class SyncRun:
    """Aggregate result of one orchestrator run."""

    started_at: datetime
    finished_at: datetime | None = None
    status: str = RUN_SUCCESS
    results: dict[str, TypeSyncResult] = field(default_factory=dict)
    error: str | None = None
    settings_failed_open: bool = False

    @property
    def entries_queued(self) -> int:
        return sum(r.entries_queued for r in self.results.values())

    @property
    def outcomes(self) -> dict[str, str]:
        return {data_type: r.outcome for data_type, r in self.results.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": self.outcomes,
            "entries_queued": self.entries_queued,
            "capped_types": sorted(t for t, r in self.results.items() if r.capped),
            "settings_failed_open": self.settings_failed_open,
            "error": self.error,
        }


class SyncOrchestrator:
    """Runs the change detector for each supported type in a fixed order.

    A failure in one type is logged and recorded as ``failed`` without
    stopping the others. Only an unreachable platform makes the whole run
    report ``retry``. Runs never overlap within a process.

    Usage::

        orchestrator = SyncOrchestrator(platform, gate, detector, state, audit)
        run = await orchestrator.run_sync()
    """

    def __init__(
        self,
        platform: HealthDataSource,
        gate: MetricGate,
        detector: ChangeDetector,
        state: SyncStateStore,
        audit: AuditLogger | None = None,
        *,
        data_types: tuple[str, ...] = SUPPORTED_TYPES,
    ) -> None:
        self._platform = platform
        self._gate = gate
        self._detector = detector
        self._state = state
        self._audit = audit
        self._data_types = data_types
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def last_run_at(self) -> datetime | None:
        return self._state.get_timestamp(LAST_SYNC_AT)

    def is_due(self, min_interval_seconds: float) -> bool:
        """True when no successful run happened in the last ``min_interval_seconds``."""
        last = self.last_run_at()
        if last is None:
            return True
        return datetime.now(timezone.utc) - last >= timedelta(seconds=min_interval_seconds)

    async def run_sync(self) -> SyncRun:
        async with self._lock:
            start = time.monotonic()
            run = SyncRun(started_at=datetime.now(timezone.utc))
            try:
                await self._run(run)
            except Exception as exc:
                logger.exception("Sync run aborted")
                run.status = RUN_RETRY
                run.error = type(exc).__name__
            run.finished_at = datetime.now(timezone.utc)

            if run.status == RUN_SUCCESS:
                self._state.set_timestamp(LAST_SYNC_AT, run.finished_at)
            self._audit_run(run, (time.monotonic() - start) * 1000)
            logger.info(
                "Sync run finished: status=%s types=%d queued=%d",
                run.status, len(run.results), run.entries_queued,
            )
            return run

    async def _run(self, run: SyncRun) -> None:
        if not await self._platform.is_available():
            logger.warning("Health platform unavailable; sync will retry")
            run.status = RUN_RETRY
            run.error = "PlatformUnavailable"
            return

        authorized = set(await self._platform.list_authorized_types())
        await self._gate.load()
        run.settings_failed_open = self._gate.failed_open

        for data_type in self._data_types:
            if data_type not in authorized:
                continue
            if not self._gate.is_enabled(data_type):
                logger.debug("Skipping %s: metric disabled for this source", data_type)
                run.results[data_type] = TypeSyncResult(data_type, SKIPPED)
                continue
            try:
                run.results[data_type] = await self._detector.sync_type(data_type)
            except Exception:
                logger.exception("Change detection failed for %s", data_type)
                run.results[data_type] = TypeSyncResult(data_type, FAILED)

    def _audit_run(self, run: SyncRun, duration_ms: float) -> None:
        if self._audit is None:
            return
        self._audit.log_sync_run(
            status=run.status,
            duration_ms=duration_ms,
            error_type=run.error,
            metadata={
                "outcomes": run.outcomes,
                "entries_queued": run.entries_queued,
                "settings_failed_open": run.settings_failed_open,
            },
        )
