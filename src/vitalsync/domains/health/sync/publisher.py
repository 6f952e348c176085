"""Outbox publisher — delivers queued changes to the remote store.

Delivery is at-least-once: an entry leaves the outbox only after the remote
store accepted every row it writes. Remote upserts are keyed on
``user_id,source,date``, so replaying an entry is harmless.

Failures are split in two:

* retryable (network errors, remote rejections, anything unexpected):
  ``retry_count`` is bumped and the entry stays pending for the next drain
  until it exhausts its retry budget;
* permanent (payload that cannot become a row): the entry is parked as
  ``permanent_failure`` and only comes back through an explicit reset.

Delivering an entry also drops every older entry for the same remote record,
so a stale value that failed earlier can never overwrite a newer one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.remote import RemoteRejectedError, RemoteStore, RemoteUnavailableError
from vitalsync.core.storage.models import DELETE, STATUS_PENDING, OutboxEntry
from vitalsync.core.storage.outbox import OutboxStore
from vitalsync.core.storage.state import LAST_DRAIN_AT, SyncStateStore
from vitalsync.domains.health.sync.record_types import CONFLICT_KEY, TABLES_FOR_TYPE
from vitalsync.domains.health.sync.rows import InvalidPayloadError, build_rows

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Counts from one ``drain_outbox`` call."""

    delivered: int = 0
    remaining: int = 0
    failed: int = 0
    permanent_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "delivered": self.delivered,
            "remaining": self.remaining,
            "failed": self.failed,
            "permanent_failures": self.permanent_failures,
        }


@dataclass
class _Delivery:
    """One live entry of a batch plus the older entries it supersedes."""

    entry: OutboxEntry
    superseded: list[int] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ids(self) -> list[int]:
        return [self.entry.id, *self.superseded]


class OutboxPublisher:
    """Drains the outbox in id order and pushes each batch to a ``RemoteStore``.

    Usage::

        publisher = OutboxPublisher(outbox, supabase, source="health_connect")
        result = await publisher.drain_outbox()
    """

    def __init__(
        self,
        outbox: OutboxStore,
        remote: RemoteStore,
        *,
        source: str,
        user_id: str = "",
        batch_size: int = 50,
        max_retries: int = 5,
        state: SyncStateStore | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._outbox = outbox
        self._remote = remote
        self._source = source
        self._user_id = user_id
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._state = state
        self._audit = audit
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def drain_outbox(self) -> DrainResult:
        """Deliver every pending entry once.

        Each call makes a single pass over the queue: entries that fail
        transiently are not retried again until the next call.
        """
        async with self._lock:
            start = time.monotonic()
            result = DrainResult()
            after_id = 0

            while True:
                batch = self._outbox.drain(self._batch_size, after_id=after_id)
                if not batch:
                    break
                after_id = batch[-1].id
                await self._deliver_batch(batch, result)
                if len(batch) < self._batch_size:
                    break

            self._outbox.mark_exceeded_retries_as_failed(self._max_retries)
            result.remaining = self._outbox.count(STATUS_PENDING)

            if self._state is not None:
                self._state.set_timestamp(LAST_DRAIN_AT, datetime.now(timezone.utc))
            if self._audit is not None:
                self._audit.log_outbox_drain(
                    delivered=result.delivered,
                    remaining=result.remaining,
                    failed=result.failed + result.permanent_failures,
                    duration_ms=(time.monotonic() - start) * 1000,
                )
            logger.info(
                "Outbox drain: delivered=%d remaining=%d failed=%d permanent=%d",
                result.delivered, result.remaining, result.failed, result.permanent_failures,
            )
            return result

    # ------------------------------------------------------------------
    # Batch delivery
    # ------------------------------------------------------------------

    async def _deliver_batch(self, batch: Sequence[OutboxEntry], result: DrainResult) -> None:
        deliveries = self._coalesce(batch)

        upserts = [d for d in deliveries if d.entry.operation != DELETE]
        deletes = [d for d in deliveries if d.entry.operation == DELETE]
        await self._send_upserts(upserts)
        for delivery in deletes:
            await self._send_delete(delivery)

        delivered: list[_Delivery] = []
        for delivery in deliveries:
            if delivery.error is None:
                delivered.append(delivery)
            elif isinstance(delivery.error, InvalidPayloadError):
                logger.error(
                    "Outbox entry %d (%s) rejected permanently: %s",
                    delivery.entry.id, delivery.entry.data_type, delivery.error,
                )
                self._outbox.mark_permanent_failure(delivery.ids, _describe(delivery.error))
                result.permanent_failures += len(delivery.ids)
            else:
                logger.warning(
                    "Outbox entry %d (%s) not delivered: %s",
                    delivery.entry.id, delivery.entry.data_type, delivery.error,
                )
                self._outbox.record_failure(delivery.ids, _describe(delivery.error))
                result.failed += len(delivery.ids)

        result.delivered += self._outbox.remove(id_ for d in delivered for id_ in d.ids)
        for delivery in delivered:
            # Older entries of this record left pending by an earlier failed attempt
            result.delivered += self._outbox.remove_superseded(
                delivery.entry.source_id, delivery.entry.data_type, delivery.entry.id
            )

    @staticmethod
    def _coalesce(batch: Sequence[OutboxEntry]) -> list[_Delivery]:
        """Keep the newest entry per remote record; older ones ride along."""
        latest: dict[tuple[str, str], _Delivery] = {}
        for entry in batch:
            previous = latest.pop(entry.coalesce_key, None)
            delivery = _Delivery(entry)
            if previous is not None:
                delivery.superseded = previous.ids
            latest[entry.coalesce_key] = delivery
        return sorted(latest.values(), key=lambda d: d.entry.id)

    async def _send_upserts(self, deliveries: list[_Delivery]) -> None:
        groups: dict[str, list[tuple[_Delivery, dict[str, Any]]]] = {}
        for delivery in deliveries:
            try:
                rows = build_rows(delivery.entry, source=self._source, user_id=self._user_id)
            except InvalidPayloadError as exc:
                delivery.error = exc
                continue
            for table, row in rows:
                groups.setdefault(table, []).append((delivery, row))

        for table, members in groups.items():
            try:
                await self._remote.upsert(table, _dedupe(members), CONFLICT_KEY)
            except RemoteRejectedError as exc:
                if len(members) == 1:
                    _fail(members[0][0], exc)
                    continue
                logger.warning(
                    "Upsert of %d rows into %s rejected (%s); retrying row by row",
                    len(members), table, exc.status_code,
                )
                await self._send_rows_individually(table, members)
            except Exception as exc:
                for delivery, _row in members:
                    _fail(delivery, exc)

    async def _send_rows_individually(
        self, table: str, members: list[tuple[_Delivery, dict[str, Any]]]
    ) -> None:
        for delivery, row in members:
            if delivery.error is not None:
                continue
            try:
                await self._remote.upsert(table, [row], CONFLICT_KEY)
            except Exception as exc:
                _fail(delivery, exc)

    async def _send_delete(self, delivery: _Delivery) -> None:
        tables = TABLES_FOR_TYPE.get(delivery.entry.data_type)
        if tables is None:
            delivery.error = InvalidPayloadError(
                f"Unknown data type: {delivery.entry.data_type!r}"
            )
            return
        try:
            for table in tables:
                await self._remote.delete(table, delivery.entry.source_id)
        except Exception as exc:
            delivery.error = exc


def _fail(delivery: _Delivery, exc: Exception) -> None:
    if delivery.error is None:
        delivery.error = exc


def _dedupe(members: list[tuple[_Delivery, dict[str, Any]]]) -> list[dict[str, Any]]:
    """One row per conflict key, the latest entry winning.

    PostgREST refuses a bulk upsert that touches the same key twice.
    """
    by_key: dict[tuple[Any, ...], dict[str, Any]] = {}
    for _delivery, row in members:
        key = (row.get("user_id"), row.get("source"), row.get("date"))
        by_key[key] = row
    return list(by_key.values())


def _describe(exc: Exception) -> str:
    if isinstance(exc, (RemoteUnavailableError, RemoteRejectedError)):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
