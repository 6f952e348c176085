"""Change detector — turns one data type's platform changes into outbox entries.

Two modes per data type:

* **Backfill** when no change token is stored: read the last
  ``backfill_days`` of records, queue one UPSERT each, then store a fresh
  token scoped to the type.
* **Incremental** otherwise: follow the change feed page by page, queue the
  page, then advance the token.

A page's entries are always committed before the token that skips past them,
so a crash between the two replays the page instead of losing it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo

from vitalsync.core.storage.models import DELETE, UPSERT, OutboxEntry
from vitalsync.core.storage.outbox import OutboxStore
from vitalsync.core.storage.tokens import ChangeTokenStore
from vitalsync.domains.health.connectors import HealthDataSource
from vitalsync.domains.health.connectors.models import HealthRecord, RecordChange
from vitalsync.domains.health.sync.extractors import extract_payload, record_date

logger = logging.getLogger(__name__)

# Per-type outcomes of a sync run
BACKFILLED = "backfilled"
SYNCED = "synced"
TOKEN_RESET = "token_reset"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class TypeSyncResult:
    """What one ``sync_type`` call did."""

    data_type: str
    outcome: str
    entries_queued: int = 0
    pages: int = 0
    capped: bool = False


class ChangeDetector:
    """Detects platform changes for one data type at a time.

    Usage::

        detector = ChangeDetector(platform, tokens, outbox)
        result = await detector.sync_type("steps")
    """

    def __init__(
        self,
        platform: HealthDataSource,
        tokens: ChangeTokenStore,
        outbox: OutboxStore,
        *,
        backfill_days: int = 14,
        max_pages: int = 50,
        tz: tzinfo | None = None,
    ) -> None:
        self._platform = platform
        self._tokens = tokens
        self._outbox = outbox
        self._backfill_days = backfill_days
        self._max_pages = max_pages
        self._tz = tz

    async def sync_type(self, data_type: str) -> TypeSyncResult:
        """Backfill or incrementally sync ``data_type``.

        Platform and storage errors propagate; the orchestrator isolates
        them per type. Token expiry is not an error.
        """
        token = self._tokens.get(data_type)
        if token is None:
            return await self._backfill(data_type)
        return await self._incremental(data_type, token)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _backfill(self, data_type: str) -> TypeSyncResult:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=self._backfill_days)

        # Token first: anything written during the read shows up in the feed
        # next run instead of falling between the read and the token.
        token = await self._platform.request_change_token({data_type})
        records = await self._platform.read_records(data_type, start, end)

        entries = [self._upsert_entry(data_type, record) for record in records]
        queued = self._outbox.append(entries)
        self._tokens.set(data_type, token)

        logger.info("Backfilled %s: %d records from the last %d days",
                    data_type, queued, self._backfill_days)
        return TypeSyncResult(data_type, BACKFILLED, entries_queued=queued)

    async def _incremental(self, data_type: str, token: str) -> TypeSyncResult:
        result = TypeSyncResult(data_type, SYNCED)

        while True:
            page = await self._platform.pull_changes(token)
            if page.token_expired:
                self._tokens.clear(data_type)
                logger.warning(
                    "Change token for %s expired after %d pages; next run backfills",
                    data_type, result.pages,
                )
                result.outcome = TOKEN_RESET
                return result

            result.pages += 1
            if page.changes:
                entries = [self._entry_for(data_type, change) for change in page.changes]
                result.entries_queued += self._outbox.append(entries)
                if page.next_token:
                    self._tokens.set(data_type, page.next_token)
            token = page.next_token or token

            if not page.has_more:
                break
            if result.pages >= self._max_pages:
                result.capped = True
                logger.warning(
                    "Stopped %s after %d change pages; remaining changes deferred",
                    data_type, result.pages,
                )
                break

        logger.debug("Synced %s: %d entries over %d pages",
                     data_type, result.entries_queued, result.pages)
        return result

    # ------------------------------------------------------------------
    # Entry construction
    # ------------------------------------------------------------------

    def _entry_for(self, data_type: str, change: RecordChange) -> OutboxEntry:
        if change.record is None:
            return OutboxEntry(source_id=change.record_id, data_type=data_type, operation=DELETE)
        return self._upsert_entry(data_type, change.record)

    def _upsert_entry(self, data_type: str, record: HealthRecord) -> OutboxEntry:
        return OutboxEntry(
            source_id=record.record_id,
            data_type=data_type,
            operation=UPSERT,
            date=record_date(record, self._tz),
            payload=extract_payload(data_type, record),
        )
