"""Durable outbox of detected health-data changes awaiting delivery.

The change detector is the only writer (``append``); the publisher is the only
reader/remover (``drain``/``remove`` and the retry bookkeeping). Entry content
is never updated in place, only the delivery bookkeeping columns.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from vitalsync.core.storage.database import SyncDatabase
from vitalsync.core.storage.encryption import EncryptionError, PayloadEncryptor
from vitalsync.core.storage.models import (
    OUTBOX_STATUSES,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PERMANENT_FAILURE,
    OutboxEntry,
)

logger = logging.getLogger(__name__)

# SQLite's default host-parameter limit is 999 on older builds
_MAX_PARAMS = 500


class OutboxError(Exception):
    """Raised when the outbox cannot queue or read entries."""


def _chunks(ids: Sequence[int], size: int = _MAX_PARAMS) -> Iterable[Sequence[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class OutboxStore:
    """SQLite-backed FIFO outbox with per-batch atomic inserts.

    Usage::

        outbox = OutboxStore(db, encryptor)
        outbox.append(entries)          # all or nothing
        batch = outbox.drain(50)        # oldest pending first
        outbox.remove([e.id for e in batch])
    """

    def __init__(self, database: SyncDatabase, encryptor: PayloadEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    # ------------------------------------------------------------------
    # Write (detector)
    # ------------------------------------------------------------------

    def append(self, entries: Sequence[OutboxEntry]) -> int:
        """Queue a batch of entries in a single transaction.

        Either every entry of the batch is committed or none is.

        Returns:
            Number of entries queued.

        Raises:
            OutboxError: If a payload cannot be encrypted or the insert fails.
        """
        if not entries:
            return 0

        now = datetime.now(timezone.utc).isoformat()
        try:
            rows = [
                (
                    entry.source_id,
                    entry.data_type,
                    entry.operation,
                    entry.date,
                    self._enc.encrypt(entry.payload),
                    now,
                )
                for entry in entries
            ]
        except EncryptionError as exc:
            raise OutboxError(f"Cannot encrypt outbox payload: {exc}") from exc

        conn = self._db.connection
        try:
            with conn:
                conn.executemany(
                    """INSERT INTO health_outbox
                       (source_id, data_type, operation, date, payload_enc, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        except Exception as exc:
            raise OutboxError(f"Failed to queue {len(rows)} outbox entries: {exc}") from exc

        logger.debug("Queued %d outbox entries", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Read / remove (publisher)
    # ------------------------------------------------------------------

    def drain(self, limit: int, after_id: int = 0) -> list[OutboxEntry]:
        """Return up to ``limit`` pending entries with ``id > after_id``, oldest first.

        Entries are not removed; call :meth:`remove` after remote acceptance.
        An entry whose payload can no longer be decrypted is marked as a
        permanent failure and left out of the result.
        """
        if limit <= 0:
            return []
        rows = self._db.connection.execute(
            """SELECT * FROM health_outbox WHERE status = ? AND id > ?
               ORDER BY id ASC LIMIT ?""",
            (STATUS_PENDING, after_id, limit),
        ).fetchall()

        entries: list[OutboxEntry] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except EncryptionError as exc:
                logger.error("Outbox entry %d has an unreadable payload", row["id"])
                self.mark_permanent_failure([row["id"]], str(exc))
        return entries

    def remove(self, ids: Iterable[int]) -> int:
        """Delete delivered entries. Returns the number of rows removed."""
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        conn = self._db.connection
        removed = 0
        with conn:
            for chunk in _chunks(id_list):
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"DELETE FROM health_outbox WHERE id IN ({placeholders})", chunk
                )
                removed += cursor.rowcount
        return removed

    def remove_superseded(self, source_id: str, data_type: str, before_id: int) -> int:
        """Delete entries for the same record queued before ``before_id``, any status."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "DELETE FROM health_outbox WHERE source_id = ? AND data_type = ? AND id < ?",
                (source_id, data_type, before_id),
            )
        if cursor.rowcount:
            logger.debug(
                "Dropped %d superseded outbox entries for %s", cursor.rowcount, data_type
            )
        return cursor.rowcount

    def get(self, entry_id: int) -> OutboxEntry | None:
        """Fetch a single entry by id regardless of status."""
        row = self._db.connection.execute(
            "SELECT * FROM health_outbox WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    # ------------------------------------------------------------------
    # Retry bookkeeping
    # ------------------------------------------------------------------

    def record_failure(self, ids: Iterable[int], error: str) -> None:
        """Count a transient delivery failure; entries stay pending."""
        self._update_ids(
            "UPDATE health_outbox SET retry_count = retry_count + 1, last_error = ? "
            "WHERE id IN ({placeholders})",
            [error],
            ids,
        )

    def mark_permanent_failure(self, ids: Iterable[int], error: str) -> None:
        """Park entries that the remote side will never accept."""
        self._update_ids(
            "UPDATE health_outbox SET status = ?, last_error = ? "
            "WHERE id IN ({placeholders})",
            [STATUS_PERMANENT_FAILURE, error],
            ids,
        )

    def mark_exceeded_retries_as_failed(self, max_retries: int) -> int:
        """Move pending entries with ``retry_count >= max_retries`` to failed."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "UPDATE health_outbox SET status = ? WHERE retry_count >= ? AND status = ?",
                (STATUS_FAILED, max_retries, STATUS_PENDING),
            )
        if cursor.rowcount:
            logger.warning(
                "%d outbox entries exceeded %d delivery attempts", cursor.rowcount, max_retries
            )
        return cursor.rowcount

    def retry_failed(self) -> int:
        """Give entries that ran out of retries another chance."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "UPDATE health_outbox SET status = ?, retry_count = 0 WHERE status = ?",
                (STATUS_PENDING, STATUS_FAILED),
            )
        return cursor.rowcount

    def reset_all_failed(self) -> int:
        """Return every failed and permanently failed entry to pending."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "UPDATE health_outbox SET status = ?, retry_count = 0 WHERE status != ?",
                (STATUS_PENDING, STATUS_PENDING),
            )
        return cursor.rowcount

    def purge_permanent_failures(self, older_than_days: int = 30) -> int:
        """Delete permanent failures queued more than ``older_than_days`` ago."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "DELETE FROM health_outbox WHERE status = ? AND created_at < ?",
                (STATUS_PERMANENT_FAILURE, cutoff),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    def count(self, status: str | None = None) -> int:
        """Count entries, optionally restricted to one status."""
        if status is None:
            row = self._db.connection.execute("SELECT COUNT(*) FROM health_outbox").fetchone()
        else:
            if status not in OUTBOX_STATUSES:
                raise OutboxError(f"Unknown outbox status: {status!r}")
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM health_outbox WHERE status = ?", (status,)
            ).fetchone()
        return row[0]

    def count_by_type(self, status: str = STATUS_PENDING) -> dict[str, int]:
        rows = self._db.connection.execute(
            """SELECT data_type, COUNT(*) AS n FROM health_outbox
               WHERE status = ? GROUP BY data_type ORDER BY data_type""",
            (status,),
        ).fetchall()
        return {row["data_type"]: row["n"] for row in rows}

    def clear(self) -> int:
        """Drop every entry regardless of status."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute("DELETE FROM health_outbox")
        logger.warning("Cleared outbox: %d entries removed", cursor.rowcount)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update_ids(self, sql: str, params: list[Any], ids: Iterable[int]) -> None:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return
        conn = self._db.connection
        with conn:
            for chunk in _chunks(id_list):
                placeholders = ",".join("?" for _ in chunk)
                conn.execute(sql.format(placeholders=placeholders), [*params, *chunk])

    def _row_to_entry(self, row: Any) -> OutboxEntry:
        return OutboxEntry(
            id=row["id"],
            source_id=row["source_id"],
            data_type=row["data_type"],
            operation=row["operation"],
            date=row["date"] or "",
            payload=self._enc.decrypt(row["payload_enc"]),
            created_at=row["created_at"],
            retry_count=row["retry_count"],
            status=row["status"],
            last_error=row["last_error"],
        )
