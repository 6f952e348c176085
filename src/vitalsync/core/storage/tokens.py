"""Change token persistence — one opaque continuation token per data type."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from vitalsync.core.storage.database import SyncDatabase

logger = logging.getLogger(__name__)


class ChangeTokenStore:
    """Key-value store of platform change tokens keyed by data type.

    Each write is a single committed statement, so a token is either the
    previous value or the new one; a torn write is never observable.

    Usage::

        tokens = ChangeTokenStore(db)
        if tokens.get("steps") is None:
            ...  # backfill
        tokens.set("steps", "tok-42")
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    def get(self, data_type: str) -> str | None:
        """Return the stored token, or None when the type was never synced."""
        row = self._db.connection.execute(
            "SELECT token FROM change_tokens WHERE data_type = ?", (data_type,)
        ).fetchone()
        return row["token"] if row is not None else None

    def set(self, data_type: str, token: str) -> None:
        """Persist ``token`` as the continuation point for ``data_type``."""
        if not token:
            raise ValueError(f"Refusing to store an empty token for {data_type!r}")
        conn = self._db.connection
        with conn:
            conn.execute(
                """INSERT INTO change_tokens (data_type, token, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(data_type) DO UPDATE SET
                       token = excluded.token,
                       updated_at = excluded.updated_at""",
                (data_type, token, datetime.now(timezone.utc).isoformat()),
            )

    def clear(self, data_type: str) -> bool:
        """Forget the token for ``data_type``; the next run backfills it.

        Returns:
            True if a token was removed.
        """
        conn = self._db.connection
        with conn:
            cursor = conn.execute(
                "DELETE FROM change_tokens WHERE data_type = ?", (data_type,)
            )
        if cursor.rowcount:
            logger.info("Cleared change token for %s", data_type)
        return cursor.rowcount > 0

    def all(self) -> dict[str, str]:
        """Return every stored token keyed by data type."""
        rows = self._db.connection.execute(
            "SELECT data_type, token FROM change_tokens ORDER BY data_type"
        ).fetchall()
        return {row["data_type"]: row["token"] for row in rows}

    def clear_all(self) -> int:
        """Forget every token. Returns the number of tokens removed."""
        conn = self._db.connection
        with conn:
            cursor = conn.execute("DELETE FROM change_tokens")
        logger.warning("Cleared all change tokens (%d)", cursor.rowcount)
        return cursor.rowcount
