"""Run bookkeeping — small key/value facts about past sync runs."""

from __future__ import annotations

from datetime import datetime, timezone

from vitalsync.core.storage.database import SyncDatabase

LAST_SYNC_AT = "last_sync_at"
LAST_DRAIN_AT = "last_drain_at"


class SyncStateStore:
    """Persists run timestamps in the ``sync_state`` table."""

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    def get(self, key: str) -> str | None:
        row = self._db.connection.execute(
            "SELECT value FROM sync_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row is not None else None

    def set(self, key: str, value: str) -> None:
        conn = self._db.connection
        with conn:
            conn.execute(
                """INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, value, datetime.now(timezone.utc).isoformat()),
            )

    def get_timestamp(self, key: str) -> datetime | None:
        """Read an ISO 8601 timestamp value, or None if unset or malformed."""
        raw = self.get(key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def set_timestamp(self, key: str, when: datetime) -> None:
        self.set(key, when.isoformat())

    def clear(self) -> None:
        conn = self._db.connection
        with conn:
            conn.execute("DELETE FROM sync_state")
