"""Local sync store: one SQLite file per device.

Holds change tokens, the pending-change outbox, run bookkeeping and the
audit trail. Schema changes are numbered migrations applied on open.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_BASE_SCHEMA = """
-- One opaque continuation token per tracked data type; absent = backfill
CREATE TABLE IF NOT EXISTS change_tokens (
    data_type   TEXT PRIMARY KEY,
    token       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Pending changes awaiting delivery to the remote store
CREATE TABLE IF NOT EXISTS health_outbox (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id   TEXT NOT NULL,
    data_type   TEXT NOT NULL,
    operation   TEXT NOT NULL CHECK (operation IN ('UPSERT', 'DELETE')),
    date        TEXT NOT NULL DEFAULT '',
    payload_enc TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sync_state (
    key         TEXT PRIMARY KEY,
    value       TEXT,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS audit_log (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id      TEXT NOT NULL UNIQUE,
    recorded_at   TEXT NOT NULL,
    action        TEXT NOT NULL,
    tool_name     TEXT,
    input_sha256  TEXT,
    duration_ms   REAL,
    status        TEXT NOT NULL,
    error_type    TEXT,
    metadata_json TEXT
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_outbox_type    ON health_outbox(data_type);
CREATE INDEX IF NOT EXISTS idx_outbox_source  ON health_outbox(source_id, data_type);
CREATE INDEX IF NOT EXISTS idx_audit_action   ON audit_log(action, seq);
CREATE INDEX IF NOT EXISTS idx_audit_recorded ON audit_log(recorded_at);
"""

# (version, summary, added columns, statements), applied in order to stores
# below `version`. Each migration commits together with its version row.
_MIGRATIONS: list[tuple[int, str, list[tuple[str, str, str]], list[str]]] = [
    (2, "outbox retry tracking", [
        ("health_outbox", "retry_count", "INTEGER NOT NULL DEFAULT 0"),
        ("health_outbox", "status", "TEXT NOT NULL DEFAULT 'pending'"),
        ("health_outbox", "last_error", "TEXT DEFAULT NULL"),
    ], [
        "CREATE INDEX IF NOT EXISTS idx_outbox_status ON health_outbox(status, id)",
    ]),
]

SCHEMA_VERSION = _MIGRATIONS[-1][0]


class DatabaseError(Exception):
    """The sync store is not open."""


class SyncDatabase:
    """Owns the single SQLite connection shared by the sync stores.

    ``":memory:"`` gives a throwaway store, used by tests and by keyless runs.

    Usage::

        with SyncDatabase("~/.vitalsync/sync.db") as db:
            tokens = ChangeTokenStore(db)
    """

    def __init__(self, db_path: str = MEMORY) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Sync database is not open; call initialize() first")
        return self._conn

    def initialize(self) -> None:
        """Open the store and bring its schema up to date. No-op when open."""
        if self._conn is not None:
            return

        target = self._db_path
        if target != MEMORY:
            path = Path(target).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)

        conn = sqlite3.connect(target)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        # Every commit reaches disk before it returns
        conn.execute("PRAGMA synchronous=FULL")
        self._conn = conn

        try:
            self._migrate()
        except sqlite3.Error:
            self.close()
            raise
        logger.info("Sync database open: %s (schema v%d)", self._db_path, self.get_schema_version())

    def _migrate(self) -> None:
        conn = self.connection
        conn.executescript(_BASE_SCHEMA)

        found = self.get_schema_version()
        for version, summary, columns, statements in _MIGRATIONS:
            if version <= found:
                continue
            conn.execute("BEGIN")
            try:
                for table, column, declaration in columns:
                    # A store left half-migrated by an older release may have it
                    if column in self._column_names(table):
                        continue
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")
                for statement in statements:
                    conn.execute(statement)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            except sqlite3.Error:
                conn.rollback()
                logger.error("Sync store migration v%d failed; rolled back", version)
                raise
            conn.commit()
            logger.info("Applied sync store migration v%d: %s", version, summary)

    def _column_names(self, table: str) -> set[str]:
        return {row["name"] for row in self.connection.execute(f"PRAGMA table_info({table})")}

    def get_schema_version(self) -> int:
        row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        logger.info("Sync database closed: %s", self._db_path)

    def __enter__(self) -> SyncDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
