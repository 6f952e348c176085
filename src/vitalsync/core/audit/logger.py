"""PHI-free audit trail for sync runs, outbox drains and maintenance tools.

Rows carry outcomes and counts. Tool arguments are kept only as a SHA-256
digest of their canonical JSON; payload values never reach this table.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vitalsync.core.storage.database import DatabaseError, SyncDatabase

logger = logging.getLogger(__name__)

ACTION_SYNC_RUN = "sync_run"
ACTION_OUTBOX_DRAIN = "outbox_drain"
ACTION_SYNC_RESET = "sync_reset"
ACTION_TOOL_INVOCATION = "tool_invocation"

_INSERT = (
    "INSERT INTO audit_log (event_id, recorded_at, action, tool_name, input_sha256,"
    " duration_ms, status, error_type, metadata_json)"
    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
)


def digest_arguments(arguments: Any) -> str:
    """SHA-256 of the canonical JSON form of ``arguments``; "" if unencodable."""
    try:
        encoded = json.dumps(arguments, sort_keys=True, separators=(",", ":")).encode()
    except (TypeError, ValueError):
        return ""
    return hashlib.sha256(encoded).hexdigest()


@dataclass
class AuditEvent:
    """One row of the audit trail."""

    action: str
    status: str = "success"  # 'success' | 'retry' | 'failure'
    tool_name: str | None = None
    input_sha256: str | None = None
    duration_ms: float | None = None
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_row(self, event_id: str, recorded_at: str) -> tuple[Any, ...]:
        metadata_json = (
            json.dumps(self.metadata, separators=(",", ":"), default=str)
            if self.metadata else None
        )
        return (
            event_id, recorded_at, self.action, self.tool_name, self.input_sha256,
            self.duration_ms, self.status, self.error_type, metadata_json,
        )


class AuditLogger:
    """Appends events to ``audit_log`` and reads them back newest first.

    An audit write that fails is logged and dropped; it never fails the
    sync or drain that produced it.

    Usage::

        audit = AuditLogger(sync_db)
        audit.log_sync_run(status="success", duration_ms=812.0,
                           metadata={"outcomes": {"steps": "backfilled"}})
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    def log_event(self, event: AuditEvent) -> str:
        """Persist ``event``; returns its id, or "" when the write was dropped."""
        event_id = str(uuid.uuid4())
        row = event.as_row(event_id, datetime.now(timezone.utc).isoformat())
        try:
            with self._db.connection as conn:
                conn.execute(_INSERT, row)
        except (sqlite3.Error, DatabaseError):
            logger.exception("Dropped audit event %s", event.action)
            return ""
        return event_id

    def log_sync_run(
        self,
        *,
        status: str,
        duration_ms: float | None = None,
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        return self.log_event(AuditEvent(
            ACTION_SYNC_RUN,
            status=status,
            duration_ms=duration_ms,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_outbox_drain(
        self,
        *,
        delivered: int,
        remaining: int,
        failed: int = 0,
        duration_ms: float | None = None,
    ) -> str:
        """A drain with any failed entry is recorded as a failure."""
        return self.log_event(AuditEvent(
            ACTION_OUTBOX_DRAIN,
            status="failure" if failed else "success",
            duration_ms=duration_ms,
            metadata={"delivered": delivered, "remaining": remaining, "failed": failed},
        ))

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        action: str = ACTION_TOOL_INVOCATION,
        duration_ms: float | None = None,
        status: str = "success",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        return self.log_event(AuditEvent(
            action,
            status=status,
            tool_name=tool_name,
            input_sha256=digest_arguments(tool_input) if tool_input else None,
            duration_ms=duration_ms,
            metadata=metadata or {},
        ))

    def get_events(
        self,
        *,
        action: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Events newest first, optionally filtered by action and ISO start time."""
        where, params = self._filters(action=action, since=since)
        rows = self._db.connection.execute(
            f"SELECT * FROM audit_log{where} ORDER BY seq DESC LIMIT ?",
            (*params, limit),
        ).fetchall()

        events = []
        for row in rows:
            event = {key: row[key] for key in row.keys() if key not in ("seq", "metadata_json")}
            event["metadata"] = json.loads(row["metadata_json"]) if row["metadata_json"] else {}
            events.append(event)
        return events

    def count_events(self, *, action: str | None = None) -> int:
        where, params = self._filters(action=action)
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]

    @staticmethod
    def _filters(*, action: str | None = None, since: str | None = None) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if since:
            clauses.append("recorded_at >= ?")
            params.append(since)
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params
