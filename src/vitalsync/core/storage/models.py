"""Data models for the local sync store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Operation = Literal["UPSERT", "DELETE"]

UPSERT: Operation = "UPSERT"
DELETE: Operation = "DELETE"

# Outbox delivery status
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"  # exceeded retry budget; revived by retry_failed()
STATUS_PERMANENT_FAILURE = "permanent_failure"  # rejected; retrying won't help

OUTBOX_STATUSES = (STATUS_PENDING, STATUS_FAILED, STATUS_PERMANENT_FAILURE)


@dataclass(frozen=True)
class OutboxEntry:
    """A detected platform change queued for delivery to the remote store.

    ``id`` is assigned by the outbox on append; entries built by the change
    detector carry ``id=None``.
    """

    source_id: str  # platform record id
    data_type: str  # 'sleep', 'steps', ...
    operation: Operation
    date: str = ""  # YYYY-MM-DD in the sync timezone; empty for deletes
    payload: dict[str, Any] = field(default_factory=dict)

    id: int | None = None
    created_at: str = ""
    retry_count: int = 0
    status: str = STATUS_PENDING
    last_error: str | None = None

    @property
    def coalesce_key(self) -> tuple[str, str]:
        """Identity of the remote record this entry writes."""
        return (self.source_id, self.data_type)
