"""MCP tools driving health-data synchronization.

Change detection and delivery are separate tools: a sync run only fills the
local outbox, and a drain only empties it. Either can run without the other,
so detection keeps working while the remote store is unreachable.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vitalsync.core.audit.logger import ACTION_SYNC_RESET
from vitalsync.core.storage.models import OUTBOX_STATUSES, STATUS_PENDING
from vitalsync.core.storage.state import LAST_DRAIN_AT, LAST_SYNC_AT

if TYPE_CHECKING:
    from vitalsync.core.audit.logger import AuditLogger
    from vitalsync.core.storage.outbox import OutboxStore
    from vitalsync.core.storage.state import SyncStateStore
    from vitalsync.core.storage.tokens import ChangeTokenStore
    from vitalsync.domains.health.sync.orchestrator import SyncOrchestrator
    from vitalsync.domains.health.sync.publisher import OutboxPublisher

logger = logging.getLogger(__name__)


def register_sync_tools(
    mcp: FastMCP,
    orchestrator: SyncOrchestrator,
    publisher: OutboxPublisher | None,
    outbox: OutboxStore,
    tokens: ChangeTokenStore,
    state: SyncStateStore,
    audit_logger: AuditLogger | None = None,
    *,
    min_sync_interval_seconds: float = 300,
) -> None:
    """Register the sync tools on the MCP server.

    ``publisher`` is None when no remote store is configured; detection
    still works and the outbox simply accumulates.
    """

    @mcp.tool
    async def sync_health_changes(
        ctx: Context,
        force: bool = False,
    ) -> str:
        """Detect new, changed and deleted health records and queue them.

        Types with no stored change token are backfilled; the rest follow the
        platform's change feed. Calls made within the minimum sync interval
        of the last successful run are skipped unless forced.

        Args:
            force: Run even if the last sync was recent.
        """
        if orchestrator.running:
            return json.dumps({
                "status": "busy",
                "message": "A sync run is already in progress.",
            })
        if not force and not orchestrator.is_due(min_sync_interval_seconds):
            last = orchestrator.last_run_at()
            return json.dumps({
                "status": "not_due",
                "last_sync_at": last.isoformat() if last else None,
                "min_interval_seconds": min_sync_interval_seconds,
            })

        run = await orchestrator.run_sync()
        return json.dumps(run.to_dict())

    @mcp.tool
    async def drain_health_outbox(ctx: Context) -> str:
        """Deliver queued health changes to the remote store.

        Delivered entries are removed from the outbox. Entries that fail are
        kept and retried on the next drain.
        """
        if publisher is None:
            return json.dumps({
                "status": "error",
                "message": (
                    "No remote store configured. Set SUPABASE_URL and "
                    "SUPABASE_ANON_KEY to enable delivery."
                ),
                "pending": outbox.count(STATUS_PENDING),
            })
        if publisher.running:
            return json.dumps({
                "status": "busy",
                "message": "An outbox drain is already in progress.",
            })

        result = await publisher.drain_outbox()
        return json.dumps({"status": "ok", **result.to_dict()})

    @mcp.tool
    async def health_sync_status(ctx: Context) -> str:
        """Summarize sync state: tracked types, outbox backlog and last runs."""
        last_sync = state.get_timestamp(LAST_SYNC_AT)
        last_drain = state.get_timestamp(LAST_DRAIN_AT)
        return json.dumps({
            "tracked_types": sorted(tokens.all()),
            "outbox": {status: outbox.count(status) for status in OUTBOX_STATUSES},
            "pending_by_type": outbox.count_by_type(),
            "last_sync_at": last_sync.isoformat() if last_sync else None,
            "last_drain_at": last_drain.isoformat() if last_drain else None,
            "sync_due": orchestrator.is_due(min_sync_interval_seconds),
            "remote_configured": publisher is not None,
        })

    @mcp.tool
    async def retry_failed_outbox_entries(
        ctx: Context,
        include_permanent: bool = False,
    ) -> str:
        """Return failed outbox entries to the pending queue.

        Args:
            include_permanent: Also revive entries whose payload could not be
                turned into rows. Only useful once the payload problem is fixed.
        """
        if include_permanent:
            count = outbox.reset_all_failed()
        else:
            count = outbox.retry_failed()

        if audit_logger is not None:
            audit_logger.log_tool_call(
                "retry_failed_outbox_entries",
                {"include_permanent": include_permanent},
                metadata={"requeued": count},
            )
        logger.info("Requeued %d failed outbox entries", count)
        return json.dumps({"status": "requeued", "requeued": count})

    @mcp.tool
    async def reset_health_sync(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Clear the outbox and every change token, forcing a full backfill.

        Undelivered changes are discarded; the next sync re-reads the backfill
        window for every type.

        Args:
            confirm: Must be exactly 'RESET' to proceed. Safety gate.
        """
        if confirm != "RESET":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To reset health sync, call this tool with confirm='RESET'. "
                    "Queued, undelivered changes will be discarded."
                ),
            })

        start_time = time.monotonic()
        entries = outbox.clear()
        cleared_tokens = tokens.clear_all()
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if audit_logger is not None:
            audit_logger.log_tool_call(
                "reset_health_sync",
                {"confirm": confirm},
                action=ACTION_SYNC_RESET,
                duration_ms=elapsed_ms,
                metadata={"entries_cleared": entries, "tokens_cleared": cleared_tokens},
            )

        logger.warning(
            "Health sync reset: %d outbox entries and %d tokens cleared",
            entries, cleared_tokens,
        )
        return json.dumps({
            "status": "reset",
            "entries_cleared": entries,
            "tokens_cleared": cleared_tokens,
            "duration_ms": round(elapsed_ms, 1),
        })
