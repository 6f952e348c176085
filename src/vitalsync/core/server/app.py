"""VitalSync Health Sync MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for `fastmcp run` discovery
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastmcp import FastMCP

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.config.settings import Settings, get_settings
from vitalsync.core.remote import MetricSettingsSource, RemoteStore
from vitalsync.core.remote.supabase import SupabaseRestClient
from vitalsync.core.storage.database import SyncDatabase
from vitalsync.core.storage.encryption import EncryptionError, PayloadEncryptor
from vitalsync.core.storage.models import STATUS_PENDING
from vitalsync.core.storage.outbox import OutboxStore
from vitalsync.core.storage.state import SyncStateStore
from vitalsync.core.storage.tokens import ChangeTokenStore
from vitalsync.domains.health.connectors import HealthDataSource
from vitalsync.domains.health.connectors.in_memory import InMemoryHealthPlatform
from vitalsync.domains.health.sync.detector import ChangeDetector
from vitalsync.domains.health.sync.metric_gate import MetricGate
from vitalsync.domains.health.sync.orchestrator import SyncOrchestrator
from vitalsync.domains.health.sync.publisher import OutboxPublisher
from vitalsync.domains.health.tools.sync_tools import register_sync_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "VitalSync Health Sync"
SERVER_VERSION = "0.1.0"


def _open_storage(settings: Settings) -> tuple[SyncDatabase, PayloadEncryptor]:
    """Open the on-disk store, or an in-memory one when no usable key is set."""
    if settings.encryption_key:
        try:
            encryptor = PayloadEncryptor(settings.encryption_key)
            db_path = Path(settings.db_path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            database = SyncDatabase(str(db_path))
            database.initialize()
            logger.info(
                "Sync store initialized: %s (schema v%d)",
                db_path,
                database.get_schema_version(),
            )
            return database, encryptor
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
    else:
        logger.info(
            "No ENCRYPTION_KEY configured; set ENCRYPTION_KEY to persist tokens and outbox."
        )

    logger.warning("Running with an in-memory sync store; state is lost on restart")
    database = SyncDatabase(":memory:")
    database.initialize()
    return database, PayloadEncryptor(PayloadEncryptor.generate_key())


def _close_on_shutdown(
    resources: list[SupabaseRestClient],
) -> Callable[[FastMCP], AbstractAsyncContextManager[dict]]:
    """Server lifespan that releases the remote client's connections on exit."""

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[dict]:
        try:
            yield {}
        finally:
            for resource in resources:
                await resource.aclose()
            if resources:
                logger.info("Remote store connections closed")

    return lifespan


def _sync_timezone(name: str) -> tzinfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.error("Unknown SYNC_TIMEZONE %r; dating records in the host's zone", name)
        return None


def create_app(
    *,
    platform_override: HealthDataSource | None = None,
    remote_override: RemoteStore | None = None,
    settings_source_override: MetricSettingsSource | None = None,
    database_override: SyncDatabase | None = None,
) -> FastMCP:
    """Create and configure the VitalSync MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Opens the local sync store (tokens, outbox, run state, audit log)
    3. Initializes the health data source (in-memory unless overridden)
    4. Creates the remote store client when Supabase is configured
    5. Wires the metric gate, change detector, orchestrator and publisher
    6. Registers all tools
    """
    settings = get_settings()
    closables: list[SupabaseRestClient] = []

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        lifespan=_close_on_shutdown(closables),
        instructions=(
            "Health-data change synchronization server. Detects new, changed and "
            "deleted records on the health platform, queues them in a durable "
            "local outbox, and delivers them to the remote store."
        ),
    )

    # --- Local sync store ---
    if database_override is not None:
        database = database_override
        key = settings.encryption_key or PayloadEncryptor.generate_key()
        encryptor = PayloadEncryptor(key)
    else:
        database, encryptor = _open_storage(settings)

    tokens = ChangeTokenStore(database)
    outbox = OutboxStore(database, encryptor)
    state = SyncStateStore(database)
    audit_logger = AuditLogger(database)

    # --- Health data source ---
    if platform_override is not None:
        platform = platform_override
    else:
        platform = InMemoryHealthPlatform()
        logger.warning("No health platform connected; using the in-memory platform")

    # --- Remote store (Supabase / PostgREST) ---
    remote: RemoteStore | None = remote_override
    settings_source: MetricSettingsSource | None = settings_source_override
    if remote is None and settings.supabase_url and settings.supabase_anon_key:
        client = SupabaseRestClient(
            settings.supabase_url,
            settings.supabase_anon_key,
            settings.supabase_access_token,
            source=settings.sync_source,
            user_id=settings.supabase_user_id,
            timeout=settings.http_timeout_seconds,
        )
        remote = client
        closables.append(client)
        if settings_source is None:
            settings_source = client
        logger.info("Remote store configured for %s", settings.supabase_url)
    elif remote is None:
        logger.info(
            "No SUPABASE_URL configured; changes are queued locally but not delivered."
        )

    if settings_source is None and isinstance(remote, MetricSettingsSource):
        settings_source = remote
    if settings_source is None:
        logger.info("No metric settings source; every data type is collected")

    # --- Sync engine ---
    gate = MetricGate(settings_source, source=settings.sync_source)
    detector = ChangeDetector(
        platform,
        tokens,
        outbox,
        backfill_days=settings.backfill_days,
        max_pages=settings.max_change_pages,
        tz=_sync_timezone(settings.sync_timezone),
    )
    orchestrator = SyncOrchestrator(platform, gate, detector, state, audit_logger)

    publisher: OutboxPublisher | None = None
    if remote is not None:
        publisher = OutboxPublisher(
            outbox,
            remote,
            source=settings.sync_source,
            user_id=settings.supabase_user_id,
            batch_size=settings.outbox_batch_size,
            max_retries=settings.max_delivery_retries,
            state=state,
            audit=audit_logger,
        )

    # --- Register tools ---
    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "schema_version": database.get_schema_version(),
            "platform_available": await platform.is_available(),
            "remote_configured": publisher is not None,
            "pending_entries": outbox.count(STATUS_PENDING),
        }

    register_sync_tools(
        server,
        orchestrator,
        publisher,
        outbox,
        tokens,
        state,
        audit_logger,
        min_sync_interval_seconds=settings.min_sync_interval_seconds,
    )
    logger.info("Sync tools registered")

    return server


# Module-level instance for `fastmcp run src/vitalsync/core/server/app.py:mcp`.
# Built on first access so importing create_app does not open the store.
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
