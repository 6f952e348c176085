"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """VitalSync server and sync engine configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the MCP surface can trigger syncs and wipe the outbox.
    vitalsync_host: str = "127.0.0.1"
    vitalsync_port: int = 8001
    vitalsync_log_level: str = "info"
    vitalsync_allow_insecure_bind: bool = False
    vitalsync_transport: str = "streamable-http"  # or 'stdio'

    # Storage (tokens + outbox)
    db_path: str = "~/.vitalsync/sync.db"

    # Encryption of outbox payloads at rest
    encryption_key: str = ""

    # Remote store (Supabase / PostgREST)
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_access_token: str = ""
    supabase_user_id: str = ""
    http_timeout_seconds: float = 30.0

    # Change detection
    sync_source: str = "health_connect"
    sync_timezone: str = ""  # IANA name; empty means the host's local zone
    backfill_days: int = 14
    max_change_pages: int = 50
    min_sync_interval_seconds: int = 300

    # Delivery
    outbox_batch_size: int = 50
    max_delivery_retries: int = 5


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
