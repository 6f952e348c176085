"""VitalSync server entry point: ``python -m vitalsync.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from vitalsync.core.config.settings import Settings, get_settings
from vitalsync.core.server.app import create_app

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def _require_safe_bind(settings: Settings) -> None:
    """The tools can wipe the outbox, so only loopback binds are allowed by default."""
    if settings.vitalsync_allow_insecure_bind or _is_loopback(settings.vitalsync_host):
        return
    raise RuntimeError(
        f"Refusing to expose VitalSync on {settings.vitalsync_host} without an auth layer. "
        "Set VITALSYNC_ALLOW_INSECURE_BIND=true to override (unsafe)."
    )


def run() -> None:
    """Start the VitalSync MCP server on the configured transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.vitalsync_log_level.upper(), logging.INFO),
        format=_LOG_FORMAT,
    )

    mcp = create_app()
    if settings.vitalsync_transport == "stdio":
        logger.info("Starting VitalSync health sync server on stdio")
        mcp.run(transport="stdio")
        return

    _require_safe_bind(settings)
    logger.info(
        "Starting VitalSync health sync server on %s:%d",
        settings.vitalsync_host,
        settings.vitalsync_port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.vitalsync_host,
        port=settings.vitalsync_port,
    )


if __name__ == "__main__":
    run()
