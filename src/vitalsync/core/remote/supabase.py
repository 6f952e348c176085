"""Supabase (PostgREST) client for metric settings and health metric tables.

Upserts use ``Prefer: resolution=merge-duplicates`` with an explicit
``on_conflict`` so repeated delivery of the same change is a no-op on the
remote side. Deletes target the rows this sync source wrote, by
``source_measure_id``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from vitalsync.core.remote import (
    MetricSetting,
    RemoteRejectedError,
    RemoteStoreError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)

# 4xx statuses that say "not now" rather than "never"
_TRANSIENT_CLIENT_STATUSES = frozenset({401, 403, 408, 425, 429})


class SupabaseRestClient:
    """Async PostgREST client implementing ``RemoteStore`` and ``MetricSettingsSource``.

    Usage::

        async with SupabaseRestClient(url, anon_key, access_token) as remote:
            await remote.upsert("steps_daily", rows, "user_id,source,date")
            settings = await remote.get_metric_settings()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str = "",
        *,
        source: str = "health_connect",
        user_id: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the client.

        Args:
            base_url: Project URL, e.g. ``https://xyz.supabase.co``.
            api_key: Project anon key (sent as ``apikey``).
            access_token: User JWT; falls back to the anon key.
            source: Value of the ``source`` column this client writes.
            user_id: Restricts settings reads to one user when set.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use ``MockTransport``).
        """
        if not base_url:
            raise RemoteStoreError("Supabase URL must not be empty")
        self._source = source
        self._user_id = user_id
        self._client_options: dict[str, Any] = {
            "base_url": f"{base_url.rstrip('/')}/rest/v1",
            "headers": {
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
            },
            "timeout": timeout,
            "transport": transport,
        }
        self._client: httpx.AsyncClient | None = None

    @property
    def source(self) -> str:
        return self._source

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    async def upsert(
        self, table: str, rows: list[dict[str, Any]], conflict_key: str
    ) -> None:
        """Idempotently upsert ``rows`` into ``table``."""
        if not rows:
            return
        await self._request(
            "POST",
            f"/{table}",
            params={"on_conflict": conflict_key},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            json=rows,
        )
        logger.debug("Upserted %d row(s) into %s", len(rows), table)

    async def delete(self, table: str, source_measure_id: str) -> None:
        """Delete this source's rows in ``table`` for ``source_measure_id``."""
        await self._request(
            "DELETE",
            f"/{table}",
            params={
                "source": f"eq.{self._source}",
                "source_measure_id": f"eq.{source_measure_id}",
            },
        )
        logger.debug("Deleted %s rows for source_measure_id %s", table, source_measure_id)

    # ------------------------------------------------------------------
    # MetricSettingsSource
    # ------------------------------------------------------------------

    async def get_metric_settings(self) -> list[MetricSetting]:
        """Fetch the user's metric settings rows."""
        params = {"select": "*"}
        if self._user_id:
            params["user_id"] = f"eq.{self._user_id}"
        response = await self._request("GET", "/metric_settings", params=params)

        try:
            rows = response.json()
        except ValueError as exc:
            raise RemoteUnavailableError(f"Invalid JSON from metric_settings: {exc}") from exc
        if not isinstance(rows, list):
            raise RemoteUnavailableError(
                f"Expected a list from metric_settings, got {type(rows).__name__}"
            )

        settings: list[MetricSetting] = []
        for row in rows:
            if not isinstance(row, dict) or not row.get("metric"):
                continue
            settings.append(MetricSetting(
                metric=str(row["metric"]),
                enabled=bool(row.get("enabled", False)),
                preferred_source=row.get("preferred_source"),
                allowed_sources=tuple(row.get("allowed_sources") or ()),
            ))
        return settings

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def aclose(self) -> None:
        """Release the connection pool. The next request opens a new one."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> SupabaseRestClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_options)
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http().request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteUnavailableError(f"{method} {url} failed: {exc}") from exc

        status = response.status_code
        if status < 400:
            return response

        message = f"{method} {url} returned {status}: {response.text[:200]}"
        if status >= 500 or status in _TRANSIENT_CLIENT_STATUSES:
            raise RemoteUnavailableError(message)
        raise RemoteRejectedError(message, status)
