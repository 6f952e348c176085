"""Metric gate — is collection of a data type currently permitted?

The user's remote ``metric_settings`` decide which metrics are collected and
from which source. Settings are fetched once per sync run. If that fetch
fails, the gate fails open and permits every type: losing health data to a
transient outage is treated as worse than briefly syncing a metric the user
switched off, and the next successful fetch corrects it.
"""

from __future__ import annotations

import logging

from vitalsync.core.remote import MetricSetting, MetricSettingsSource
from vitalsync.domains.health.sync.record_types import METRIC_FOR_TYPE

logger = logging.getLogger(__name__)


class MetricGateError(Exception):
    """Raised when the gate is queried before settings were loaded."""


class MetricGate:
    """Per-run snapshot of metric enablement for one sync source.

    Usage::

        gate = MetricGate(settings_source, source="health_connect")
        await gate.load()
        if gate.is_enabled("steps"):
            ...
    """

    def __init__(self, settings_source: MetricSettingsSource | None, *, source: str) -> None:
        self._settings_source = settings_source
        self._source = source.lower()
        self._settings: dict[str, MetricSetting] | None = None
        self._fail_open = False
        self._unrestricted = False

    @property
    def failed_open(self) -> bool:
        """True when the last load fell back to permitting everything."""
        return self._fail_open

    async def load(self) -> None:
        """Fetch a fresh settings snapshot, failing open on any error.

        Without a settings source every type is enabled.
        """
        if self._settings_source is None:
            self._settings = {}
            self._fail_open = False
            self._unrestricted = True
            return
        try:
            rows = await self._settings_source.get_metric_settings()
        except Exception:
            logger.warning(
                "Failed to fetch metric settings; treating all data types as enabled",
                exc_info=True,
            )
            self._settings = {}
            self._fail_open = True
            return

        self._settings = {row.metric: row for row in rows}
        self._fail_open = False
        logger.debug("Loaded %d metric settings", len(self._settings))

    def is_enabled(self, data_type: str) -> bool:
        """Whether ``data_type`` may be collected by this sync source.

        Raises:
            MetricGateError: If :meth:`load` has not been awaited.
        """
        if self._settings is None:
            raise MetricGateError("MetricGate.load() must be awaited before is_enabled()")
        if self._fail_open or self._unrestricted:
            return True

        metric = METRIC_FOR_TYPE.get(data_type)
        if metric is None:
            return True

        setting = self._settings.get(metric)
        if setting is None or not setting.enabled:
            return False
        return self._source_matches(setting)

    def _source_matches(self, setting: MetricSetting) -> bool:
        preferred = (setting.preferred_source or "").lower()
        allowed = [s.lower() for s in setting.allowed_sources]
        if not preferred and not allowed:
            return True
        return preferred == self._source or self._source in allowed
