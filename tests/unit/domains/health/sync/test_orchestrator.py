"""Tests for SyncOrchestrator — gating, failure isolation, run status."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeRemote, enabled_everywhere, sleep_record, steps_record, weight_record

from vitalsync.core.audit.logger import ACTION_SYNC_RUN
from vitalsync.core.remote import MetricSetting, RemoteUnavailableError
from vitalsync.core.storage.state import LAST_SYNC_AT
from vitalsync.domains.health.connectors.models import PlatformUnavailableError
from vitalsync.domains.health.sync.detector import (
    BACKFILLED,
    FAILED,
    SKIPPED,
    SYNCED,
    ChangeDetector,
)
from vitalsync.domains.health.sync.metric_gate import MetricGate
from vitalsync.domains.health.sync.orchestrator import RUN_RETRY, RUN_SUCCESS, SyncOrchestrator

_ALL_ON = enabled_everywhere("steps_daily", "weight_daily", "sleep_duration_daily")


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote(list(_ALL_ON))


@pytest.fixture
def orchestrator(platform, remote, token_store, outbox, sync_state, audit_logger) -> SyncOrchestrator:
    gate = MetricGate(remote, source="health_connect")
    detector = ChangeDetector(platform, token_store, outbox, tz=timezone.utc)
    return SyncOrchestrator(platform, gate, detector, sync_state, audit_logger)


class TestRun:
    def test_first_run_backfills_authorized_types(self, orchestrator, platform, token_store, outbox):
        platform.upsert_record(steps_record("s1"))
        platform.upsert_record(weight_record("w1"))

        run = _run(orchestrator.run_sync())

        assert run.status == RUN_SUCCESS
        assert run.outcomes == {"sleep": BACKFILLED, "steps": BACKFILLED, "weight": BACKFILLED}
        assert run.entries_queued == 2
        assert set(token_store.all()) == {"sleep", "steps", "weight"}

    def test_processing_order_is_fixed(self, orchestrator):
        run = _run(orchestrator.run_sync())
        assert list(run.outcomes) == ["sleep", "steps", "weight"]

    def test_unauthorized_types_are_not_touched(self, orchestrator, token_store):
        run = _run(orchestrator.run_sync())
        assert "hrv" not in run.outcomes
        assert token_store.get("hrv") is None

    def test_second_run_without_changes(self, orchestrator, platform, outbox, token_store):
        platform.upsert_record(steps_record("s1"))
        _run(orchestrator.run_sync())
        tokens, queued = token_store.all(), outbox.count()

        run = _run(orchestrator.run_sync())

        assert set(run.outcomes.values()) == {SYNCED}
        assert run.entries_queued == 0
        assert token_store.all() == tokens
        assert outbox.count() == queued


class TestGating:
    def test_disabled_metric_is_skipped(self, orchestrator, remote, platform, token_store, outbox):
        remote.settings = [
            MetricSetting("steps_daily", enabled=False),
            MetricSetting("weight_daily", enabled=True),
            MetricSetting("sleep_duration_daily", enabled=True),
        ]
        platform.upsert_record(steps_record("s1"))

        run = _run(orchestrator.run_sync())

        assert run.outcomes["steps"] == SKIPPED
        assert token_store.get("steps") is None
        assert outbox.count_by_type().get("steps") is None

    def test_other_preferred_source_is_skipped(self, orchestrator, remote, platform, token_store):
        remote.settings = [MetricSetting("weight_daily", enabled=True, preferred_source="withings")]
        platform.upsert_record(weight_record("w1"))
        run = _run(orchestrator.run_sync())
        assert run.outcomes["weight"] == SKIPPED
        assert token_store.get("weight") is None

    def test_settings_outage_fails_open(self, orchestrator, remote, platform, outbox):
        remote.settings = []
        remote.settings_error = RemoteUnavailableError("timeout")
        platform.upsert_record(steps_record("s1"))

        run = _run(orchestrator.run_sync())

        assert run.status == RUN_SUCCESS
        assert run.settings_failed_open is True
        assert run.outcomes["steps"] == BACKFILLED
        assert outbox.count() == 1


class TestFailureIsolation:
    def test_one_type_failing_does_not_stop_others(self, orchestrator, platform, token_store, outbox):
        platform.upsert_record(steps_record("s1"))
        platform.upsert_record(weight_record("w1"))
        platform.upsert_record(sleep_record("n1"))
        platform.fail_type("steps", RuntimeError("boom"))

        run = _run(orchestrator.run_sync())

        assert run.status == RUN_SUCCESS
        assert run.outcomes["steps"] == FAILED
        assert run.outcomes["weight"] == BACKFILLED
        assert run.outcomes["sleep"] == BACKFILLED
        assert token_store.get("steps") is None
        assert outbox.count() == 2

    def test_unavailable_platform_means_retry(self, orchestrator, platform, token_store, sync_state):
        platform.available = False

        run = _run(orchestrator.run_sync())

        assert run.status == RUN_RETRY
        assert run.results == {}
        assert token_store.all() == {}
        assert sync_state.get_timestamp(LAST_SYNC_AT) is None

    def test_authorization_lookup_failure_means_retry(self, orchestrator, platform, monkeypatch):
        async def _denied():
            raise PlatformUnavailableError("permission service down")

        monkeypatch.setattr(platform, "list_authorized_types", _denied)
        run = _run(orchestrator.run_sync())
        assert run.status == RUN_RETRY
        assert run.error == "PlatformUnavailableError"


class TestBookkeeping:
    def test_successful_run_records_timestamp(self, orchestrator, sync_state):
        _run(orchestrator.run_sync())
        assert sync_state.get_timestamp(LAST_SYNC_AT) is not None

    def test_run_is_audited(self, orchestrator, audit_logger, platform):
        platform.upsert_record(steps_record("s1"))
        _run(orchestrator.run_sync())
        events = audit_logger.get_events(action=ACTION_SYNC_RUN)
        assert len(events) == 1
        assert events[0]["status"] == "success"
        assert events[0]["metadata"]["outcomes"]["steps"] == BACKFILLED
        assert events[0]["metadata"]["entries_queued"] == 1

    def test_is_due(self, orchestrator, sync_state):
        assert orchestrator.is_due(300) is True
        _run(orchestrator.run_sync())
        assert orchestrator.is_due(300) is False
        assert orchestrator.is_due(0) is True

    def test_is_due_after_interval(self, orchestrator, sync_state):
        sync_state.set_timestamp(LAST_SYNC_AT, datetime.now(timezone.utc) - timedelta(minutes=6))
        assert orchestrator.is_due(300) is True

    def test_to_dict(self, orchestrator):
        data = _run(orchestrator.run_sync()).to_dict()
        assert data["status"] == RUN_SUCCESS
        assert data["finished_at"] is not None
        assert data["capped_types"] == []
