"""Shared test fixtures for VitalSync tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from vitalsync.core.remote import (  # noqa: E402
    MetricSetting,
    RemoteRejectedError,
    RemoteUnavailableError,
)
from vitalsync.domains.health.connectors.in_memory import InMemoryHealthPlatform  # noqa: E402
from vitalsync.domains.health.connectors.models import HealthRecord  # noqa: E402


# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "")
    monkeypatch.setenv("SYNC_TIMEZONE", "UTC")


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def steps_record(record_id: str, count: int = 1000, *, hours: float = 2.0) -> HealthRecord:
    end = hours_ago(hours)
    return HealthRecord(
        record_id=record_id,
        data_type="steps",
        start_time=end - timedelta(minutes=30),
        end_time=end,
        values={"count": count},
    )


def weight_record(record_id: str, kilograms: float = 71.4, *, hours: float = 3.0) -> HealthRecord:
    return HealthRecord(
        record_id=record_id,
        data_type="weight",
        time=hours_ago(hours),
        values={"kilograms": kilograms},
    )


def sleep_record(record_id: str, *, hours: float = 8.0) -> HealthRecord:
    end = hours_ago(hours)
    return HealthRecord(
        record_id=record_id,
        data_type="sleep",
        start_time=end - timedelta(hours=7),
        end_time=end,
    )


# ---------------------------------------------------------------------------
# Remote doubles
# ---------------------------------------------------------------------------

class FakeRemote:
    """In-memory ``RemoteStore`` + ``MetricSettingsSource``.

    ``reject_ids`` / ``unavailable_ids`` make any upsert containing a row
    with that ``source_measure_id`` fail the way PostgREST would.
    """

    def __init__(self, settings: list[MetricSetting] | None = None) -> None:
        self.settings = settings
        self.settings_error: Exception | None = None
        self.reject_ids: set[str] = set()
        self.unavailable_ids: set[str] = set()
        self.upserts: list[tuple[str, list[dict[str, Any]], str]] = []
        self.deletes: list[tuple[str, str]] = []
        self.tables: dict[str, dict[tuple[Any, ...], dict[str, Any]]] = {}

    async def get_metric_settings(self) -> list[MetricSetting]:
        if self.settings_error is not None:
            raise self.settings_error
        return list(self.settings or [])

    async def upsert(self, table: str, rows: list[dict[str, Any]], conflict_key: str) -> None:
        self.upserts.append((table, rows, conflict_key))
        ids = {row["source_measure_id"] for row in rows}
        if ids & self.unavailable_ids:
            raise RemoteUnavailableError("503 from remote")
        if ids & self.reject_ids:
            raise RemoteRejectedError("400 from remote", 400)
        stored = self.tables.setdefault(table, {})
        for row in rows:
            key = tuple(row.get(column) for column in conflict_key.split(","))
            stored[key] = row

    async def delete(self, table: str, source_measure_id: str) -> None:
        self.deletes.append((table, source_measure_id))
        if source_measure_id in self.unavailable_ids:
            raise RemoteUnavailableError("503 from remote")
        stored = self.tables.get(table, {})
        for key in [k for k, row in stored.items() if row["source_measure_id"] == source_measure_id]:
            del stored[key]

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(table, {}).values())


def enabled_everywhere(*metrics: str) -> list[MetricSetting]:
    return [MetricSetting(metric=m, enabled=True) for m in metrics]


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sync_db():
    """Create an in-memory SyncDatabase for testing."""
    from vitalsync.core.storage.database import SyncDatabase

    db = SyncDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def payload_encryptor():
    """Create a PayloadEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from vitalsync.core.storage.encryption import PayloadEncryptor

    return PayloadEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def token_store(sync_db):
    from vitalsync.core.storage.tokens import ChangeTokenStore

    return ChangeTokenStore(sync_db)


@pytest.fixture
def outbox(sync_db, payload_encryptor):
    """Create an OutboxStore backed by in-memory SQLite."""
    from vitalsync.core.storage.outbox import OutboxStore

    return OutboxStore(sync_db, payload_encryptor)


@pytest.fixture
def sync_state(sync_db):
    from vitalsync.core.storage.state import SyncStateStore

    return SyncStateStore(sync_db)


@pytest.fixture
def audit_logger(sync_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from vitalsync.core.audit.logger import AuditLogger

    return AuditLogger(sync_db)


# ---------------------------------------------------------------------------
# Platform / remote fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def platform() -> InMemoryHealthPlatform:
    return InMemoryHealthPlatform(authorized_types=["steps", "weight", "sleep"])


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()
