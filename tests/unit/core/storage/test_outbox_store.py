"""Tests for OutboxStore — atomic append, FIFO drain, retry bookkeeping."""

from __future__ import annotations

import pytest

from vitalsync.core.storage.models import (
    DELETE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PERMANENT_FAILURE,
    UPSERT,
    OutboxEntry,
)
from vitalsync.core.storage.outbox import OutboxError


def _entry(source_id: str, data_type: str = "steps", **kwargs) -> OutboxEntry:
    kwargs.setdefault("operation", UPSERT)
    kwargs.setdefault("date", "2026-10-15")
    kwargs.setdefault("payload", {"value_count": 1200})
    return OutboxEntry(source_id=source_id, data_type=data_type, **kwargs)


def _ids(outbox) -> list[int]:
    return [e.id for e in outbox.drain(100)]


class TestAppend:
    def test_append_returns_count(self, outbox):
        assert outbox.append([_entry("a"), _entry("b")]) == 2
        assert outbox.count() == 2

    def test_append_empty_is_noop(self, outbox):
        assert outbox.append([]) == 0
        assert outbox.count() == 0

    def test_payload_encrypted_at_rest(self, outbox, sync_db):
        outbox.append([_entry("a", payload={"value_count": 4242})])
        raw = sync_db.connection.execute("SELECT payload_enc FROM health_outbox").fetchone()[0]
        assert "4242" not in raw
        assert outbox.drain(1)[0].payload == {"value_count": 4242}

    def test_batch_is_all_or_nothing(self, outbox):
        entries = [_entry("a"), _entry("b", payload={"bad": object()})]
        with pytest.raises(OutboxError):
            outbox.append(entries)
        assert outbox.count() == 0

    def test_failed_insert_rolls_back_whole_batch(self, outbox):
        entries = [_entry("a"), _entry("b", operation="MERGE")]
        with pytest.raises(OutboxError):
            outbox.append(entries)
        assert outbox.count() == 0

    def test_delete_entry_has_empty_payload(self, outbox):
        outbox.append([OutboxEntry(source_id="gone", data_type="sleep", operation=DELETE)])
        entry = outbox.drain(1)[0]
        assert entry.operation == DELETE
        assert entry.payload == {}
        assert entry.date == ""


class TestDrain:
    def test_drain_is_fifo(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        outbox.append([_entry("c")])
        assert [e.source_id for e in outbox.drain(10)] == ["a", "b", "c"]

    def test_drain_respects_limit(self, outbox):
        outbox.append([_entry(str(i)) for i in range(5)])
        assert len(outbox.drain(2)) == 2

    def test_drain_does_not_remove(self, outbox):
        outbox.append([_entry("a")])
        outbox.drain(10)
        assert outbox.count() == 1

    def test_drain_after_id(self, outbox):
        outbox.append([_entry("a"), _entry("b"), _entry("c")])
        first = outbox.drain(1)[0]
        assert [e.source_id for e in outbox.drain(10, after_id=first.id)] == ["b", "c"]

    def test_drain_zero_limit(self, outbox):
        outbox.append([_entry("a")])
        assert outbox.drain(0) == []

    def test_drain_skips_non_pending(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        first_id = _ids(outbox)[0]
        outbox.mark_permanent_failure([first_id], "400")
        assert [e.source_id for e in outbox.drain(10)] == ["b"]

    def test_undecryptable_entry_is_parked(self, outbox, sync_db):
        outbox.append([_entry("a"), _entry("b")])
        with sync_db.connection:
            sync_db.connection.execute(
                "UPDATE health_outbox SET payload_enc = 'garbage' WHERE source_id = 'a'"
            )
        assert [e.source_id for e in outbox.drain(10)] == ["b"]
        assert outbox.count(STATUS_PERMANENT_FAILURE) == 1


class TestRemove:
    def test_remove(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        ids = _ids(outbox)
        assert outbox.remove(ids[:1]) == 1
        assert [e.source_id for e in outbox.drain(10)] == ["b"]

    def test_remove_empty(self, outbox):
        assert outbox.remove([]) == 0

    def test_remove_superseded_only_older_same_record(self, outbox):
        outbox.append([_entry("a"), _entry("a", data_type="weight"), _entry("b")])
        outbox.append([_entry("a"), _entry("a")])
        ids = _ids(outbox)
        outbox.mark_permanent_failure([ids[0]], "parked")

        assert outbox.remove_superseded("a", "steps", ids[3]) == 1
        remaining = [e.id for e in outbox.drain(10)]
        assert outbox.get(ids[0]) is None
        assert remaining == [ids[1], ids[2], ids[3], ids[4]]
        assert outbox.count() == 4

    def test_remove_many_ids(self, outbox):
        outbox.append([_entry(str(i)) for i in range(1200)])
        ids = [e.id for e in outbox.drain(2000)]
        assert outbox.remove(ids) == 1200
        assert outbox.count() == 0


class TestRetryBookkeeping:
    def test_record_failure_keeps_pending(self, outbox):
        outbox.append([_entry("a")])
        entry_id = _ids(outbox)[0]
        outbox.record_failure([entry_id], "503")
        outbox.record_failure([entry_id], "timeout")
        entry = outbox.get(entry_id)
        assert entry.status == STATUS_PENDING
        assert entry.retry_count == 2
        assert entry.last_error == "timeout"

    def test_exceeded_retries_marked_failed(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        first, second = _ids(outbox)
        for _ in range(5):
            outbox.record_failure([first], "503")
        outbox.record_failure([second], "503")

        assert outbox.mark_exceeded_retries_as_failed(5) == 1
        assert outbox.get(first).status == STATUS_FAILED
        assert outbox.get(second).status == STATUS_PENDING

    def test_retry_failed_resets_counter(self, outbox):
        outbox.append([_entry("a")])
        entry_id = _ids(outbox)[0]
        for _ in range(5):
            outbox.record_failure([entry_id], "503")
        outbox.mark_exceeded_retries_as_failed(5)

        assert outbox.retry_failed() == 1
        entry = outbox.get(entry_id)
        assert entry.status == STATUS_PENDING
        assert entry.retry_count == 0

    def test_retry_failed_leaves_permanent_failures(self, outbox):
        outbox.append([_entry("a")])
        outbox.mark_permanent_failure(_ids(outbox), "400")
        assert outbox.retry_failed() == 0
        assert outbox.count(STATUS_PERMANENT_FAILURE) == 1

    def test_reset_all_failed(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        first, second = _ids(outbox)
        outbox.mark_permanent_failure([first], "400")
        for _ in range(3):
            outbox.record_failure([second], "503")
        outbox.mark_exceeded_retries_as_failed(3)

        assert outbox.reset_all_failed() == 2
        assert outbox.count(STATUS_PENDING) == 2

    def test_purge_permanent_failures(self, outbox, sync_db):
        outbox.append([_entry("old"), _entry("new")])
        outbox.mark_permanent_failure(_ids(outbox), "400")
        with sync_db.connection:
            sync_db.connection.execute(
                "UPDATE health_outbox SET created_at = '2020-01-01T00:00:00+00:00' "
                "WHERE source_id = 'old'"
            )
        assert outbox.purge_permanent_failures(older_than_days=30) == 1
        assert outbox.count() == 1


class TestIntrospection:
    def test_count_by_status(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        outbox.mark_permanent_failure(_ids(outbox)[:1], "400")
        assert outbox.count(STATUS_PENDING) == 1
        assert outbox.count(STATUS_PERMANENT_FAILURE) == 1
        assert outbox.count() == 2

    def test_count_unknown_status(self, outbox):
        with pytest.raises(OutboxError):
            outbox.count("lost")

    def test_count_by_type(self, outbox):
        outbox.append([_entry("a"), _entry("b"), _entry("c", data_type="sleep")])
        assert outbox.count_by_type() == {"sleep": 1, "steps": 2}

    def test_clear(self, outbox):
        outbox.append([_entry("a"), _entry("b")])
        assert outbox.clear() == 2
        assert outbox.count() == 0

    def test_get_missing(self, outbox):
        assert outbox.get(999) is None
