"""Tests for record fingerprinting and tracking."""

from datetime import datetime
from decimal import Decimal

from syncflow.core import RecordTracker, fingerprint
from syncflow.core.record_tracker import normalize_record, primary_key_value


class TestFingerprint:
    """Test stable record digests."""

    def test_field_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": "x"}) == fingerprint({"b": "x", "a": 1})

    def test_value_change_changes_digest(self):
        assert fingerprint({"id": 1, "name": "Ada"}) != fingerprint({"id": 1, "name": "Grace"})

    def test_digest_is_sha256_hex(self):
        digest = fingerprint({"id": 1})
        assert len(digest) == 64
        int(digest, 16)

    def test_non_json_values_are_normalized(self):
        record = {
            "amount": Decimal("10.50"),
            "at": datetime(2024, 5, 1, 12, 30),
            "raw": b"\x01\x02"
        }
        assert normalize_record(record) == {
            "amount": "10.50",
            "at": "2024-05-01T12:30:00",
            "raw": "0102"
        }
        assert fingerprint(record) == fingerprint(dict(record))

    def test_primary_key_value(self):
        assert primary_key_value({"id": 42}, "id") == "42"
        assert primary_key_value({"id": None}, "id") is None
        assert primary_key_value({"id": 42}, None) is None


class TestRecordTracker:
    """Test persistence of written records."""

    def test_record_many_upserts_by_primary_key(self, db_service, orchestrator, make_sync):
        sync = make_sync()
        first_run = orchestrator.create_sync_run(sync.id)
        second_run = orchestrator.create_sync_run(sync.id)
        tracker = RecordTracker(db_service)

        tracker.record_many(sync.id, first_run.id, [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}], "id")
        digests = tracker.record_many(sync.id, second_run.id, [{"id": 1, "v": "changed"}], "id")

        records = db_service.list_sync_records(sync_id=sync.id)
        assert len(records) == 2
        updated = next(record for record in records if record.primary_key == "1")
        assert updated.sync_run_id == second_run.id
        assert updated.fingerprint == digests[0]
        assert updated.record == {"id": 1, "v": "changed"}

    def test_records_without_primary_key_are_appended(self, db_service, orchestrator, make_sync):
        sync = make_sync()
        sync_run = orchestrator.create_sync_run(sync.id)
        tracker = RecordTracker(db_service)

        tracker.record(sync.id, sync_run.id, {"v": 1})
        tracker.record(sync.id, sync_run.id, {"v": 1})

        assert len(db_service.list_sync_records(sync_run_id=sync_run.id)) == 2

    def test_is_unchanged(self, db_service, orchestrator, make_sync):
        sync = make_sync()
        sync_run = orchestrator.create_sync_run(sync.id)
        tracker = RecordTracker(db_service)
        tracker.record(sync.id, sync_run.id, {"id": 7, "v": "x"}, "id")

        assert tracker.is_unchanged(sync.id, {"id": 7, "v": "x"}, "id")
        assert not tracker.is_unchanged(sync.id, {"id": 7, "v": "y"}, "id")
        assert not tracker.is_unchanged(sync.id, {"id": 8, "v": "x"}, "id")
        assert not tracker.is_unchanged(sync.id, {"id": 7, "v": "x"}, None)
