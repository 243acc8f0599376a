"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging for returns and registry changes.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from aml_returns.storage import InMemoryStorage
from aml_returns.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Metadata values are converted to JSON-safe types"""
        now = datetime.now(timezone.utc)

        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.SUBMISSION_CREATED,
            entity_type="submission",
            entity_id="SUB001",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("80.5"),
                "at": now,
                "status": AuditEventType.SUBMISSION_APPROVED,
                "nested": {"values": [Decimal("1.1"), Decimal("2.2")]}
            }
        )

        assert event.metadata["amount"] == "80.5"
        assert event.metadata["at"] == now.isoformat()
        assert event.metadata["status"] == "submission_approved"
        assert event.metadata["nested"]["values"] == ["1.1", "2.2"]

    def test_hash_changes_with_content(self):
        now = datetime.now(timezone.utc)
        base = dict(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.SUBMISSION_CREATED, entity_type="submission",
            entity_id="SUB001", previous_hash="", current_hash="", metadata={"month": 12}
        )

        first = AuditEvent(**base)
        second = AuditEvent(**dict(base, metadata={"month": 11}))

        assert first.calculate_hash() != second.calculate_hash()
        assert len(first.calculate_hash()) == 64

    def test_storage_round_trip_preserves_hash(self, audit_trail, storage):
        event = audit_trail.log_event(
            AuditEventType.ORGANIZATION_CREATED, "organization", "ORG001", {"code": "BOU"}, "admin-1"
        )

        restored = AuditEvent.from_dict(storage.load("audit_events", event.id))
        assert restored.event_type == AuditEventType.ORGANIZATION_CREATED
        assert restored.verify_hash()
        assert restored.current_hash == event.current_hash


class TestAuditTrail:
    """Test hash chaining and queries"""

    def test_events_are_chained(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", "SUB001")
        second = audit_trail.log_event(AuditEventType.SUBMISSION_SUBMITTED, "submission", "SUB001")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.sequence == first.sequence + 1
        assert audit_trail.get_latest_hash() == second.current_hash

    def test_chain_continues_across_instances(self, storage):
        first = AuditTrail(storage).log_event(AuditEventType.USER_CREATED, "user", "USER001")
        second = AuditTrail(storage).log_event(AuditEventType.USER_UPDATED, "user", "USER001")

        assert second.previous_hash == first.current_hash

    def test_chain_tip_comes_from_head_record(self, audit_trail, storage):
        assert audit_trail.get_latest_hash() is None

        event = audit_trail.log_event(AuditEventType.ORGANIZATION_CREATED, "organization", "ORG001")
        assert storage.load("audit_events_head", "head") == {"id": "head", "hash": event.current_hash, "sequence": 1}
        assert audit_trail.get_latest_hash() == event.current_hash

    def test_get_events_for_entity(self, audit_trail):
        audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", "SUB001")
        audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", "SUB002")
        audit_trail.log_event(AuditEventType.SUBMISSION_SUBMITTED, "submission", "SUB001")
        audit_trail.log_event(AuditEventType.SUBMISSION_APPROVED, "submission", "SUB001")

        events = audit_trail.get_events_for_entity("submission", "SUB001")
        assert [e.event_type for e in events] == [
            AuditEventType.SUBMISSION_CREATED,
            AuditEventType.SUBMISSION_SUBMITTED,
            AuditEventType.SUBMISSION_APPROVED,
        ]

        latest = audit_trail.get_events_for_entity("submission", "SUB001", limit=1)
        assert latest[0].event_type == AuditEventType.SUBMISSION_APPROVED

    def test_get_events_by_type(self, audit_trail):
        audit_trail.log_event(AuditEventType.SUBMISSION_REJECTED, "submission", "SUB001", {"reason": "x"})
        audit_trail.log_event(AuditEventType.SUBMISSION_APPROVED, "submission", "SUB002")

        rejected = audit_trail.get_events_by_type(AuditEventType.SUBMISSION_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].metadata["reason"] == "x"

        future = datetime.now(timezone.utc) + timedelta(days=1)
        assert audit_trail.get_events_by_type(AuditEventType.SUBMISSION_APPROVED, start_time=future) == []

    def test_count_events(self, audit_trail):
        for i in range(3):
            audit_trail.log_event(AuditEventType.ORGANIZATION_UPDATED, "organization", f"ORG{i}")
        assert audit_trail.count_events() == 3


class TestIntegrity:
    """Test tamper detection"""

    def test_valid_chain(self, audit_trail):
        for i in range(5):
            audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", f"SUB{i}", {"n": i})

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_empty_trail_is_valid(self, audit_trail):
        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 0

    def test_tampered_metadata_detected(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", "SUB001")
        event = audit_trail.log_event(
            AuditEventType.SUBMISSION_REJECTED, "submission", "SUB001", {"reason": "Incomplete STR data"}
        )

        data = storage.load("audit_events", event.id)
        data["metadata"]["reason"] = "Looks fine"
        storage.save("audit_events", event.id, data)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self, audit_trail, storage):
        events = [
            audit_trail.log_event(AuditEventType.SUBMISSION_CREATED, "submission", f"SUB{i}")
            for i in range(3)
        ]
        storage.delete("audit_events", events[1].id)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == events[2].id
