"""
Audit Trail Module

Append-only log of every registry and submission change. Each event
stores the SHA-256 hash of its predecessor, so editing or removing a stored
event breaks the chain and shows up in verify_integrity().
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Organization events
    ORGANIZATION_CREATED = "organization_created"
    ORGANIZATION_UPDATED = "organization_updated"
    ORGANIZATION_ACTIVATED = "organization_activated"
    ORGANIZATION_DEACTIVATED = "organization_deactivated"
    ORGANIZATION_DELETED = "organization_deleted"

    # User events
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_ACTIVATED = "user_activated"
    USER_DEACTIVATED = "user_deactivated"

    # Submission events
    SUBMISSION_CREATED = "submission_created"
    SUBMISSION_UPDATED = "submission_updated"
    SUBMISSION_SUBMITTED = "submission_submitted"
    SUBMISSION_APPROVED = "submission_approved"
    SUBMISSION_REJECTED = "submission_rejected"
    SUBMISSION_DELETED = "submission_deleted"

    # Reporting and system events
    DATA_EXPORTED = "data_exported"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _json_safe(value: Any) -> Any:
    """Reduce metadata to the JSON types it will have after a storage round trip"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str               # organization, user, submission, export
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'metadata', _json_safe(self.metadata or {}))

    def calculate_hash(self) -> str:
        """SHA-256 over every chained field except current_hash itself"""
        payload = json.dumps({
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail

    The chain head (last hash and sequence number) is kept in its own
    record and advanced in the same unit of work as the event it points to,
    so a rolled back transaction also rolls back the head.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def _chain_head(self) -> Tuple[str, int]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return (head['hash'], head['sequence']) if head else ("", 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of entity affected
            entity_id: ID of the entity
            metadata: Event-specific details
            user_id: Who did it

        Returns:
            The stored AuditEvent
        """
        with self.storage.atomic():
            previous_hash, sequence = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=sequence + 1
            )
            event = replace(event, current_hash=event.calculate_hash())

            self.storage.insert(self.table_name, event.id, event.to_dict())
            self.storage.save(
                self.head_table, self.HEAD_ID,
                {'id': self.HEAD_ID, 'hash': event.current_hash, 'sequence': event.sequence}
            )
        return event

    def _query(self, filters: Dict[str, Any], limit: Optional[int]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        events.sort(key=lambda event: event.sequence)
        return events[-limit:] if limit else events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """History of one entity, oldest first; ``limit`` keeps the most recent events"""
        return self._query({'entity_type': entity_type, 'entity_id': entity_id}, limit)

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events of one type within an inclusive time range"""
        events = self._query({'event_type': event_type.value}, None)
        events = [
            e for e in events
            if (start_time is None or e.created_at >= start_time)
            and (end_time is None or e.created_at <= end_time)
        ]
        return events[-limit:] if limit else events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in sequence order

        Returns a dict with ``valid``, ``total_events``, ``hash_errors``
        (events whose content no longer matches their hash) and
        ``chain_breaks`` (events whose predecessor hash does not match).
        """
        events = self._query({}, None)
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Hash of the most recent event, None for an empty trail"""
        latest_hash, _ = self._chain_head()
        return latest_hash or None
