"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan lifecycle transition and repayment is logged here.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord, serialize_value


logger = logging.getLogger("payroll_loans.audit")


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_REQUESTED = "loan_requested"
    LOAN_APPROVED = "loan_approved"
    LOAN_ACTIVATED = "loan_activated"
    LOAN_REJECTED = "loan_rejected"
    LOAN_CLOSED = "loan_closed"
    EMI_CONFIGURED = "emi_configured"
    PAYMENT_RECORDED = "payment_recorded"
    INSTALLMENT_OVERDUE = "installment_overdue"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str          # Type of entity (loan, installment)
    entity_id: str            # ID of the affected entity
    previous_hash: str        # Hash of previous audit event for chaining
    current_hash: str         # SHA-256 hash of this event
    metadata: Dict[str, Any]  # Additional event-specific data
    user_id: Optional[str] = None  # Actor who initiated the action

    def __post_init__(self):
        # Decimals, dates and enums become strings so the hash is stable
        if self.metadata:
            self.metadata = serialize_value(self.metadata)

    @property
    def amount(self) -> Optional[Decimal]:
        value = self.metadata.get('amount') if self.metadata else None
        return Decimal(value) if value is not None else None

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()  # Thread safety for concurrent access
        self._load_last_hash()

    def _sorted_events(self) -> List[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        return sorted(events, key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self._sorted_events()
        if events:
            self._last_hash = events[-1].get('current_hash')
            self._sequence = max(e.get('sequence', 0) for e in events)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:  # Thread-safe event creation and chaining
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",  # Will be calculated below
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            # Orders events that share a timestamp
            record['sequence'] = self._sequence + 1
            self.storage.save(self.table_name, event.id, record)

            self._sequence += 1
            self._last_hash = event.current_hash

            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first
        """
        events = [
            AuditEvent.from_dict(data) for data in self._sorted_events()
            if data.get('entity_type') == entity_type and data.get('entity_id') == entity_id
        ]
        if limit:
            events = events[-limit:]  # Get most recent N events
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events sorted by creation time"""
        events = [AuditEvent.from_dict(data) for data in self._sorted_events()]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = [AuditEvent.from_dict(data) for data in self._sorted_events()]
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)


class LoanAuditor:
    """
    Fire-and-forget audit sink for loan actions

    Called after the financial transaction has committed. A failing audit
    write is logged and swallowed so it can never undo a committed payment.
    """

    def __init__(self, audit_trail: Optional[AuditTrail], enabled: bool = True):
        self.audit_trail = audit_trail
        self.enabled = enabled and audit_trail is not None

    def record(
        self,
        event_type: AuditEventType,
        loan_id: str,
        actor_id: Optional[str],
        amount: Optional[Decimal] = None,
        **metadata: Any
    ) -> Optional[AuditEvent]:
        if not self.enabled:
            return None

        payload = {'loan_id': loan_id, 'action': event_type.value}
        if amount is not None:
            payload['amount'] = amount
        payload.update(metadata)

        try:
            return self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan_id,
                metadata=payload,
                user_id=actor_id
            )
        except Exception as e:
            logger.error(f"Failed to write audit event {event_type.value} for loan {loan_id}: {e}")
            return None
