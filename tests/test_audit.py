"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection, integrity verification
and the fire-and-forget loan auditor.
"""

import pytest
from datetime import datetime, timezone, date
from decimal import Decimal

from payroll_loans.audit import AuditEvent, AuditEventType, AuditTrail, LoanAuditor
from payroll_loans.engine import LoanEngine
from payroll_loans.exceptions import StorageError
from payroll_loans.loans import LoanType
from payroll_loans.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture
def audit_trail():
    return AuditTrail(InMemoryStorage())


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Decimals, dates and enums in metadata become strings"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal('2000.00'),
                "due_date": date(2024, 2, 1),
                "source": AuditEventType.PAYMENT_RECORDED,
            }
        )

        assert event.metadata == {
            "amount": "2000.00",
            "due_date": "2024-02-01",
            "source": "payment_recorded",
        }
        assert event.amount == Decimal('2000.00')

    def test_hash_is_deterministic(self):
        """Same content, same hash; changed content, different hash"""
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)
        kwargs = dict(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.LOAN_REQUESTED, entity_type="loan",
            entity_id="LOAN001", previous_hash="abc", current_hash="",
            metadata={"amount": "100.00"}, user_id="EMP001"
        )
        first = AuditEvent(**kwargs)
        second = AuditEvent(**kwargs)

        assert first.calculate_hash() == second.calculate_hash()
        assert len(first.calculate_hash()) == 64

        second.metadata["amount"] = "100.01"
        assert first.calculate_hash() != second.calculate_hash()


class TestAuditTrail:
    """Test hash chaining and integrity checks"""

    def test_events_are_chained(self, audit_trail):
        """Each event points at the hash of the one before"""
        first = audit_trail.log_event(AuditEventType.LOAN_REQUESTED, "loan", "LOAN001")
        second = audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "LOAN001")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert first.verify_hash()
        assert second.verify_hash()

    def test_verify_integrity_clean_chain(self, audit_trail):
        for event_type in (
            AuditEventType.LOAN_REQUESTED,
            AuditEventType.LOAN_APPROVED,
            AuditEventType.LOAN_ACTIVATED,
        ):
            audit_trail.log_event(event_type, "loan", "LOAN001", {"amount": Decimal('10.00')})

        result = audit_trail.verify_integrity()

        assert result['valid'] is True
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_metadata_detected(self, audit_trail):
        """Editing a stored event breaks its hash"""
        audit_trail.log_event(AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001", {"amount": "2000.00"})
        event = audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED, "loan", "LOAN001", {"amount": "500.00"}
        )

        stored = audit_trail.storage.load("audit_events", event.id)
        stored['metadata']['amount'] = "5.00"
        audit_trail.storage.save("audit_events", event.id, stored)

        result = audit_trail.verify_integrity()

        assert result['valid'] is False
        assert [e['event_id'] for e in result['hash_errors']] == [event.id]

    def test_deleted_event_breaks_chain(self, audit_trail):
        """Removing an event from the middle is a chain break"""
        audit_trail.log_event(AuditEventType.LOAN_REQUESTED, "loan", "LOAN001")
        middle = audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "LOAN001")
        audit_trail.log_event(AuditEventType.LOAN_ACTIVATED, "loan", "LOAN001")

        audit_trail.storage.delete("audit_events", middle.id)
        result = audit_trail.verify_integrity()

        assert result['valid'] is False
        assert len(result['chain_breaks']) == 1

    def test_events_for_entity(self, audit_trail):
        """Events can be queried per loan, oldest first, with a limit"""
        audit_trail.log_event(AuditEventType.LOAN_REQUESTED, "loan", "LOAN001")
        audit_trail.log_event(AuditEventType.LOAN_REQUESTED, "loan", "LOAN002")
        audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "LOAN001")

        events = audit_trail.get_events_for_entity("loan", "LOAN001")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_REQUESTED, AuditEventType.LOAN_APPROVED
        ]
        latest = audit_trail.get_events_for_entity("loan", "LOAN001", limit=1)
        assert [e.event_type for e in latest] == [AuditEventType.LOAN_APPROVED]
        assert audit_trail.count_events() == 3

    def test_chain_continues_after_reopen(self):
        """A new trail on existing storage continues the chain"""
        storage = SQLiteStorage()
        first_trail = AuditTrail(storage)
        last = first_trail.log_event(AuditEventType.LOAN_REQUESTED, "loan", "LOAN001")

        second_trail = AuditTrail(storage)
        event = second_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "LOAN001")

        assert event.previous_hash == last.current_hash
        assert second_trail.verify_integrity()['valid'] is True
        storage.close()


class BrokenAuditTrail:
    """Audit sink whose writes always fail"""

    def log_event(self, *args, **kwargs):
        raise StorageError("audit storage offline")


class TestLoanAuditor:
    """Test the fire-and-forget auditor"""

    def test_record_payload(self, audit_trail):
        """Events carry loan id, action, actor and amount"""
        auditor = LoanAuditor(audit_trail)

        event = auditor.record(
            AuditEventType.PAYMENT_RECORDED, "LOAN001", "CLERK01",
            amount=Decimal('2000.00'), payment_reference="PAY-001"
        )

        assert event.entity_type == "loan"
        assert event.entity_id == "LOAN001"
        assert event.user_id == "CLERK01"
        assert event.metadata == {
            "loan_id": "LOAN001",
            "action": "payment_recorded",
            "amount": "2000.00",
            "payment_reference": "PAY-001",
        }

    def test_failures_are_swallowed(self):
        """A failing audit write never raises"""
        auditor = LoanAuditor(BrokenAuditTrail())

        assert auditor.record(AuditEventType.LOAN_REQUESTED, "LOAN001", "EMP001") is None

    def test_disabled_auditor(self, audit_trail):
        auditor = LoanAuditor(audit_trail, enabled=False)

        assert auditor.record(AuditEventType.LOAN_REQUESTED, "LOAN001", "EMP001") is None
        assert audit_trail.count_events() == 0

    def test_audit_failure_does_not_undo_payment(self):
        """The payment stays committed when auditing fails"""
        engine = LoanEngine(storage=InMemoryStorage(), clock=lambda: date(2024, 1, 15))
        loan = engine.request_loan("EMP001", LoanType.LOAN, "10000", "0", 5, date(2024, 1, 1))
        engine.approve_loan(loan.id, "MGR001")
        engine.auditor.audit_trail = BrokenAuditTrail()

        payment = engine.record_payment(loan.id, "2000.00", "PAY-001")

        assert payment.outstanding_principal == Decimal('8000.00')
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('8000.00')
        assert len(engine.get_payments(loan.id)) == 1
