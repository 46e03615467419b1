"""
Test suite for payment processing

Tests installment targeting, interest-first allocation, balance updates,
closure, idempotent replays, the overdue sweep and concurrent payments.
All balances must move by exact Decimal amounts.
"""

import pytest
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from datetime import date

from payroll_loans.amortization import InterestMethod
from payroll_loans.audit import AuditEventType
from payroll_loans.engine import LoanEngine
from payroll_loans.exceptions import (
    AmountExceedsRemaining, DuplicatePaymentReference, InvalidPaymentAmount,
    InvalidStateTransition, LoanClosed, LoanNotFound, MissingPaymentReference,
    NoOutstandingInstallment
)
from payroll_loans.loans import InstallmentStatus, LoanStatus, LoanType, PaymentSource
from payroll_loans.storage import InMemoryStorage


class Clock:
    """Settable 'today' for tests"""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock():
    return Clock(date(2024, 1, 15))


@pytest.fixture
def engine(clock):
    return LoanEngine(storage=InMemoryStorage(), clock=clock)


def open_loan(engine, principal="10000", rate="0", tenure=5, start=date(2024, 1, 1),
              employee_id="EMP001", loan_type=LoanType.LOAN):
    loan = engine.request_loan(employee_id, loan_type, principal, rate, tenure, start)
    engine.approve_loan(loan.id, "MGR001")
    return engine.get_loan(loan.id)


class TestPaymentApplication:
    """Test applying payments to installments"""

    def test_full_installment_payment(self, engine):
        """Paying installment 1 in full moves the target to installment 2"""
        loan = open_loan(engine)

        payment = engine.record_payment(loan.id, "2000.00", "PAY-001")
        loan = engine.get_loan(loan.id)

        assert payment.installment_id == f"{loan.id}_1"
        assert payment.installment_status == InstallmentStatus.PAID
        assert payment.principal_amount == Decimal('2000.00')
        assert payment.interest_amount == Decimal('0.00')
        assert loan.outstanding_principal == Decimal('8000.00')
        assert loan.paid_to_date == Decimal('2000.00')
        assert loan.target_installment().sequence_number == 2
        assert loan.next_due_date == date(2024, 3, 1)
        assert loan.installments[0].paid_date == date(2024, 1, 15)

    def test_partial_payment_before_due(self, engine):
        """A partial payment on a future installment leaves it partial"""
        loan = open_loan(engine)

        payment = engine.record_payment(loan.id, Decimal('500'), "PAY-001")

        assert payment.installment_status == InstallmentStatus.PARTIAL
        installment = engine.get_schedule(loan.id)[0]
        assert installment.paid_amount == Decimal('500.00')
        assert installment.remaining_amount == Decimal('1500.00')

    def test_partial_payments_accumulate(self, engine):
        """Repeated payments on one installment add up until it is paid"""
        loan = open_loan(engine)

        engine.record_payment(loan.id, "500", "PAY-001")
        engine.record_payment(loan.id, "700", "PAY-002")
        payment = engine.record_payment(loan.id, "800", "PAY-003")

        assert payment.sequence_number == 1
        assert payment.installment_status == InstallmentStatus.PAID
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('8000.00')

    def test_one_payment_settles_at_most_one_installment(self, engine):
        """Overpaying the target installment is refused, not spilled over"""
        loan = open_loan(engine)

        with pytest.raises(AmountExceedsRemaining) as exc_info:
            engine.record_payment(loan.id, "2000.01", "PAY-001")

        assert exc_info.value.remaining == Decimal('2000.00')
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('10000.00')
        assert engine.get_payments(loan.id) == []

    def test_exceeds_remaining_after_partial(self, engine):
        """The limit is the installment's remaining balance"""
        loan = open_loan(engine)
        engine.record_payment(loan.id, "500", "PAY-001")

        with pytest.raises(AmountExceedsRemaining):
            engine.record_payment(loan.id, "1600", "PAY-002")
        engine.record_payment(loan.id, "1500", "PAY-003")

    def test_interest_settled_before_principal(self, engine):
        """Within an installment interest is paid first"""
        loan = open_loan(engine, principal="120000", rate="12", tenure=12)

        first = engine.record_payment(loan.id, "1000.00", "PAY-001")
        assert first.interest_amount == Decimal('1000.00')
        assert first.principal_amount == Decimal('0.00')
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('120000.00')

        second = engine.record_payment(loan.id, "9661.85", "PAY-002")
        loan = engine.get_loan(loan.id)
        assert second.interest_amount == Decimal('200.00')
        assert second.principal_amount == Decimal('9461.85')
        assert second.installment_status == InstallmentStatus.PAID
        assert loan.outstanding_principal == Decimal('110538.15')
        assert loan.interest_paid_to_date == Decimal('1200.00')
        assert loan.total_paid == Decimal('10661.85')

    def test_balance_decreases_by_principal_part(self, engine):
        """Outstanding principal drops by exactly each payment's principal part"""
        loan = open_loan(engine, principal="50000", rate="10.5", tenure=6)
        schedule = engine.get_schedule(loan.id)

        outstanding = Decimal('50000.00')
        for installment in schedule:
            half = (installment.total_amount / 2).quantize(Decimal('0.01'))
            for n, amount in enumerate((half, installment.total_amount - half)):
                payment = engine.record_payment(
                    loan.id, amount, f"PAY-{installment.sequence_number}-{n}"
                )
                current = engine.get_loan(loan.id)
                assert outstanding - current.outstanding_principal == payment.principal_amount
                assert current.outstanding_principal >= 0
                assert current.outstanding_principal + current.paid_to_date == Decimal('50000.00')
                outstanding = current.outstanding_principal

        assert outstanding == Decimal('0.00')

    def test_payment_on_unknown_loan(self, engine):
        """Unknown loan id"""
        with pytest.raises(LoanNotFound):
            engine.record_payment("missing", "100", "PAY-001")

    def test_payment_audited(self, engine):
        """Payments are audited with the amount and reference"""
        loan = open_loan(engine)

        engine.record_payment(loan.id, "2000.00", "PAY-001", recorded_by="CLERK01")
        event = engine.get_audit_events(loan.id)[-1]

        assert event.event_type == AuditEventType.PAYMENT_RECORDED
        assert event.amount == Decimal('2000.00')
        assert event.user_id == "CLERK01"
        assert event.metadata['payment_reference'] == "PAY-001"
        assert event.metadata['installment_status'] == "paid"


class TestPaymentValidation:
    """Test payments the engine refuses"""

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "10.001", "NaN"])
    def test_invalid_amounts(self, engine, amount):
        """Amounts must be positive and in whole cents"""
        loan = open_loan(engine)

        with pytest.raises(InvalidPaymentAmount):
            engine.record_payment(loan.id, amount, "PAY-001")

    def test_reference_required(self, engine):
        """Every payment needs an external reference"""
        loan = open_loan(engine)

        with pytest.raises(MissingPaymentReference):
            engine.record_payment(loan.id, "100", "")

    def test_requested_loan_refuses_payment(self, engine):
        """Payments need an active loan"""
        loan = engine.request_loan("EMP001", LoanType.LOAN, "1000", "0", 2, date(2024, 1, 1))

        with pytest.raises(InvalidStateTransition) as exc_info:
            engine.record_payment(loan.id, "100", "PAY-001")
        assert not isinstance(exc_info.value, LoanClosed)

    def test_rejected_loan_refuses_payment(self, engine):
        """Rejected loans take no payments"""
        loan = engine.request_loan("EMP001", LoanType.LOAN, "1000", "0", 2, date(2024, 1, 1))
        engine.reject_loan(loan.id, "MGR001", "No")

        with pytest.raises(InvalidStateTransition):
            engine.record_payment(loan.id, "100", "PAY-001")

    def test_no_outstanding_installment(self, engine):
        """An active loan with nothing left to settle refuses payment"""
        loan = open_loan(engine)
        stored = engine.repository.get(loan.id)
        for installment in stored.installments:
            installment.status = InstallmentStatus.PAID

        with pytest.raises(NoOutstandingInstallment):
            stored.apply_payment(Decimal('100.00'), date(2024, 1, 15), date(2024, 1, 15))


class TestLoanClosure:
    """Test implicit closure on full repayment"""

    def test_full_repayment_closes_loan(self, engine):
        """Paying every installment closes the loan at zero"""
        loan = open_loan(engine)

        for n in range(1, 6):
            payment = engine.record_payment(loan.id, "2000.00", f"PAY-{n}")

        loan = engine.get_loan(loan.id)
        assert payment.loan_status == LoanStatus.CLOSED
        assert loan.status == LoanStatus.CLOSED
        assert loan.outstanding_principal == Decimal('0.00')
        assert loan.paid_to_date == Decimal('10000.00')
        assert loan.closed_at is not None
        assert loan.next_due_date is None
        assert all(i.status == InstallmentStatus.PAID for i in loan.installments)

        event_types = [e.event_type for e in engine.get_audit_events(loan.id)]
        assert event_types[-1] == AuditEventType.LOAN_CLOSED

    def test_payment_after_closure_fails(self, engine):
        """Closed loans reject further payments"""
        loan = open_loan(engine, principal="1000", tenure=1)
        engine.record_payment(loan.id, "1000", "PAY-1")

        with pytest.raises(LoanClosed):
            engine.record_payment(loan.id, "1", "PAY-2")

    def test_closure_with_interest(self, engine):
        """A reducing-balance loan closes when its last installment is paid"""
        loan = open_loan(engine, principal="5000", rate="12", tenure=3)

        for installment in engine.get_schedule(loan.id):
            engine.record_payment(loan.id, installment.total_amount, f"PAY-{installment.sequence_number}")

        loan = engine.get_loan(loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.outstanding_principal == Decimal('0.00')
        schedule_interest = sum(i.interest_component for i in loan.installments)
        assert loan.interest_paid_to_date == schedule_interest

    def test_flat_loan_closes_with_every_row_settled(self, engine):
        """A flat loan whose principal runs out early leaves nothing pending"""
        loan = engine.request_loan(
            "EMP001", LoanType.LOAN, "0.33", "36", 12, date(2024, 1, 1),
            interest_method=InterestMethod.FLAT
        )
        engine.approve_loan(loan.id, "MGR001")

        for n in range(1, 12):
            engine.record_payment(loan.id, "0.04", f"PAY-{n}")

        loan = engine.get_loan(loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert all(i.status == InstallmentStatus.PAID for i in loan.installments)
        assert loan.interest_paid_to_date == Decimal('0.11')


class TestIdempotency:
    """Test payment reference replays"""

    def test_replay_does_not_change_balance(self, engine):
        """Replaying a reference returns the original payment"""
        loan = open_loan(engine)

        original = engine.record_payment(loan.id, "2000.00", "PAY-001")
        replay = engine.record_payment(loan.id, "2000.00", "PAY-001")

        assert replay.replayed is True
        assert original.replayed is False
        assert replay.id == original.id
        assert replay.installment_status == InstallmentStatus.PAID
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('8000.00')
        assert len(engine.get_payments(loan.id)) == 1

        payment_events = [
            e for e in engine.get_audit_events(loan.id)
            if e.event_type == AuditEventType.PAYMENT_RECORDED
        ]
        assert len(payment_events) == 1

    def test_replay_after_closure(self, engine):
        """A retry of the closing payment still returns its result"""
        loan = open_loan(engine, principal="1000", tenure=1)
        engine.record_payment(loan.id, "1000", "PAY-1")

        replay = engine.record_payment(loan.id, "1000", "PAY-1")

        assert replay.replayed is True
        assert replay.loan_status == LoanStatus.CLOSED

    def test_reference_reused_on_other_loan(self, engine):
        """References are unique across loans"""
        first = open_loan(engine)
        second = open_loan(engine, employee_id="EMP002")
        engine.record_payment(first.id, "2000.00", "PAY-001")

        with pytest.raises(DuplicatePaymentReference):
            engine.record_payment(second.id, "2000.00", "PAY-001")
        assert engine.get_loan(second.id).outstanding_principal == Decimal('10000.00')

    def test_reference_reused_with_other_amount(self, engine):
        """A reference cannot be replayed with a different amount"""
        loan = open_loan(engine)
        engine.record_payment(loan.id, "500.00", "PAY-001")

        with pytest.raises(DuplicatePaymentReference):
            engine.record_payment(loan.id, "600.00", "PAY-001")


class TestOverdue:
    """Test overdue derivation and the sweep"""

    def test_sweep_marks_past_due(self, engine, clock):
        """Installment due 2024-02-01 unpaid on 2024-03-01 becomes overdue"""
        loan = open_loan(engine)
        clock.today = date(2024, 3, 1)

        result = engine.sweep_overdue()
        schedule = engine.get_schedule(loan.id)

        assert result['loans_checked'] == 1
        assert result['installments_marked'] == 1
        assert schedule[0].status == InstallmentStatus.OVERDUE
        # Due today is not yet past due
        assert schedule[1].status == InstallmentStatus.PENDING

    def test_sweep_is_idempotent(self, engine, clock):
        """A second sweep on the same day changes nothing"""
        loan = open_loan(engine)
        clock.today = date(2024, 3, 1)
        engine.sweep_overdue()
        version = engine.get_loan(loan.id).version

        result = engine.sweep_overdue()

        assert result['installments_marked'] == 0
        assert result['loans_updated'] == 0
        assert engine.get_loan(loan.id).version == version

    def test_partial_payment_stays_overdue(self, engine, clock):
        """A 500 payment on an overdue 2000 installment keeps it overdue"""
        loan = open_loan(engine)
        clock.today = date(2024, 3, 1)
        engine.sweep_overdue()

        payment = engine.record_payment(loan.id, "500", "PAY-001")

        assert payment.sequence_number == 1
        assert payment.installment_status == InstallmentStatus.OVERDUE
        assert engine.get_schedule(loan.id)[0].paid_amount == Decimal('500.00')

    def test_payment_past_due_without_sweep(self, engine, clock):
        """Overdue status is derived at payment time even before a sweep"""
        loan = open_loan(engine)
        clock.today = date(2024, 2, 10)

        payment = engine.record_payment(loan.id, "100", "PAY-001")

        assert payment.installment_status == InstallmentStatus.OVERDUE

    def test_overdue_installment_paid_in_full(self, engine, clock):
        """Paying the rest of an overdue installment settles it"""
        loan = open_loan(engine)
        clock.today = date(2024, 3, 1)
        engine.sweep_overdue()
        engine.record_payment(loan.id, "500", "PAY-001")

        payment = engine.record_payment(loan.id, "1500", "PAY-002")

        assert payment.installment_status == InstallmentStatus.PAID

    def test_sweep_audits_each_installment(self, engine, clock):
        """Every installment marked overdue gets an audit event"""
        loan = open_loan(engine)
        clock.today = date(2024, 3, 2)

        result = engine.sweep_overdue()

        assert result['installments_marked'] == 2
        overdue_events = [
            e for e in engine.get_audit_events(loan.id)
            if e.event_type == AuditEventType.INSTALLMENT_OVERDUE
        ]
        assert len(overdue_events) == 2
        assert overdue_events[0].user_id == "system"

    def test_sweep_skips_closed_and_requested(self, engine, clock):
        """Only active loans are swept"""
        closed = open_loan(engine, principal="1000", tenure=1)
        engine.record_payment(closed.id, "1000", "PAY-1")
        engine.request_loan("EMP001", LoanType.LOAN, "1000", "0", 2, date(2024, 1, 1))
        clock.today = date(2025, 1, 1)

        result = engine.sweep_overdue()

        assert result['loans_checked'] == 0
        assert result['installments_marked'] == 0


class TestPayrollDeduction:
    """Test payroll-sourced payments"""

    def test_payroll_deduction_recorded(self, engine):
        """Payroll deductions carry the run id"""
        loan = open_loan(engine)

        payment = engine.record_payroll_deduction(loan.id, "RUN-2024-02-EMP001", "2000.00", "RUN-2024-02")

        assert payment.source == PaymentSource.PAYROLL
        assert payment.payroll_run_id == "RUN-2024-02"
        assert payment.recorded_by == "payroll:RUN-2024-02"
        assert engine.get_payments(loan.id)[0].source == PaymentSource.PAYROLL

    def test_payroll_refused_when_auto_deduct_disabled(self, engine):
        """Payroll cannot deduct from a loan with auto-deduction off"""
        loan = open_loan(engine)
        engine.configure_emi(loan.id, "HR001", auto_deduct_enabled=False)

        with pytest.raises(InvalidStateTransition):
            engine.record_payroll_deduction(loan.id, "RUN-1-EMP001", "2000.00", "RUN-1")

        # Manual payments are still accepted
        engine.record_payment(loan.id, "2000.00", "PAY-001", source=PaymentSource.MANUAL)


class TestConcurrency:
    """Test concurrent payments"""

    def test_concurrent_payments_serialize(self, engine):
        """Parallel payments all land exactly once"""
        loan = open_loan(engine)

        def pay(n):
            return engine.record_payment(loan.id, "200.00", f"PAY-{n}")

        with ThreadPoolExecutor(max_workers=10) as executor:
            payments = list(executor.map(pay, range(10)))

        loan = engine.get_loan(loan.id)
        assert len(payments) == 10
        assert loan.outstanding_principal == Decimal('8000.00')
        assert loan.installments[0].status == InstallmentStatus.PAID
        assert loan.installments[0].paid_amount == Decimal('2000.00')
        assert len(engine.get_payments(loan.id)) == 10

    def test_concurrent_replays_apply_once(self, engine):
        """The same reference submitted in parallel is applied once"""
        loan = open_loan(engine)
        barrier = threading.Barrier(5)

        def pay(_):
            barrier.wait()
            return engine.record_payment(loan.id, "500.00", "PAY-DUP")

        with ThreadPoolExecutor(max_workers=5) as executor:
            payments = list(executor.map(pay, range(5)))

        assert sum(1 for p in payments if not p.replayed) == 1
        assert engine.get_loan(loan.id).outstanding_principal == Decimal('9500.00')

    def test_reference_shared_across_loans_claimed_once(self, engine, monkeypatch):
        """One reference sent to two loans at once debits only one of them"""
        first = open_loan(engine)
        second = open_loan(engine, employee_id="EMP002")
        barrier = threading.Barrier(2)
        find_payment = engine.repository.find_payment

        def slow_find_payment(reference):
            found = find_payment(reference)
            time.sleep(0.1)
            return found

        monkeypatch.setattr(engine.repository, "find_payment", slow_find_payment)

        def pay(loan_id):
            barrier.wait()
            try:
                return engine.record_payment(loan_id, "200.00", "PAY-SHARED")
            except DuplicatePaymentReference as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(pay, [first.id, second.id]))

        payments = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, DuplicatePaymentReference)]
        assert len(payments) == 1
        assert len(errors) == 1

        winner = payments[0].loan_id
        loser = second.id if winner == first.id else first.id
        assert engine.get_loan(winner).outstanding_principal == Decimal('9800.00')
        assert engine.get_loan(loser).outstanding_principal == Decimal('10000.00')
        assert [p.payment_reference for p in engine.get_payments(winner)] == ["PAY-SHARED"]
        assert engine.get_payments(loser) == []

        replay = engine.record_payment(winner, "200.00", "PAY-SHARED")
        assert replay.replayed is True
