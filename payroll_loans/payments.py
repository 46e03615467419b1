"""
Payment Processing Module

Applies repayments (manual entries and payroll auto-deductions) to the
oldest unsettled installment of a loan, keeps the loan balance in step,
runs the overdue sweep and tells payroll what to deduct each cycle.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional
import uuid

from .audit import AuditEventType, LoanAuditor
from .currency import Amount, to_decimal, has_currency_precision, round_currency, ZERO
from .dates import month_end
from .exceptions import (
    InvalidPaymentAmount, InvalidStateTransition, MissingPaymentReference,
    DuplicatePaymentReference, ConcurrencyConflict, StorageError
)
from .loans import Loan, LoanPayment, LoanStatus, LoanType, PaymentSource
from .logging_config import get_logger, log_action
from .repository import LoanRepository


logger = get_logger("payroll_loans.payments")

SYSTEM_ACTOR = "system"


@dataclass
class DeductionInstruction:
    """What payroll should deduct for one loan in one pay cycle"""
    loan_id: str
    employee_id: str
    loan_type: LoanType
    installment_id: str
    sequence_number: int
    due_date: date
    deduction_date: date
    amount: Decimal


class PaymentProcessor:
    """
    Applies payments to loan aggregates

    A single call settles at most one installment. Payments against the
    same installment accumulate until it is paid; the loan closes when its
    outstanding principal reaches zero.
    """

    def __init__(
        self,
        repository: LoanRepository,
        auditor: LoanAuditor,
        clock: Callable[[], date] = date.today
    ):
        self.repository = repository
        self.auditor = auditor
        self.clock = clock

    @staticmethod
    def _validate_amount(amount: Amount) -> Decimal:
        try:
            value = to_decimal(amount)
        except ValueError:
            raise InvalidPaymentAmount(f"Payment amount must be a decimal, got {amount!r}")
        if value <= ZERO:
            raise InvalidPaymentAmount(f"Payment amount must be positive, got {value}")
        if not has_currency_precision(value):
            raise InvalidPaymentAmount(f"Payment amount {value} has more than two decimal places")
        return round_currency(value)

    @staticmethod
    def _replay(existing: LoanPayment, loan_id: str, amount: Decimal) -> LoanPayment:
        if existing.loan_id != loan_id:
            raise DuplicatePaymentReference(
                f"Payment reference {existing.payment_reference} already used for loan {existing.loan_id}"
            )
        if existing.amount != amount:
            raise DuplicatePaymentReference(
                f"Payment reference {existing.payment_reference} already recorded "
                f"with amount {existing.amount}"
            )
        return replace(existing, replayed=True)

    def record_payment(
        self,
        loan_id: str,
        amount: Amount,
        payment_reference: str,
        source: PaymentSource = PaymentSource.MANUAL,
        payroll_run_id: Optional[str] = None,
        recorded_by: Optional[str] = None,
        paid_on: Optional[date] = None
    ) -> LoanPayment:
        """
        Apply a payment to the loan's oldest unsettled installment

        Args:
            loan_id: Loan being repaid
            amount: Payment amount, at most the target installment's remaining balance
            payment_reference: Unique external reference; replays are no-ops
            source: manual entry or payroll deduction
            payroll_run_id: Payroll run that produced the deduction
            recorded_by: Actor recording the payment
            paid_on: Payment date (defaults to today)

        Returns:
            LoanPayment with the settled installment and its new status.
            A replayed reference returns the original payment with replayed=True.

        Raises:
            InvalidPaymentAmount: amount not positive or finer than a cent
            LoanClosed: loan already fully repaid
            InvalidStateTransition: loan not active, or payroll deduction on a
                loan with auto-deduction disabled
            NoOutstandingInstallment: nothing left to settle
            AmountExceedsRemaining: amount larger than the installment balance
            DuplicatePaymentReference: reference reused for a different payment
        """
        value = self._validate_amount(amount)
        if not payment_reference:
            raise MissingPaymentReference("Payment reference is required")
        source = PaymentSource(source)
        today = self.clock()
        paid_on = paid_on or today

        def apply(loan: Loan) -> LoanPayment:
            existing = self.repository.find_payment(payment_reference)
            if existing is not None:
                return self._replay(existing, loan.id, value)

            if source == PaymentSource.PAYROLL and loan.status == LoanStatus.ACTIVE \
                    and not loan.auto_deduct_enabled:
                raise InvalidStateTransition(f"Auto-deduction is disabled for loan {loan.id}")

            now = datetime.now(timezone.utc)
            installment, principal_part, interest_part = loan.apply_payment(value, paid_on, today, now)

            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                payment_reference=payment_reference,
                installment_id=installment.id,
                sequence_number=installment.sequence_number,
                amount=value,
                principal_amount=principal_part,
                interest_amount=interest_part,
                source=source,
                paid_on=paid_on,
                installment_status=installment.status,
                outstanding_principal=loan.outstanding_principal,
                loan_status=loan.status,
                payroll_run_id=payroll_run_id,
                recorded_by=recorded_by
            )
            self.repository.save_payment(payment)
            return payment

        with self.repository.reference_locked(payment_reference):
            payment = self.repository.run_in_transaction(loan_id, apply)

        if payment.replayed:
            logger.info(f"Payment {payment_reference} on loan {loan_id} already recorded, ignoring replay")
            return payment

        log_action(
            logger, "info", f"Payment recorded: {source.value}",
            action="record_payment", user_id=recorded_by, loan_id=loan_id,
            payment_reference=payment_reference, payroll_run_id=payroll_run_id,
            amount=payment.amount,
            details={
                "sequence_number": payment.sequence_number,
                "installment_status": payment.installment_status.value,
                "outstanding_principal": str(payment.outstanding_principal)
            }
        )
        self.auditor.record(
            AuditEventType.PAYMENT_RECORDED,
            loan_id,
            recorded_by,
            amount=payment.amount,
            payment_reference=payment_reference,
            source=source.value,
            payroll_run_id=payroll_run_id,
            installment_id=payment.installment_id,
            installment_status=payment.installment_status.value,
            principal_amount=payment.principal_amount,
            interest_amount=payment.interest_amount,
            outstanding_principal=payment.outstanding_principal
        )
        if payment.loan_status == LoanStatus.CLOSED:
            logger.info(f"Loan {loan_id} fully repaid and closed")
            self.auditor.record(AuditEventType.LOAN_CLOSED, loan_id, recorded_by)

        return payment

    def record_payroll_deduction(
        self,
        loan_id: str,
        payment_reference: str,
        amount: Amount,
        payroll_run_id: str
    ) -> LoanPayment:
        """Entry point for the payroll cycle trigger"""
        return self.record_payment(
            loan_id=loan_id,
            amount=amount,
            payment_reference=payment_reference,
            source=PaymentSource.PAYROLL,
            payroll_run_id=payroll_run_id,
            recorded_by=f"payroll:{payroll_run_id}"
        )

    def sweep_overdue(self, as_of: Optional[date] = None, loan_id: Optional[str] = None) -> Dict[str, int]:
        """
        Mark past-due pending/partial installments as overdue

        Idempotent: a second sweep on the same day changes nothing.

        Returns:
            Counts of loans checked, loans updated, installments marked, failures
        """
        today = as_of or self.clock()
        results = {"loans_checked": 0, "loans_updated": 0, "installments_marked": 0, "failures": 0}

        if loan_id:
            loan_ids = [loan_id]
        else:
            loan_ids = [loan.id for loan in self.repository.find_loans(status=LoanStatus.ACTIVE)]

        for current_id in loan_ids:
            results["loans_checked"] += 1
            try:
                marked = self.repository.run_in_transaction(
                    current_id, lambda loan: loan.sweep_overdue(today)
                )
            except (ConcurrencyConflict, StorageError) as e:
                # Log and continue with the other loans; the next sweep picks it up
                logger.error(f"Overdue sweep failed for loan {current_id}: {e}", extra={"loan_id": current_id})
                results["failures"] += 1
                continue

            if not marked:
                continue
            results["loans_updated"] += 1
            results["installments_marked"] += len(marked)
            for installment in marked:
                self.auditor.record(
                    AuditEventType.INSTALLMENT_OVERDUE,
                    current_id,
                    SYSTEM_ACTOR,
                    amount=installment.remaining_amount,
                    installment_id=installment.id,
                    sequence_number=installment.sequence_number,
                    due_date=installment.due_date
                )

        if results["installments_marked"]:
            logger.info(
                f"Overdue sweep as of {today.isoformat()} marked "
                f"{results['installments_marked']} installments on {results['loans_updated']} loans"
            )
        return results

    def get_payroll_deductions(self, year: int, month: int) -> List[DeductionInstruction]:
        """
        Deductions payroll should take in the given pay month

        For every active loan with auto-deduction enabled, the installment
        payment would be applied to (the oldest unsettled one) if it falls due
        on or before the end of the month, for its remaining balance.
        """
        period_end = month_end(date(year, month, 1))
        instructions = []

        for loan in self.repository.find_loans(status=LoanStatus.ACTIVE):
            if not loan.auto_deduct_enabled:
                continue
            target = loan.target_installment()
            if target is None or target.due_date > period_end:
                continue
            instructions.append(DeductionInstruction(
                loan_id=loan.id,
                employee_id=loan.employee_id,
                loan_type=loan.loan_type,
                installment_id=target.id,
                sequence_number=target.sequence_number,
                due_date=target.due_date,
                deduction_date=loan.emi_configuration.deduction_date_for(target.due_date),
                amount=target.remaining_amount
            ))

        instructions.sort(key=lambda i: (i.employee_id, i.due_date, i.loan_id))
        return instructions
