"""
Loan Engine Facade

Wires storage, repository, audit trail, lifecycle and payment processing
into the single object collaborators (payroll, HR, the HTTP API) talk to.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging

from .amortization import InterestMethod
from .audit import AuditEvent, AuditEventType, AuditTrail, LoanAuditor
from .config import LoanEngineConfig, get_config
from .currency import Amount, ZERO
from .directory import EmployeeDirectory
from .lifecycle import LoanLifecycle
from .loans import (
    EMIConfiguration, Installment, InstallmentStatus, Loan, LoanPayment,
    LoanStatus, LoanTerms, LoanType, PaymentSource, PreferredDeductionDay
)
from .payments import DeductionInstruction, PaymentProcessor
from .repository import LoanRepository
from .schedule import Schedule, ScheduleGenerator
from .storage import InMemoryStorage, StorageInterface, create_storage


logger = logging.getLogger("payroll_loans.engine")


@dataclass
class OutstandingSummary:
    """What an employee still owes across active loans and advances"""
    employee_id: str
    as_of: date
    total_outstanding: Decimal
    loans_outstanding: Decimal
    advances_outstanding: Decimal
    overdue_amount: Decimal
    overdue_count: int
    pending_count: int
    active_loans: int


class LoanEngine:
    """
    Payroll loan engine with all components initialized
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        employee_directory: Optional[EmployeeDirectory] = None,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.0,
        enable_audit: bool = True,
        default_emi_configuration: Optional[EMIConfiguration] = None,
        clock: Callable[[], date] = date.today,
        page_size: int = 50
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock
        self.page_size = page_size

        self.audit_trail = AuditTrail(self.storage)
        self.auditor = LoanAuditor(self.audit_trail, enabled=enable_audit)
        self.repository = LoanRepository(
            self.storage,
            max_retries=max_retries,
            retry_backoff_seconds=retry_backoff_seconds
        )
        self.schedule_generator = ScheduleGenerator()
        self.lifecycle = LoanLifecycle(
            self.repository,
            self.auditor,
            schedule_generator=self.schedule_generator,
            employee_directory=employee_directory,
            default_emi_configuration=default_emi_configuration
        )
        self.payment_processor = PaymentProcessor(self.repository, self.auditor, clock=clock)

    @classmethod
    def from_config(
        cls,
        config: Optional[LoanEngineConfig] = None,
        storage: Optional[StorageInterface] = None,
        employee_directory: Optional[EmployeeDirectory] = None,
        clock: Callable[[], date] = date.today
    ) -> 'LoanEngine':
        """Build an engine from LoanEngineConfig settings"""
        config = config or get_config()
        if config.require_known_employee and employee_directory is None:
            raise ValueError("require_known_employee is set but no employee directory was supplied")

        if storage is None:
            storage = create_storage(
                config.storage_backend,
                config.sqlite_path,
                timeout=config.sqlite_timeout_seconds
            )
        logger.info(f"Loan engine starting with {config.storage_backend} storage")

        return cls(
            storage=storage,
            employee_directory=employee_directory,
            max_retries=config.max_transaction_retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
            enable_audit=config.enable_audit_logging,
            default_emi_configuration=EMIConfiguration(
                auto_deduct_enabled=config.default_auto_deduct,
                preferred_deduction_day=PreferredDeductionDay(config.default_preferred_deduction_day)
            ),
            clock=clock,
            page_size=config.api_page_size
        )

    def close(self) -> None:
        self.storage.close()

    # Lifecycle

    def request_loan(
        self,
        employee_id: str,
        loan_type: LoanType,
        principal: Amount,
        annual_rate_percent: Amount,
        tenure_months: int,
        start_date: date,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE,
        emi_configuration: Optional[EMIConfiguration] = None
    ) -> Loan:
        return self.lifecycle.request_loan(
            employee_id, loan_type, principal, annual_rate_percent, tenure_months,
            start_date, reason=reason, requested_by=requested_by,
            interest_method=interest_method, emi_configuration=emi_configuration
        )

    def approve_loan(self, loan_id: str, approver_id: str) -> Schedule:
        return self.lifecycle.approve_loan(loan_id, approver_id)

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        return self.lifecycle.reject_loan(loan_id, approver_id, reason)

    def configure_emi(
        self,
        loan_id: str,
        actor_id: str,
        auto_deduct_enabled: Optional[bool] = None,
        preferred_deduction_day: Optional[PreferredDeductionDay] = None
    ) -> Loan:
        return self.lifecycle.configure_emi(
            loan_id, actor_id,
            auto_deduct_enabled=auto_deduct_enabled,
            preferred_deduction_day=preferred_deduction_day
        )

    def preview_schedule(
        self,
        loan_type: LoanType,
        principal: Amount,
        annual_rate_percent: Amount,
        tenure_months: int,
        start_date: date,
        interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE
    ) -> Schedule:
        """Schedule the given terms would produce, without storing anything"""
        terms = LoanTerms(
            loan_type=loan_type,
            principal=principal,
            annual_interest_rate_percent=annual_rate_percent,
            tenure_months=tenure_months,
            start_date=start_date,
            interest_method=interest_method
        )
        return self.schedule_generator.generate("preview", terms)

    # Payments

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
        return self.payment_processor.record_payment(
            loan_id, amount, payment_reference, source=source,
            payroll_run_id=payroll_run_id, recorded_by=recorded_by, paid_on=paid_on
        )

    def record_payroll_deduction(
        self,
        loan_id: str,
        payment_reference: str,
        amount: Amount,
        payroll_run_id: str
    ) -> LoanPayment:
        return self.payment_processor.record_payroll_deduction(
            loan_id, payment_reference, amount, payroll_run_id
        )

    def sweep_overdue(self, as_of: Optional[date] = None, loan_id: Optional[str] = None) -> Dict[str, int]:
        return self.payment_processor.sweep_overdue(as_of=as_of, loan_id=loan_id)

    def get_payroll_deductions(self, year: int, month: int) -> List[DeductionInstruction]:
        return self.payment_processor.get_payroll_deductions(year, month)

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.get(loan_id)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installments ordered by sequence number (empty until approval)"""
        return self.repository.get(loan_id).installments

    def get_payments(self, loan_id: str) -> List[LoanPayment]:
        self.repository.get(loan_id)
        return self.repository.get_payments(loan_id)

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        employee_id: Optional[str] = None
    ) -> List[Loan]:
        return self.repository.find_loans(employee_id=employee_id, status=status, loan_type=loan_type)

    def get_employee_loans(self, employee_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.repository.find_loans(employee_id=employee_id, status=status)

    def get_outstanding_summary(self, employee_id: str, as_of: Optional[date] = None) -> OutstandingSummary:
        """
        Outstanding balance and installment counts across an employee's active loans

        Overdue is evaluated as of the given day even if the sweep has not
        run yet; nothing is written.
        """
        today = as_of or self.clock()
        loans_outstanding = ZERO
        advances_outstanding = ZERO
        overdue_amount = ZERO
        overdue_count = 0
        pending_count = 0

        active = self.repository.find_loans(employee_id=employee_id, status=LoanStatus.ACTIVE)
        for loan in active:
            if loan.loan_type == LoanType.ADVANCE:
                advances_outstanding += loan.outstanding_principal
            else:
                loans_outstanding += loan.outstanding_principal

            for installment in loan.installments:
                if installment.status == InstallmentStatus.OVERDUE or installment.is_overdue_on(today):
                    overdue_count += 1
                    overdue_amount += installment.remaining_amount
                elif installment.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL):
                    pending_count += 1

        return OutstandingSummary(
            employee_id=employee_id,
            as_of=today,
            total_outstanding=loans_outstanding + advances_outstanding,
            loans_outstanding=loans_outstanding,
            advances_outstanding=advances_outstanding,
            overdue_amount=overdue_amount,
            overdue_count=overdue_count,
            pending_count=pending_count,
            active_loans=len(active)
        )

    # Audit

    def get_audit_events(self, loan_id: str, limit: Optional[int] = None) -> List[AuditEvent]:
        return self.audit_trail.get_events_for_entity("loan", loan_id, limit=limit)

    def verify_audit_integrity(self, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Verify the audit hash chain and record that the check ran"""
        result = self.audit_trail.verify_integrity()
        if not result['valid']:
            logger.error(
                f"Audit chain verification failed: {len(result['hash_errors'])} hash errors, "
                f"{len(result['chain_breaks'])} chain breaks"
            )
        if self.auditor.enabled:
            try:
                self.audit_trail.log_event(
                    AuditEventType.AUDIT_INTEGRITY_CHECK,
                    entity_type="audit_trail",
                    entity_id="audit_events",
                    metadata={'valid': result['valid'], 'total_events': result['total_events']},
                    user_id=actor_id
                )
            except Exception as e:
                logger.error(f"Failed to record audit integrity check: {e}")
        return result
