"""
Loan Lifecycle Module

State machine for loan requests:

    requested -> approved -> active -> closed
    requested -> rejected

Approval and activation are one atomic transition that also persists the
generated schedule. Closing happens only through repayment.
"""

from datetime import date, datetime, timezone
from typing import Optional
import uuid

from .amortization import InterestMethod
from .audit import AuditEventType, LoanAuditor
from .currency import Amount
from .directory import EmployeeDirectory
from .exceptions import EmployeeNotFound
from .loans import (
    Loan, LoanTerms, LoanType, EMIConfiguration, PreferredDeductionDay
)
from .logging_config import get_logger, log_action
from .repository import LoanRepository
from .schedule import Schedule, ScheduleGenerator


logger = get_logger("payroll_loans.lifecycle")


class LoanLifecycle:
    """
    Governs legal transitions of a loan request
    """

    def __init__(
        self,
        repository: LoanRepository,
        auditor: LoanAuditor,
        schedule_generator: Optional[ScheduleGenerator] = None,
        employee_directory: Optional[EmployeeDirectory] = None,
        default_emi_configuration: Optional[EMIConfiguration] = None
    ):
        self.repository = repository
        self.auditor = auditor
        self.schedule_generator = schedule_generator or ScheduleGenerator()
        self.employee_directory = employee_directory
        self.default_emi_configuration = default_emi_configuration or EMIConfiguration()

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
        """
        Create a loan request

        Args:
            employee_id: Borrowing employee
            loan_type: loan or advance
            principal: Amount requested
            annual_rate_percent: Yearly interest rate in percent (12 for 12%)
            tenure_months: Number of monthly installments
            start_date: Installment i falls due i months after this date
            reason: Free text justification
            requested_by: Actor filing the request (defaults to the employee)
            interest_method: Reducing balance or flat
            emi_configuration: Auto-deduction settings

        Returns:
            Loan in REQUESTED status with the installment amount pre-computed

        Raises:
            InvalidLoanTerms: terms rejected before anything is stored
            EmployeeNotFound: employee unknown to the directory
        """
        terms = LoanTerms(
            loan_type=loan_type,
            principal=principal,
            annual_interest_rate_percent=annual_rate_percent,
            tenure_months=tenure_months,
            start_date=start_date,
            interest_method=interest_method
        )

        if not employee_id:
            raise EmployeeNotFound("Employee id is required")
        if self.employee_directory is not None and not self.employee_directory.employee_exists(employee_id):
            raise EmployeeNotFound(f"Employee {employee_id} not found")

        now = datetime.now(timezone.utc)
        actor_id = requested_by or employee_id
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            terms=terms,
            emi_configuration=emi_configuration or self.default_emi_configuration,
            reason=reason,
            requested_by=actor_id,
            requested_at=now
        )
        self.repository.add(loan)

        log_action(
            logger, "info", f"Loan requested: {terms.loan_type.value}",
            action="request_loan", user_id=actor_id, loan_id=loan.id,
            employee_id=employee_id, amount=terms.principal,
            details={
                "tenure_months": terms.tenure_months,
                "installment_amount": str(loan.installment_amount)
            }
        )
        self.auditor.record(
            AuditEventType.LOAN_REQUESTED,
            loan.id,
            actor_id,
            amount=terms.principal,
            employee_id=employee_id,
            loan_type=terms.loan_type.value,
            tenure_months=terms.tenure_months,
            annual_rate_percent=terms.annual_interest_rate_percent,
            installment_amount=loan.installment_amount
        )
        return loan

    def approve_loan(self, loan_id: str, approver_id: str) -> Schedule:
        """
        Approve a requested loan and activate it with its schedule

        Returns:
            The generated Schedule

        Raises:
            InvalidStateTransition: loan is not in REQUESTED status
        """
        def approve(loan: Loan) -> Schedule:
            now = datetime.now(timezone.utc)
            loan.approve(approver_id, now)
            schedule = self.schedule_generator.generate(loan.id, loan.terms, now)
            loan.activate(schedule.installments, now)
            return schedule

        schedule = self.repository.run_in_transaction(loan_id, approve)

        adjustment = schedule.final_installment_adjustment
        if adjustment:
            logger.info(f"Loan {loan_id} final installment differs from EMI by {adjustment}")
        logger.info(f"Loan {loan_id} approved by {approver_id} and activated")

        self.auditor.record(AuditEventType.LOAN_APPROVED, loan_id, approver_id)
        self.auditor.record(
            AuditEventType.LOAN_ACTIVATED,
            loan_id,
            approver_id,
            amount=schedule.total_principal,
            installments=len(schedule.installments),
            installment_amount=schedule.installment_amount,
            final_installment_adjustment=adjustment
        )
        return schedule

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        """
        Reject a requested loan

        Raises:
            InvalidStateTransition: loan is not in REQUESTED status
        """
        def reject(loan: Loan) -> Loan:
            loan.reject(approver_id, reason)
            return loan

        loan = self.repository.run_in_transaction(loan_id, reject)

        logger.info(f"Loan {loan_id} rejected by {approver_id}")
        self.auditor.record(AuditEventType.LOAN_REJECTED, loan_id, approver_id, reason=reason)
        return loan

    def configure_emi(
        self,
        loan_id: str,
        actor_id: str,
        auto_deduct_enabled: Optional[bool] = None,
        preferred_deduction_day: Optional[PreferredDeductionDay] = None
    ) -> Loan:
        """
        Update auto-deduction settings of a requested or active loan

        Raises:
            LoanClosed: loan already repaid
            InvalidStateTransition: loan was rejected
        """
        def configure(loan: Loan) -> Loan:
            loan.configure_emi(auto_deduct_enabled, preferred_deduction_day)
            return loan

        loan = self.repository.run_in_transaction(loan_id, configure)

        self.auditor.record(
            AuditEventType.EMI_CONFIGURED,
            loan_id,
            actor_id,
            **loan.emi_configuration.to_dict()
        )
        return loan
