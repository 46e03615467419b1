"""
Pydantic schemas for API requests and responses

Amounts travel as decimal strings so no value ever passes through a float.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..audit import AuditEvent
from ..engine import OutstandingSummary
from ..loans import EMIConfiguration, Installment, Loan, LoanPayment
from ..payments import DeductionInstruction
from ..schedule import Schedule


def _amount(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# Request schemas
class EMIConfigurationModel(BaseModel):
    auto_deduct_enabled: Optional[bool] = None
    preferred_deduction_day: Optional[str] = Field(
        None, description="due_date, month_start or month_end"
    )


class LoanTermsModel(BaseModel):
    loan_type: str = Field("loan", description="loan or advance")
    principal: str = Field(..., description="Decimal amount as string")
    annual_interest_rate_percent: str = Field("0", description="Yearly rate in percent, 12 for 12%")
    tenure_months: int
    start_date: str  # ISO date string
    interest_method: str = Field("reducing_balance", description="reducing_balance or flat")


class CreateLoanRequest(LoanTermsModel):
    employee_id: str
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    emi_configuration: Optional[EMIConfigurationModel] = None


class ApproveLoanRequest(BaseModel):
    approver_id: str


class RejectLoanRequest(BaseModel):
    approver_id: str
    reason: str


class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_reference: str
    source: str = Field("manual", description="manual or payroll")
    payroll_run_id: Optional[str] = None
    recorded_by: Optional[str] = None
    paid_on: Optional[str] = None  # ISO date string


class PayrollDeductionRequest(BaseModel):
    loan_id: str
    payment_reference: str
    amount: str = Field(..., description="Decimal amount as string")
    payroll_run_id: str


class ConfigureEMIRequest(EMIConfigurationModel):
    actor_id: str


class OverdueSweepRequest(BaseModel):
    as_of: Optional[str] = None  # ISO date string, defaults to today
    loan_id: Optional[str] = None


# Response schemas
class EMIConfigurationResponse(BaseModel):
    auto_deduct_enabled: bool
    preferred_deduction_day: str

    @classmethod
    def from_configuration(cls, configuration: EMIConfiguration) -> 'EMIConfigurationResponse':
        return cls(**configuration.to_dict())


class InstallmentResponse(BaseModel):
    id: str
    sequence_number: int
    due_date: str
    principal_component: str
    interest_component: str
    total_amount: str
    paid_amount: str
    remaining_amount: str
    paid_date: Optional[str] = None
    status: str

    @classmethod
    def from_installment(cls, installment: Installment) -> 'InstallmentResponse':
        return cls(
            id=installment.id,
            sequence_number=installment.sequence_number,
            due_date=installment.due_date.isoformat(),
            principal_component=str(installment.principal_component),
            interest_component=str(installment.interest_component),
            total_amount=str(installment.total_amount),
            paid_amount=str(installment.paid_amount),
            remaining_amount=str(installment.remaining_amount),
            paid_date=_iso(installment.paid_date),
            status=installment.status.value
        )


class LoanResponse(BaseModel):
    id: str
    employee_id: str
    loan_type: str
    status: str
    principal: str
    annual_interest_rate_percent: str
    tenure_months: int
    interest_method: str
    start_date: str
    end_date: Optional[str] = None
    installment_amount: str
    outstanding_principal: str
    paid_to_date: str
    interest_paid_to_date: str
    total_paid: str
    next_due_date: Optional[str] = None
    next_deduction_date: Optional[str] = None
    emi_configuration: EMIConfigurationResponse
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    requested_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    closed_at: Optional[str] = None

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanResponse':
        return cls(
            id=loan.id,
            employee_id=loan.employee_id,
            loan_type=loan.loan_type.value,
            status=loan.status.value,
            principal=str(loan.principal),
            annual_interest_rate_percent=str(loan.terms.annual_interest_rate_percent),
            tenure_months=loan.terms.tenure_months,
            interest_method=loan.terms.interest_method.value,
            start_date=loan.terms.start_date.isoformat(),
            end_date=_iso(loan.end_date),
            installment_amount=str(loan.installment_amount),
            outstanding_principal=str(loan.outstanding_principal),
            paid_to_date=str(loan.paid_to_date),
            interest_paid_to_date=str(loan.interest_paid_to_date),
            total_paid=str(loan.total_paid),
            next_due_date=_iso(loan.next_due_date),
            next_deduction_date=_iso(loan.next_deduction_date),
            emi_configuration=EMIConfigurationResponse.from_configuration(loan.emi_configuration),
            reason=loan.reason,
            requested_by=loan.requested_by,
            requested_at=_iso(loan.requested_at),
            approved_by=loan.approved_by,
            approved_at=_iso(loan.approved_at),
            rejected_by=loan.rejected_by,
            rejection_reason=loan.rejection_reason,
            closed_at=_iso(loan.closed_at)
        )


class LoanListResponse(BaseModel):
    loans: List[LoanResponse]
    total: int
    page: int
    page_size: int
    pages: int


class ScheduleResponse(BaseModel):
    loan_id: str
    installment_amount: Optional[str] = None
    final_installment_adjustment: Optional[str] = None
    total_principal: str
    total_interest: str
    total_payable: str
    installments: List[InstallmentResponse]

    @classmethod
    def from_schedule(cls, schedule: Schedule) -> 'ScheduleResponse':
        return cls(
            loan_id=schedule.loan_id,
            installment_amount=str(schedule.installment_amount),
            final_installment_adjustment=str(schedule.final_installment_adjustment),
            total_principal=str(schedule.total_principal),
            total_interest=str(schedule.total_interest),
            total_payable=str(schedule.total_payable),
            installments=[InstallmentResponse.from_installment(i) for i in schedule.installments]
        )

    @classmethod
    def from_installments(cls, loan: Loan) -> 'ScheduleResponse':
        schedule = Schedule(loan.id, loan.installment_amount, loan.installments)
        response = cls.from_schedule(schedule)
        if not loan.installments:
            response.final_installment_adjustment = None
        return response


class PaymentResponse(BaseModel):
    id: str
    loan_id: str
    payment_reference: str
    installment_id: str
    sequence_number: int
    amount: str
    principal_amount: str
    interest_amount: str
    source: str
    paid_on: str
    installment_status: str
    outstanding_principal: str
    loan_status: str
    payroll_run_id: Optional[str] = None
    recorded_by: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_payment(cls, payment: LoanPayment) -> 'PaymentResponse':
        data = payment.to_dict()
        data.pop('created_at')
        data.pop('updated_at')
        return cls(replayed=payment.replayed, **data)


class OutstandingSummaryResponse(BaseModel):
    employee_id: str
    as_of: str
    total_outstanding: str
    loans_outstanding: str
    advances_outstanding: str
    overdue_amount: str
    overdue_count: int
    pending_count: int
    active_loans: int

    @classmethod
    def from_summary(cls, summary: OutstandingSummary) -> 'OutstandingSummaryResponse':
        return cls(
            employee_id=summary.employee_id,
            as_of=summary.as_of.isoformat(),
            total_outstanding=str(summary.total_outstanding),
            loans_outstanding=str(summary.loans_outstanding),
            advances_outstanding=str(summary.advances_outstanding),
            overdue_amount=str(summary.overdue_amount),
            overdue_count=summary.overdue_count,
            pending_count=summary.pending_count,
            active_loans=summary.active_loans
        )


class DeductionResponse(BaseModel):
    loan_id: str
    employee_id: str
    loan_type: str
    installment_id: str
    sequence_number: int
    due_date: str
    deduction_date: str
    amount: str

    @classmethod
    def from_instruction(cls, instruction: DeductionInstruction) -> 'DeductionResponse':
        return cls(
            loan_id=instruction.loan_id,
            employee_id=instruction.employee_id,
            loan_type=instruction.loan_type.value,
            installment_id=instruction.installment_id,
            sequence_number=instruction.sequence_number,
            due_date=instruction.due_date.isoformat(),
            deduction_date=instruction.deduction_date.isoformat(),
            amount=str(instruction.amount)
        )


class AuditEventResponse(BaseModel):
    id: str
    created_at: str
    event_type: str
    entity_id: str
    user_id: Optional[str] = None
    amount: Optional[str] = None
    metadata: Dict[str, Any]
    current_hash: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> 'AuditEventResponse':
        return cls(
            id=event.id,
            created_at=event.created_at.isoformat(),
            event_type=event.event_type.value,
            entity_id=event.entity_id,
            user_id=event.user_id,
            amount=_amount(event.amount),
            metadata=event.metadata,
            current_hash=event.current_hash
        )
