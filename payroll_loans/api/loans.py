"""
Loan endpoints
"""

from dataclasses import replace
from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_loan_engine
from .errors import to_http_exception
from .schemas import (
    CreateLoanRequest, LoanTermsModel, ApproveLoanRequest, RejectLoanRequest,
    RecordPaymentRequest, ConfigureEMIRequest, OverdueSweepRequest,
    LoanResponse, LoanListResponse, ScheduleResponse, PaymentResponse, AuditEventResponse
)
from ..engine import LoanEngine
from ..exceptions import LoanEngineError
from ..loans import LoanStatus, LoanType, PaymentSource, PreferredDeductionDay


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanResponse)
def request_loan(
    request: CreateLoanRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """File a loan or salary advance request"""
    try:
        emi_configuration = None
        if request.emi_configuration is not None:
            changes = request.emi_configuration.model_dump(exclude_none=True)
            emi_configuration = replace(engine.lifecycle.default_emi_configuration, **changes)

        loan = engine.request_loan(
            employee_id=request.employee_id,
            loan_type=request.loan_type,
            principal=request.principal,
            annual_rate_percent=request.annual_interest_rate_percent,
            tenure_months=request.tenure_months,
            start_date=request.start_date,
            reason=request.reason,
            requested_by=request.requested_by,
            interest_method=request.interest_method,
            emi_configuration=emi_configuration
        )
        return LoanResponse.from_loan(loan)

    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/preview", response_model=ScheduleResponse)
def preview_schedule(
    request: LoanTermsModel,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Preview the installment schedule for a set of terms"""
    try:
        schedule = engine.preview_schedule(
            loan_type=request.loan_type,
            principal=request.principal,
            annual_rate_percent=request.annual_interest_rate_percent,
            tenure_months=request.tenure_months,
            start_date=request.start_date,
            interest_method=request.interest_method
        )
        return ScheduleResponse.from_schedule(schedule)

    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)


@router.get("", response_model=LoanListResponse)
def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    loan_type: Optional[str] = None,
    employee_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=500),
    engine: LoanEngine = Depends(get_loan_engine)
):
    """List loans, newest first"""
    try:
        loans = engine.list_loans(
            status=LoanStatus(status_filter) if status_filter else None,
            loan_type=LoanType(loan_type) if loan_type else None,
            employee_id=employee_id
        )
    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)

    size = page_size or engine.page_size
    start = (page - 1) * size
    return LoanListResponse(
        loans=[LoanResponse.from_loan(loan) for loan in loans[start:start + size]],
        total=len(loans),
        page=page,
        page_size=size,
        pages=(len(loans) + size - 1) // size
    )


@router.post("/overdue-sweep")
def sweep_overdue(
    request: OverdueSweepRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Mark past-due installments as overdue"""
    try:
        as_of = date.fromisoformat(request.as_of) if request.as_of else None
        return engine.sweep_overdue(as_of=as_of, loan_id=request.loan_id)

    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/audit/integrity")
def verify_audit_integrity(engine: LoanEngine = Depends(get_loan_engine)):
    """Verify the audit hash chain"""
    result = engine.verify_audit_integrity()
    return {
        "valid": result['valid'],
        "total_events": result['total_events'],
        "hash_errors": len(result['hash_errors']),
        "chain_breaks": len(result['chain_breaks'])
    }


@router.get("/{loan_id}", response_model=LoanResponse)
def get_loan(
    loan_id: str,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Get loan details"""
    try:
        return LoanResponse.from_loan(engine.get_loan(loan_id))
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/approve", response_model=ScheduleResponse)
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Approve a requested loan; returns the generated schedule"""
    try:
        schedule = engine.approve_loan(loan_id, request.approver_id)
        return ScheduleResponse.from_schedule(schedule)
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/reject", response_model=LoanResponse)
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Reject a requested loan"""
    try:
        loan = engine.reject_loan(loan_id, request.approver_id, request.reason)
        return LoanResponse.from_loan(loan)
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.put("/{loan_id}/emi-configuration", response_model=LoanResponse)
def configure_emi(
    loan_id: str,
    request: ConfigureEMIRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Change auto-deduction settings"""
    try:
        preferred_day = None
        if request.preferred_deduction_day is not None:
            preferred_day = PreferredDeductionDay(request.preferred_deduction_day)
        loan = engine.configure_emi(
            loan_id,
            request.actor_id,
            auto_deduct_enabled=request.auto_deduct_enabled,
            preferred_deduction_day=preferred_day
        )
        return LoanResponse.from_loan(loan)
    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/schedule", response_model=ScheduleResponse)
def get_schedule(
    loan_id: str,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Get the installment schedule"""
    try:
        return ScheduleResponse.from_installments(engine.get_loan(loan_id))
    except LoanEngineError as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/payments", response_model=PaymentResponse)
def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Apply a payment to the oldest unsettled installment"""
    try:
        paid_on = date.fromisoformat(request.paid_on) if request.paid_on else None
        payment = engine.record_payment(
            loan_id=loan_id,
            amount=request.amount,
            payment_reference=request.payment_reference,
            source=PaymentSource(request.source),
            payroll_run_id=request.payroll_run_id,
            recorded_by=request.recorded_by,
            paid_on=paid_on
        )
        return PaymentResponse.from_payment(payment)
    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/payments")
def get_payments(
    loan_id: str,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Payment history, oldest first"""
    try:
        payments = engine.get_payments(loan_id)
    except LoanEngineError as e:
        raise to_http_exception(e)
    return {"payments": [PaymentResponse.from_payment(p) for p in payments]}


@router.get("/{loan_id}/audit")
def get_audit_events(
    loan_id: str,
    limit: Optional[int] = Query(None, ge=1),
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Audit events recorded for a loan"""
    try:
        engine.get_loan(loan_id)
    except LoanEngineError as e:
        raise to_http_exception(e)
    events = engine.get_audit_events(loan_id, limit=limit)
    return {"events": [AuditEventResponse.from_event(e) for e in events]}
