"""
Payroll integration endpoints

Payroll asks which deductions to take for a pay month, then reports each
deduction it made back as a payroll-sourced payment.
"""

from fastapi import APIRouter, Depends, Query

from .dependencies import get_loan_engine
from .errors import to_http_exception
from .schemas import DeductionResponse, PaymentResponse, PayrollDeductionRequest
from ..engine import LoanEngine
from ..exceptions import LoanEngineError


router = APIRouter()


@router.get("/deductions")
def get_payroll_deductions(
    year: int = Query(..., ge=1900, le=9999),
    month: int = Query(..., ge=1, le=12),
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Installments payroll should deduct in the given month"""
    instructions = engine.get_payroll_deductions(year, month)
    return {
        "year": year,
        "month": month,
        "deductions": [DeductionResponse.from_instruction(i) for i in instructions]
    }


@router.post("/deductions", response_model=PaymentResponse)
def record_payroll_deduction(
    request: PayrollDeductionRequest,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """Record a deduction taken by a payroll run"""
    try:
        payment = engine.record_payroll_deduction(
            loan_id=request.loan_id,
            payment_reference=request.payment_reference,
            amount=request.amount,
            payroll_run_id=request.payroll_run_id
        )
        return PaymentResponse.from_payment(payment)
    except (LoanEngineError, ValueError) as e:
        raise to_http_exception(e)
