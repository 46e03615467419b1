"""
Employee loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import get_loan_engine
from .errors import to_http_exception
from .schemas import LoanResponse, OutstandingSummaryResponse
from ..engine import LoanEngine
from ..loans import LoanStatus


router = APIRouter()


@router.get("/{employee_id}/loans")
def get_employee_loans(
    employee_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    engine: LoanEngine = Depends(get_loan_engine)
):
    """All loans and advances of an employee, newest first"""
    try:
        loan_status = LoanStatus(status_filter) if status_filter else None
    except ValueError as e:
        raise to_http_exception(e)

    loans = engine.get_employee_loans(employee_id, status=loan_status)
    return {
        "employee_id": employee_id,
        "loans": [LoanResponse.from_loan(loan) for loan in loans]
    }


@router.get("/{employee_id}/outstanding-summary", response_model=OutstandingSummaryResponse)
def get_outstanding_summary(
    employee_id: str,
    as_of: Optional[str] = None,
    engine: LoanEngine = Depends(get_loan_engine)
):
    """What the employee still owes, with overdue and pending installment counts"""
    try:
        as_of_date = date.fromisoformat(as_of) if as_of else None
    except ValueError as e:
        raise to_http_exception(e)

    summary = engine.get_outstanding_summary(employee_id, as_of=as_of_date)
    return OutstandingSummaryResponse.from_summary(summary)
