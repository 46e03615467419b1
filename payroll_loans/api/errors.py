"""
Mapping of loan engine errors to HTTP responses
"""

import logging

from fastapi import HTTPException

from ..exceptions import (
    InvalidLoanTerms, InvalidPaymentAmount, MissingPaymentReference,
    InvalidStateTransition, NoOutstandingInstallment, DuplicatePaymentReference,
    AmountExceedsRemaining, LoanNotFound, EmployeeNotFound,
    ConcurrencyConflict, StorageError
)


logger = logging.getLogger("payroll_loans.api")

_STATUS_BY_ERROR = (
    ((InvalidLoanTerms, InvalidPaymentAmount, MissingPaymentReference), 400),
    ((LoanNotFound, EmployeeNotFound), 404),
    ((InvalidStateTransition, NoOutstandingInstallment, DuplicatePaymentReference), 409),
    ((AmountExceedsRemaining,), 422),
    ((ConcurrencyConflict, StorageError), 503),
)


def to_http_exception(error: Exception) -> HTTPException:
    """HTTPException for an engine error or a rejected input value"""
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_types):
            break
    else:
        status_code = 400

    if status_code == 503:
        logger.error(f"Loan engine unavailable: {error}")
        return HTTPException(status_code=status_code, detail="Loan engine temporarily unavailable")

    detail = str(error)
    if isinstance(error, AmountExceedsRemaining) and error.remaining is not None:
        detail = {"message": detail, "remaining": str(error.remaining)}
    return HTTPException(status_code=status_code, detail=detail)
