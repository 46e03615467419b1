"""
Loan Engine Errors

Client errors (bad terms, illegal transitions, bad amounts) are raised to the
caller and never retried. ConcurrencyConflict is transient and retried by the
repository. StorageError wraps backend failures.
"""


class LoanEngineError(Exception):
    """Base class for all loan engine errors"""


class InvalidLoanTerms(LoanEngineError, ValueError):
    """Principal, rate or tenure rejected before any computation"""


class InvalidStateTransition(LoanEngineError):
    """Operation not legal in the loan's current status"""


class LoanClosed(InvalidStateTransition):
    """Mutation attempted on a closed loan"""


class NoOutstandingInstallment(LoanEngineError):
    """Payment submitted against a loan with nothing left to settle"""


class AmountExceedsRemaining(LoanEngineError):
    """Payment larger than the targeted installment's remaining balance"""

    def __init__(self, message: str, remaining=None):
        super().__init__(message)
        self.remaining = remaining


class InvalidPaymentAmount(LoanEngineError, ValueError):
    """Payment amount is not a positive amount in currency precision"""


class MissingPaymentReference(LoanEngineError, ValueError):
    """Payment submitted without an external reference"""


class DuplicatePaymentReference(LoanEngineError):
    """Payment reference already used for a different payment"""


class LoanNotFound(LoanEngineError):
    """No loan with the given id"""


class EmployeeNotFound(LoanEngineError):
    """Employee unknown to the employee directory"""


class ConcurrencyConflict(LoanEngineError):
    """Transaction lost a race for the loan aggregate"""


class StorageError(LoanEngineError):
    """Opaque persistence failure, nothing was committed"""
