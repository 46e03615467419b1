"""
Loan Repository Module

Loads and saves the Loan aggregate (loan row + installment rows) and the
payment ledger. Every mutation of one loan runs in run_in_transaction: a
per-loan in-process lock, a storage transaction and an optimistic version
check, retried a bounded number of times on ConcurrencyConflict.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .exceptions import ConcurrencyConflict, DuplicatePaymentReference, LoanNotFound
from .loans import Installment, Loan, LoanPayment, LoanStatus, LoanType
from .storage import StorageInterface


logger = logging.getLogger("payroll_loans.repository")

T = TypeVar("T")

REFERENCE_LOCK_STRIPES = 64


class LoanRepository:
    """Persistence boundary for loan aggregates"""

    def __init__(
        self,
        storage: StorageInterface,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.0
    ):
        self.storage = storage
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

        self.loans_table = "loans"
        self.installments_table = "loan_installments"
        self.payments_table = "loan_payments"

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._reference_locks = [threading.Lock() for _ in range(REFERENCE_LOCK_STRIPES)]

    @contextmanager
    def locked(self, loan_id: str):
        """Serialize all work on one loan within this process"""
        with self._locks_guard:
            lock = self._locks.setdefault(loan_id, threading.RLock())
        with lock:
            yield

    @contextmanager
    def reference_locked(self, payment_reference: str):
        """
        Serialize payments sharing a reference across all loans

        Taken before the loan lock, never after it.
        """
        lock = self._reference_locks[hash(payment_reference) % REFERENCE_LOCK_STRIPES]
        with lock:
            yield

    def add(self, loan: Loan) -> Loan:
        """Persist a newly requested loan"""
        with self.storage.atomic():
            if self.storage.exists(self.loans_table, loan.id):
                raise ValueError(f"Loan {loan.id} already exists")
            loan.version = 1
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            for installment in loan.installments:
                self.storage.save(self.installments_table, installment.id, installment.to_dict())
        return loan

    def get(self, loan_id: str) -> Loan:
        """Load the full aggregate"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return Loan.from_dict(data, self.get_installments(loan_id))

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by sequence number"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.sequence_number)
        return installments

    def find_loans(
        self,
        employee_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None
    ) -> List[Loan]:
        """Loans matching the filters, newest first"""
        filters: Dict[str, Any] = {}
        if employee_id:
            filters['employee_id'] = employee_id
        if status:
            filters['status'] = LoanStatus(status).value
        if loan_type:
            filters['loan_type'] = LoanType(loan_type).value

        rows = self.storage.find(self.loans_table, filters)
        loans = [Loan.from_dict(row, self.get_installments(row['id'])) for row in rows]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def _snapshot(self, loan: Loan) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
        return loan.to_dict(), {i.id: i.to_dict() for i in loan.installments}

    def _save_changes(self, loan: Loan, before: Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]) -> bool:
        """Write the loan and any changed installment rows; False when nothing changed"""
        loan_before, installments_before = before
        loan_after, installments_after = self._snapshot(loan)
        changed_rows = [
            installment_id for installment_id, row in installments_after.items()
            if installments_before.get(installment_id) != row
        ]
        if loan_after == loan_before and not changed_rows:
            return False

        stored = self.storage.load(self.loans_table, loan.id)
        if stored is not None and stored.get('version') != loan.version:
            raise ConcurrencyConflict(
                f"Loan {loan.id} changed underneath (version {stored.get('version')} != {loan.version})"
            )

        loan.version += 1
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        for installment_id in changed_rows:
            self.storage.save(self.installments_table, installment_id, installments_after[installment_id])
        return True

    def run_in_transaction(self, loan_id: str, operation: Callable[[Loan], T]) -> T:
        """
        Run an operation against a freshly loaded aggregate and commit its changes

        The operation mutates the loan in place; whatever it returns is
        passed back once the transaction has committed. Any exception rolls
        back every write made inside the transaction.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.locked(loan_id):
                    with self.storage.atomic():
                        loan = self.get(loan_id)
                        before = self._snapshot(loan)
                        result = operation(loan)
                        self._save_changes(loan, before)
                return result
            except ConcurrencyConflict as e:
                if attempt > self.max_retries:
                    logger.error(f"Giving up on loan {loan_id} after {attempt} attempts: {e}", extra={"loan_id": loan_id})
                    raise
                logger.warning(f"Concurrency conflict on loan {loan_id}, retry {attempt}: {e}", extra={"loan_id": loan_id})
                if self.retry_backoff_seconds:
                    time.sleep(self.retry_backoff_seconds * attempt)

    def find_payment(self, payment_reference: str) -> Optional[LoanPayment]:
        data = self.storage.load(self.payments_table, payment_reference)
        if data:
            return LoanPayment.from_dict(data)
        return None

    def save_payment(self, payment: LoanPayment) -> None:
        """Store a new payment; its reference must not be taken yet"""
        if self.storage.exists(self.payments_table, payment.payment_reference):
            raise DuplicatePaymentReference(
                f"Payment reference {payment.payment_reference} already recorded"
            )
        self.storage.save(self.payments_table, payment.payment_reference, payment.to_dict())

    def get_payments(self, loan_id: str) -> List[LoanPayment]:
        """Payment history of a loan, oldest first"""
        rows = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [LoanPayment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: p.created_at)
        return payments
