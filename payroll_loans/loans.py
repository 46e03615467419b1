"""
Loan Module

The Loan aggregate: a loan or salary advance requested by one employee,
its amortization schedule (installments) and its repayment ledger. All
invariants of the aggregate are enforced here; lifecycle and payment
services only orchestrate.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from .amortization import AmortizationCalculator, InterestMethod
from .currency import ZERO, round_currency
from .dates import add_months, month_start, month_end
from .exceptions import (
    InvalidLoanTerms, InvalidStateTransition, LoanClosed,
    NoOutstandingInstallment, AmountExceedsRemaining, InvalidPaymentAmount
)
from .storage import StorageRecord, serialize_value


class LoanType(Enum):
    """Kinds of employee credit"""
    LOAN = "loan"
    ADVANCE = "advance"    # Salary advance


class LoanStatus(Enum):
    """Loan lifecycle states"""
    REQUESTED = "requested"    # Awaiting approval
    APPROVED = "approved"      # Transient, becomes ACTIVE in the same transaction
    ACTIVE = "active"          # Schedule generated, repayments running
    REJECTED = "rejected"      # Terminal
    CLOSED = "closed"          # Fully repaid, terminal


class InstallmentStatus(Enum):
    """Settlement state of a scheduled installment"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


UNSETTLED_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIAL,
    InstallmentStatus.OVERDUE,
)


class PaymentSource(Enum):
    """Where a repayment came from"""
    MANUAL = "manual"
    PAYROLL = "payroll"


class PreferredDeductionDay(Enum):
    """When in the due month an auto-deduction is taken"""
    DUE_DATE = "due_date"
    MONTH_START = "month_start"
    MONTH_END = "month_end"


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value:
        return date.fromisoformat(value)
    return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value:
        return datetime.fromisoformat(value)
    return None


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms, immutable once the loan is active"""
    loan_type: LoanType
    principal: Decimal
    annual_interest_rate_percent: Decimal
    tenure_months: int
    start_date: date
    interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE

    def __post_init__(self):
        principal, rate, tenure = AmortizationCalculator.validate_terms(
            self.principal, self.annual_interest_rate_percent, self.tenure_months
        )
        object.__setattr__(self, 'principal', principal)
        object.__setattr__(self, 'annual_interest_rate_percent', rate)
        object.__setattr__(self, 'tenure_months', tenure)

        try:
            object.__setattr__(self, 'loan_type', LoanType(self.loan_type))
            object.__setattr__(self, 'interest_method', InterestMethod(self.interest_method))
        except ValueError as e:
            raise InvalidLoanTerms(str(e))

        start = self.start_date
        if isinstance(start, str):
            try:
                start = date.fromisoformat(start)
            except ValueError:
                raise InvalidLoanTerms(f"Invalid start date: {start!r}")
        if isinstance(start, datetime):
            start = start.date()
        if not isinstance(start, date):
            raise InvalidLoanTerms(f"Start date must be a date, got {start!r}")
        object.__setattr__(self, 'start_date', start)

    def calculator(self) -> AmortizationCalculator:
        return AmortizationCalculator(
            self.principal,
            self.annual_interest_rate_percent,
            self.tenure_months,
            self.interest_method
        )

    @property
    def installment_amount(self) -> Decimal:
        """Nominal installment rounded to currency precision"""
        return round_currency(self.calculator().installment_amount)

    @property
    def end_date(self) -> date:
        return add_months(self.start_date, self.tenure_months)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_type': self.loan_type.value,
            'principal': str(self.principal),
            'annual_interest_rate_percent': str(self.annual_interest_rate_percent),
            'tenure_months': self.tenure_months,
            'start_date': self.start_date.isoformat(),
            'interest_method': self.interest_method.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            loan_type=LoanType(data['loan_type']),
            principal=Decimal(data['principal']),
            annual_interest_rate_percent=Decimal(data['annual_interest_rate_percent']),
            tenure_months=data['tenure_months'],
            start_date=date.fromisoformat(data['start_date']),
            interest_method=InterestMethod(data.get('interest_method', InterestMethod.REDUCING_BALANCE.value)),
        )


@dataclass(frozen=True)
class EMIConfiguration:
    """Auto-deduction settings for a loan"""
    auto_deduct_enabled: bool = True
    preferred_deduction_day: PreferredDeductionDay = PreferredDeductionDay.MONTH_END

    def __post_init__(self):
        object.__setattr__(self, 'auto_deduct_enabled', bool(self.auto_deduct_enabled))
        object.__setattr__(
            self, 'preferred_deduction_day', PreferredDeductionDay(self.preferred_deduction_day)
        )

    def deduction_date_for(self, due_date: date) -> date:
        if self.preferred_deduction_day == PreferredDeductionDay.MONTH_START:
            return month_start(due_date)
        if self.preferred_deduction_day == PreferredDeductionDay.MONTH_END:
            return month_end(due_date)
        return due_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'auto_deduct_enabled': self.auto_deduct_enabled,
            'preferred_deduction_day': self.preferred_deduction_day.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EMIConfiguration':
        return cls(
            auto_deduct_enabled=data['auto_deduct_enabled'],
            preferred_deduction_day=PreferredDeductionDay(data['preferred_deduction_day']),
        )


@dataclass
class Installment(StorageRecord):
    """One row of the amortization schedule"""
    loan_id: str
    sequence_number: int
    due_date: date
    principal_component: Decimal
    interest_component: Decimal
    total_amount: Decimal
    paid_amount: Decimal = ZERO
    paid_date: Optional[date] = None
    status: InstallmentStatus = InstallmentStatus.PENDING

    def __post_init__(self):
        if self.principal_component < 0 or self.interest_component < 0:
            raise ValueError(f"Installment {self.sequence_number} has a negative component")
        if self.principal_component + self.interest_component != self.total_amount:
            raise ValueError(
                f"Installment {self.sequence_number} total {self.total_amount} does not equal "
                f"principal {self.principal_component} + interest {self.interest_component}"
            )
        if not ZERO <= self.paid_amount <= self.total_amount:
            raise ValueError(f"Installment {self.sequence_number} paid amount out of range")

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.paid_amount

    @property
    def is_settled(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def interest_paid(self) -> Decimal:
        # Payments settle interest before principal
        return min(self.paid_amount, self.interest_component)

    @property
    def principal_paid(self) -> Decimal:
        return max(ZERO, self.paid_amount - self.interest_component)

    def derive_status(self, today: date) -> InstallmentStatus:
        """Status implied by the amount paid and the due date"""
        if self.paid_amount == self.total_amount:
            return InstallmentStatus.PAID
        if self.due_date < today:
            return InstallmentStatus.OVERDUE
        if self.paid_amount > ZERO:
            return InstallmentStatus.PARTIAL
        return InstallmentStatus.PENDING

    def is_overdue_on(self, today: date) -> bool:
        return self.status in UNSETTLED_STATUSES and self.due_date < today

    def apply_payment(self, amount: Decimal, paid_on: date, today: date) -> Tuple[Decimal, Decimal]:
        """
        Apply a payment to this installment

        Returns:
            (principal_part, interest_part) of the amount just applied
        """
        if amount <= ZERO:
            raise InvalidPaymentAmount(f"Payment amount must be positive, got {amount}")
        if amount > self.remaining_amount:
            raise AmountExceedsRemaining(
                f"Payment {amount} exceeds remaining {self.remaining_amount} "
                f"on installment {self.sequence_number}",
                remaining=self.remaining_amount
            )

        principal_before = self.principal_paid
        interest_before = self.interest_paid

        self.paid_amount += amount
        self.paid_date = paid_on
        self.status = self.derive_status(today)
        self.touch()

        return self.principal_paid - principal_before, self.interest_paid - interest_before

    def mark_overdue(self, today: date) -> bool:
        """Flag as overdue if past due and unsettled; True when changed"""
        if self.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL) and self.due_date < today:
            self.status = InstallmentStatus.OVERDUE
            self.touch()
            return True
        return False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence_number=data['sequence_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            total_amount=Decimal(data['total_amount']),
            paid_amount=Decimal(data['paid_amount']),
            paid_date=_parse_date(data.get('paid_date')),
            status=InstallmentStatus(data['status']),
        )


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root"""
    employee_id: str
    terms: LoanTerms
    status: LoanStatus = LoanStatus.REQUESTED
    installment_amount: Decimal = None      # Nominal EMI, fixed at request
    end_date: Optional[date] = None

    # Repayment ledger
    outstanding_principal: Decimal = None
    paid_to_date: Decimal = ZERO            # Principal repaid
    interest_paid_to_date: Decimal = ZERO

    emi_configuration: EMIConfiguration = field(default_factory=EMIConfiguration)

    # Workflow metadata
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    version: int = 0
    installments: List[Installment] = field(default_factory=list)

    def __post_init__(self):
        if self.installment_amount is None:
            self.installment_amount = self.terms.installment_amount
        if self.end_date is None:
            self.end_date = self.terms.end_date
        if self.outstanding_principal is None:
            self.outstanding_principal = self.terms.principal
        self.installments.sort(key=lambda i: i.sequence_number)

    @property
    def principal(self) -> Decimal:
        return self.terms.principal

    @property
    def loan_type(self) -> LoanType:
        return self.terms.loan_type

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def total_paid(self) -> Decimal:
        """Cash received: principal plus interest"""
        return self.paid_to_date + self.interest_paid_to_date

    @property
    def auto_deduct_enabled(self) -> bool:
        return self.emi_configuration.auto_deduct_enabled

    @property
    def next_due_date(self) -> Optional[date]:
        """Due date of the oldest unsettled installment, derived on demand"""
        if not self.is_active:
            return None
        target = self.target_installment()
        return target.due_date if target else None

    @property
    def next_deduction_date(self) -> Optional[date]:
        due = self.next_due_date
        if due is None or not self.auto_deduct_enabled:
            return None
        return self.emi_configuration.deduction_date_for(due)

    def target_installment(self) -> Optional[Installment]:
        """Oldest installment that is not yet paid"""
        for installment in self.installments:
            if installment.status in UNSETTLED_STATUSES:
                return installment
        return None

    def get_installment(self, sequence_number: int) -> Optional[Installment]:
        for installment in self.installments:
            if installment.sequence_number == sequence_number:
                return installment
        return None

    def ensure_mutable(self) -> None:
        """Reject mutation of terminal loans"""
        if self.status == LoanStatus.CLOSED:
            raise LoanClosed(f"Loan {self.id} is closed")
        if self.status == LoanStatus.REJECTED:
            raise InvalidStateTransition(f"Loan {self.id} was rejected")

    def _require_status(self, expected: LoanStatus, action: str) -> None:
        self.ensure_mutable()
        if self.status != expected:
            raise InvalidStateTransition(
                f"Cannot {action} loan {self.id} in status {self.status.value}, "
                f"expected {expected.value}"
            )

    def approve(self, approver_id: str, now: Optional[datetime] = None) -> None:
        """requested -> approved"""
        self._require_status(LoanStatus.REQUESTED, "approve")
        now = now or datetime.now(timezone.utc)
        self.status = LoanStatus.APPROVED
        self.approved_by = approver_id
        self.approved_at = now
        self.touch(now)

    def activate(self, installments: List[Installment], now: Optional[datetime] = None) -> None:
        """approved -> active, attaching the generated schedule"""
        self._require_status(LoanStatus.APPROVED, "activate")
        self._validate_schedule(installments)
        now = now or datetime.now(timezone.utc)
        self.installments = sorted(installments, key=lambda i: i.sequence_number)
        self.outstanding_principal = self.terms.principal
        self.paid_to_date = ZERO
        self.interest_paid_to_date = ZERO
        self.end_date = self.installments[-1].due_date
        self.status = LoanStatus.ACTIVE
        self.activated_at = now
        self.touch(now)
        self.check_invariants()

    def reject(self, approver_id: str, reason: str, now: Optional[datetime] = None) -> None:
        """requested -> rejected"""
        self._require_status(LoanStatus.REQUESTED, "reject")
        now = now or datetime.now(timezone.utc)
        self.status = LoanStatus.REJECTED
        self.rejected_by = approver_id
        self.rejected_at = now
        self.rejection_reason = reason
        self.touch(now)

    def configure_emi(
        self,
        auto_deduct_enabled: Optional[bool] = None,
        preferred_deduction_day: Optional[PreferredDeductionDay] = None
    ) -> EMIConfiguration:
        """Change auto-deduction settings; terms stay untouched"""
        self.ensure_mutable()
        changes = {}
        if auto_deduct_enabled is not None:
            changes['auto_deduct_enabled'] = auto_deduct_enabled
        if preferred_deduction_day is not None:
            changes['preferred_deduction_day'] = PreferredDeductionDay(preferred_deduction_day)
        self.emi_configuration = replace(self.emi_configuration, **changes)
        self.touch()
        return self.emi_configuration

    def apply_payment(
        self,
        amount: Decimal,
        paid_on: date,
        today: date,
        now: Optional[datetime] = None
    ) -> Tuple[Installment, Decimal, Decimal]:
        """
        Apply a payment to the oldest unsettled installment

        Returns:
            (installment, principal_part, interest_part)
        """
        self.ensure_mutable()
        if self.status != LoanStatus.ACTIVE:
            raise InvalidStateTransition(
                f"Loan {self.id} is {self.status.value}, payments need an active loan"
            )

        target = self.target_installment()
        if target is None:
            raise NoOutstandingInstallment(f"Loan {self.id} has no outstanding installment")

        principal_part, interest_part = target.apply_payment(amount, paid_on, today)

        self.outstanding_principal -= principal_part
        self.paid_to_date += principal_part
        self.interest_paid_to_date += interest_part

        now = now or datetime.now(timezone.utc)
        if self.outstanding_principal <= ZERO:
            self.outstanding_principal = ZERO
            self.status = LoanStatus.CLOSED
            self.closed_at = now
        self.touch(now)
        self.check_invariants()

        return target, principal_part, interest_part

    def sweep_overdue(self, today: date) -> List[Installment]:
        """Mark past-due unsettled installments overdue"""
        if self.status != LoanStatus.ACTIVE:
            return []
        return [i for i in self.installments if i.mark_overdue(today)]

    def _validate_schedule(self, installments: List[Installment]) -> None:
        if len(installments) != self.terms.tenure_months:
            raise ValueError(
                f"Schedule has {len(installments)} rows, tenure is {self.terms.tenure_months}"
            )
        numbers = sorted(i.sequence_number for i in installments)
        if numbers != list(range(1, self.terms.tenure_months + 1)):
            raise ValueError("Installment sequence numbers must be contiguous from 1")
        if any(i.loan_id != self.id for i in installments):
            raise ValueError("Installment belongs to a different loan")
        if sum((i.principal_component for i in installments), ZERO) != self.terms.principal:
            raise ValueError("Schedule principal does not add up to the loan principal")

    def check_invariants(self) -> None:
        """Raise if the ledger is inconsistent"""
        if self.status not in (LoanStatus.ACTIVE, LoanStatus.CLOSED):
            return
        if self.outstanding_principal < ZERO:
            raise ValueError(f"Loan {self.id} outstanding principal is negative")
        if self.outstanding_principal + self.paid_to_date != self.terms.principal:
            raise ValueError(
                f"Loan {self.id} outstanding {self.outstanding_principal} + paid "
                f"{self.paid_to_date} != principal {self.terms.principal}"
            )
        if self.status == LoanStatus.CLOSED and self.outstanding_principal != ZERO:
            raise ValueError(f"Closed loan {self.id} still has outstanding principal")

    def to_dict(self) -> Dict[str, Any]:
        """Convert loan (without installments) to dictionary"""
        result = {}
        for name in (
            'id', 'created_at', 'updated_at', 'employee_id', 'status', 'installment_amount',
            'end_date', 'outstanding_principal', 'paid_to_date', 'interest_paid_to_date',
            'reason', 'requested_by', 'requested_at', 'approved_by', 'approved_at',
            'activated_at', 'rejected_by', 'rejected_at', 'rejection_reason', 'closed_at',
            'version'
        ):
            result[name] = serialize_value(getattr(self, name))
        result['terms'] = self.terms.to_dict()
        result['loan_type'] = self.terms.loan_type.value  # Flattened for filtering
        result['emi_configuration'] = self.emi_configuration.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], installments: Optional[List[Installment]] = None) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            employee_id=data['employee_id'],
            terms=LoanTerms.from_dict(data['terms']),
            status=LoanStatus(data['status']),
            installment_amount=Decimal(data['installment_amount']),
            end_date=_parse_date(data.get('end_date')),
            outstanding_principal=Decimal(data['outstanding_principal']),
            paid_to_date=Decimal(data['paid_to_date']),
            interest_paid_to_date=Decimal(data['interest_paid_to_date']),
            emi_configuration=EMIConfiguration.from_dict(data['emi_configuration']),
            reason=data.get('reason'),
            requested_by=data.get('requested_by'),
            requested_at=_parse_datetime(data.get('requested_at')),
            approved_by=data.get('approved_by'),
            approved_at=_parse_datetime(data.get('approved_at')),
            activated_at=_parse_datetime(data.get('activated_at')),
            rejected_by=data.get('rejected_by'),
            rejected_at=_parse_datetime(data.get('rejected_at')),
            rejection_reason=data.get('rejection_reason'),
            closed_at=_parse_datetime(data.get('closed_at')),
            version=data.get('version', 0),
            installments=list(installments or []),
        )


@dataclass
class LoanPayment(StorageRecord):
    """Record of one applied repayment, keyed by its payment reference"""
    loan_id: str
    payment_reference: str
    installment_id: str
    sequence_number: int
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    source: PaymentSource
    paid_on: date
    installment_status: InstallmentStatus
    outstanding_principal: Decimal      # Loan balance after this payment
    loan_status: LoanStatus
    payroll_run_id: Optional[str] = None
    recorded_by: Optional[str] = None
    replayed: bool = False              # Set on idempotent replays, never stored

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.pop('replayed')
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            payment_reference=data['payment_reference'],
            installment_id=data['installment_id'],
            sequence_number=data['sequence_number'],
            amount=Decimal(data['amount']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            source=PaymentSource(data['source']),
            paid_on=date.fromisoformat(data['paid_on']),
            installment_status=InstallmentStatus(data['installment_status']),
            outstanding_principal=Decimal(data['outstanding_principal']),
            loan_status=LoanStatus(data['loan_status']),
            payroll_run_id=data.get('payroll_run_id'),
            recorded_by=data.get('recorded_by'),
        )
