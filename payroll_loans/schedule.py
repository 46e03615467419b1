"""
Schedule Module

Materializes the amortization schedule of a loan: one Installment per month
of tenure, due on the same day of each following calendar month.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional

from .currency import ZERO, round_currency
from .dates import add_months
from .loans import Installment, InstallmentStatus, LoanTerms


@dataclass
class Schedule:
    """Generated installments of one loan"""
    loan_id: str
    installment_amount: Decimal     # Nominal EMI, rounded
    installments: List[Installment]

    @property
    def final_installment_adjustment(self) -> Decimal:
        """
        Amount by which the last installment differs from the nominal EMI.

        The last row carries whatever principal the rounded earlier rows left
        behind, so its total can be a few cents off the nominal amount.
        """
        if not self.installments:
            return ZERO
        return self.installments[-1].total_amount - self.installment_amount

    @property
    def total_principal(self) -> Decimal:
        return sum((i.principal_component for i in self.installments), ZERO)

    @property
    def total_interest(self) -> Decimal:
        return sum((i.interest_component for i in self.installments), ZERO)

    @property
    def total_payable(self) -> Decimal:
        return sum((i.total_amount for i in self.installments), ZERO)


class ScheduleGenerator:
    """
    Builds the installment rows for approved loan terms

    Every row except the last pays the rounded nominal installment: interest
    on the remaining principal, rounded, and the rest as principal. The last
    row takes exactly the remaining principal so the principal components sum
    to the loan principal with no cent lost or gained.
    """

    def generate(self, loan_id: str, terms: LoanTerms, now: Optional[datetime] = None) -> Schedule:
        now = now or datetime.now(timezone.utc)
        calculator = terms.calculator()
        nominal = round_currency(calculator.installment_amount)
        tenure = terms.tenure_months

        remaining = terms.principal
        installments = []

        for sequence_number in range(1, tenure + 1):
            interest, _ = calculator.split(remaining)
            # Flat interest stops once the principal is repaid
            interest = round_currency(interest) if remaining > ZERO else ZERO

            if sequence_number < tenure:
                principal = min(max(nominal - interest, ZERO), remaining)
            else:
                principal = remaining

            total = principal + interest
            remaining -= principal

            installments.append(Installment(
                id=f"{loan_id}_{sequence_number}",
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                sequence_number=sequence_number,
                due_date=add_months(terms.start_date, sequence_number),
                principal_component=principal,
                interest_component=interest,
                total_amount=total,
                # Rows emptied by rounding have nothing to collect
                status=InstallmentStatus.PAID if total == ZERO else InstallmentStatus.PENDING
            ))

        return Schedule(loan_id=loan_id, installment_amount=nominal, installments=installments)
