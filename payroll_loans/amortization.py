"""
Amortization Module

Pure EMI mathematics: the fixed installment amount for a set of loan terms
and the interest/principal split of any installment. No rounding happens
here; callers round when they materialize an installment row.
"""

from decimal import Decimal
from enum import Enum
from typing import Tuple

from .currency import Amount, to_decimal, has_currency_precision, round_currency
from .exceptions import InvalidLoanTerms


class InterestMethod(Enum):
    """How interest is charged over the tenure"""
    REDUCING_BALANCE = "reducing_balance"  # Interest on the remaining principal
    FLAT = "flat"                          # Interest on the original principal


MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


class AmortizationCalculator:
    """
    Equated monthly installment calculator.

    Reducing balance uses the standard formula
    P * r * (1+r)^n / ((1+r)^n - 1), or P / n when the rate is zero.
    """

    def __init__(
        self,
        principal: Amount,
        annual_rate_percent: Amount,
        tenure_months: int,
        interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE
    ):
        self.principal, self.annual_rate_percent, self.tenure_months = self.validate_terms(
            principal, annual_rate_percent, tenure_months
        )
        self.interest_method = InterestMethod(interest_method)

    @staticmethod
    def validate_terms(
        principal: Amount,
        annual_rate_percent: Amount,
        tenure_months: int
    ) -> Tuple[Decimal, Decimal, int]:
        """
        Validate and normalize loan terms

        Returns:
            (principal, annual_rate_percent, tenure_months) as Decimal, Decimal, int

        Raises:
            InvalidLoanTerms: non-positive principal or tenure, negative rate
        """
        try:
            principal = to_decimal(principal)
        except ValueError:
            raise InvalidLoanTerms(f"Principal must be a decimal amount, got {principal!r}")
        try:
            annual_rate_percent = to_decimal(annual_rate_percent)
        except ValueError:
            raise InvalidLoanTerms(f"Interest rate must be a decimal, got {annual_rate_percent!r}")

        if isinstance(tenure_months, bool) or not isinstance(tenure_months, int):
            raise InvalidLoanTerms(f"Tenure must be a whole number of months, got {tenure_months!r}")
        if tenure_months <= 0:
            raise InvalidLoanTerms(f"Tenure must be positive, got {tenure_months}")
        if principal <= 0:
            raise InvalidLoanTerms(f"Principal must be positive, got {principal}")
        if not has_currency_precision(principal):
            raise InvalidLoanTerms(f"Principal {principal} has more than two decimal places")
        if annual_rate_percent < 0:
            raise InvalidLoanTerms(f"Interest rate cannot be negative, got {annual_rate_percent}")

        return round_currency(principal), annual_rate_percent, tenure_months

    @property
    def monthly_rate(self) -> Decimal:
        """Monthly rate as a fraction (12% p.a. -> 0.01)"""
        return self.annual_rate_percent / HUNDRED / MONTHS_PER_YEAR

    @property
    def installment_amount(self) -> Decimal:
        """Unrounded fixed installment amount"""
        principal = self.principal
        rate = self.monthly_rate
        n = self.tenure_months

        if self.interest_method == InterestMethod.FLAT:
            total_interest = principal * rate * n
            return (principal + total_interest) / n

        if rate == 0:
            return principal / n

        factor = (Decimal('1') + rate) ** n
        return principal * rate * factor / (factor - Decimal('1'))

    def interest_for(self, remaining_principal: Decimal) -> Decimal:
        """Interest due on one installment"""
        if self.monthly_rate == 0:
            return Decimal('0')
        if self.interest_method == InterestMethod.FLAT:
            return self.principal * self.monthly_rate
        return remaining_principal * self.monthly_rate

    def split(self, remaining_principal: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Split the installment against the remaining principal

        Returns:
            (interest_component, principal_component), unrounded
        """
        interest = self.interest_for(remaining_principal)
        return interest, self.installment_amount - interest

    def total_interest(self) -> Decimal:
        """Nominal interest over the whole tenure"""
        return self.installment_amount * self.tenure_months - self.principal
