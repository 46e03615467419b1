"""
Payroll Loans

Loan and salary-advance amortization and repayment engine for payroll,
with exact Decimal schedules, idempotent payments and a hash-chained
audit trail.
"""

__version__ = "1.0.0"
