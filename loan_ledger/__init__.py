"""
Loan/Advance Ledger

Issues worker loans and salary advances, builds their installment schedules,
and applies payroll payments against them. All money math uses Decimal.
"""

__version__ = "1.0.0"
