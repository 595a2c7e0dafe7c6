"""
Amortization Module

Pure computation of a loan's total repayable amount (simple interest) and of
its monthly installment schedule. No storage, no ledger state.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import calendar

from .currency import Number, quantize, to_decimal
from .exceptions import InvalidTerms


ONE_HUNDRED = Decimal('100')


class InstallmentType(Enum):
    """How the schedule is sized"""
    FIXED_AMOUNT = "fixed_amount"  # Caller picks the amount, count follows
    FIXED_COUNT = "fixed_count"    # Caller picks the count, amount follows


class InstallmentStatus(Enum):
    """Installment states; the ledger itself only moves pending -> paid"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Installment:
    """One scheduled repayment inside a loan"""
    installment_number: int
    due_date: date
    amount: Decimal
    paid_amount: Decimal = Decimal('0')
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None
    payroll_record_id: Optional[str] = None

    @property
    def remaining_due(self) -> Decimal:
        """Amount still owed on this installment (never negative)"""
        return max(self.amount - self.paid_amount, Decimal('0'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount),
            'paid_amount': str(self.paid_amount),
            'status': self.status.value,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'payroll_record_id': self.payroll_record_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Decimal(data['amount']),
            paid_amount=Decimal(data.get('paid_amount', '0')),
            status=InstallmentStatus(data.get('status', 'pending')),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            payroll_record_id=data.get('payroll_record_id')
        )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _decimal_term(value: Number, field_name: str) -> Decimal:
    try:
        return to_decimal(value, field_name)
    except ValueError as e:
        raise InvalidTerms(str(e)) from e


def compute_total_amount(principal: Number, interest_rate: Number,
                         currency: str = "MYR",
                         precision_overrides: Optional[Dict[str, int]] = None) -> Decimal:
    """
    Total repayable amount under simple interest

    Args:
        principal: Amount disbursed, >= 0
        interest_rate: Flat interest in percent, 0-100
        currency: Currency code used for minor-unit rounding
        precision_overrides: Optional per-code precision overrides

    Returns:
        principal * (1 + rate/100), or principal when the rate is zero

    Raises:
        InvalidTerms: If principal or rate is out of range
    """
    principal = _decimal_term(principal, "principal_amount")
    rate = _decimal_term(interest_rate, "interest_rate")

    if principal < 0:
        raise InvalidTerms("Principal amount cannot be negative")
    if rate < 0 or rate > ONE_HUNDRED:
        raise InvalidTerms("Interest rate must be between 0 and 100")

    if rate == 0:
        total = principal
    else:
        total = principal * (Decimal('1') + rate / ONE_HUNDRED)

    return quantize(total, currency, precision_overrides)


def generate_schedule(
    total_amount: Number,
    start_date: Optional[date],
    installment_type: Union[InstallmentType, str],
    installment_amount: Optional[Number] = None,
    installment_count: Optional[int] = None,
    currency: str = "MYR",
    precision_overrides: Optional[Dict[str, int]] = None
) -> List[Installment]:
    """
    Build the monthly installment schedule for a total amount

    Installment i falls due i months after start_date. The last installment
    absorbs rounding so the schedule always sums to total_amount exactly.

    Args:
        total_amount: Amount to spread over the schedule
        start_date: Schedule anchor date
        installment_type: fixed_amount or fixed_count
        installment_amount: Per-installment amount (fixed_amount)
        installment_count: Number of installments (fixed_count)
        currency: Currency code used for minor-unit rounding
        precision_overrides: Optional per-code precision overrides

    Returns:
        Installments ordered by installment_number, all pending

    Raises:
        InvalidTerms: If the configuration cannot produce a valid schedule
    """
    if start_date is None:
        raise InvalidTerms("Start date is required for installment loans")
    if isinstance(start_date, datetime):
        start_date = start_date.date()

    try:
        installment_type = InstallmentType(installment_type)
    except ValueError:
        raise InvalidTerms(f"Unknown installment type: {installment_type}")

    total = quantize(_decimal_term(total_amount, "total_amount"), currency, precision_overrides)
    if total < 0:
        raise InvalidTerms("Total amount cannot be negative")

    if installment_type == InstallmentType.FIXED_COUNT:
        if isinstance(installment_count, bool) or not isinstance(installment_count, int):
            raise InvalidTerms("Installment count is required for fixed_count schedules")
        if installment_count < 1:
            raise InvalidTerms("Installment count must be greater than 0")

        count = installment_count
        per_installment = quantize(total / Decimal(count), currency, precision_overrides)
    else:
        if installment_amount is None:
            raise InvalidTerms("Installment amount is required for fixed_amount schedules")
        per_installment = quantize(
            _decimal_term(installment_amount, "installment_amount"), currency, precision_overrides
        )
        if per_installment <= 0:
            raise InvalidTerms("Installment amount must be greater than 0")

        count = int((total / per_installment).to_integral_value(rounding=ROUND_CEILING))

    last_amount = total - per_installment * (count - 1)
    if count and last_amount < 0:
        raise InvalidTerms(
            f"{count} installments of {per_installment} exceed the total amount {total}"
        )

    schedule = []
    for number in range(1, count + 1):
        schedule.append(Installment(
            installment_number=number,
            due_date=add_months(start_date, number),
            amount=last_amount if number == count else per_installment
        ))

    return schedule


def validate_schedule(schedule: List[Installment], total_amount: Decimal) -> bool:
    """Check numbering is 1..n and amounts sum exactly to total_amount"""
    numbers = [entry.installment_number for entry in schedule]
    if numbers != list(range(1, len(schedule) + 1)):
        return False
    return sum((entry.amount for entry in schedule), Decimal('0')) == total_amount
