"""
Test suite for amortization module

Tests total amount computation, installment schedule generation and calendar
month arithmetic. Schedules must always sum exactly to the total amount.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime

from loan_ledger.amortization import (
    Installment, InstallmentStatus, InstallmentType,
    add_months, compute_total_amount, generate_schedule, validate_schedule
)
from loan_ledger.exceptions import InvalidTerms


class TestComputeTotalAmount:
    """Test simple interest totals"""

    def test_zero_rate_returns_principal(self):
        """Test zero interest leaves the total at the principal"""
        assert compute_total_amount(Decimal('1000'), Decimal('0')) == Decimal('1000.00')

    def test_ten_percent(self):
        """Test simple interest on the principal"""
        assert compute_total_amount(Decimal('1000'), Decimal('10')) == Decimal('1100.00')

    def test_accepts_strings_and_ints(self):
        """Test string and integer inputs"""
        assert compute_total_amount("250.50", 4) == Decimal('260.52')

    def test_rounds_half_up_to_minor_unit(self):
        """Test total is rounded half up to the minor unit"""
        # 333.33 * 1.015 = 338.32995
        assert compute_total_amount(Decimal('333.33'), Decimal('1.5')) == Decimal('338.33')

    def test_zero_decimal_currency(self):
        """Test total for a currency without minor units"""
        assert compute_total_amount(Decimal('1005'), Decimal('5'), currency="JPY") == Decimal('1055')

    def test_precision_override(self):
        """Test configured precision overrides"""
        total = compute_total_amount(Decimal('100'), Decimal('3.3333'), currency="XYZ",
                                     precision_overrides={"XYZ": 4})
        assert total == Decimal('103.3333')

    def test_full_hundred_percent_allowed(self):
        """Test the upper interest bound is inclusive"""
        assert compute_total_amount(Decimal('500'), Decimal('100')) == Decimal('1000.00')

    def test_zero_principal(self):
        """Test a zero principal gives a zero total"""
        assert compute_total_amount(Decimal('0'), Decimal('10')) == Decimal('0.00')

    @pytest.mark.parametrize("principal,rate", [
        (Decimal('-1'), Decimal('0')),
        (Decimal('1000'), Decimal('-0.5')),
        (Decimal('1000'), Decimal('100.01')),
    ])
    def test_out_of_range_terms_rejected(self, principal, rate):
        """Test negative principal and out of range rates are rejected"""
        with pytest.raises(InvalidTerms):
            compute_total_amount(principal, rate)

    @pytest.mark.parametrize("value", [None, "abc", "NaN", "Infinity", True])
    def test_non_numeric_terms_rejected(self, value):
        """Test non-numeric terms are rejected"""
        with pytest.raises(InvalidTerms):
            compute_total_amount(value, Decimal('0'))

    def test_invalid_terms_is_value_error(self):
        """Test InvalidTerms is catchable as ValueError"""
        with pytest.raises(ValueError):
            compute_total_amount(Decimal('1000'), Decimal('150'))


class TestFixedCountSchedule:
    """Test schedules sized by number of installments"""

    def test_three_installments_of_1100(self):
        """Test 1100 over three installments"""
        schedule = generate_schedule(
            Decimal('1100.00'), date(2024, 1, 1), InstallmentType.FIXED_COUNT, installment_count=3
        )

        assert [entry.amount for entry in schedule] == [
            Decimal('366.67'), Decimal('366.67'), Decimal('366.66')
        ]
        assert [entry.due_date for entry in schedule] == [
            date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)
        ]
        assert sum(entry.amount for entry in schedule) == Decimal('1100.00')

    def test_cardinality_matches_count(self):
        """Test one installment per requested count"""
        for count in [1, 2, 7, 12, 24, 36]:
            schedule = generate_schedule(
                Decimal('999.99'), date(2024, 1, 15), "fixed_count", installment_count=count
            )
            assert len(schedule) == count
            assert validate_schedule(schedule, Decimal('999.99'))

    def test_installments_start_pending_and_unpaid(self):
        """Test new installments are pending with nothing paid"""
        schedule = generate_schedule(
            Decimal('300'), date(2024, 1, 1), InstallmentType.FIXED_COUNT, installment_count=3
        )

        for number, entry in enumerate(schedule, start=1):
            assert entry.installment_number == number
            assert entry.paid_amount == Decimal('0')
            assert entry.status == InstallmentStatus.PENDING
            assert entry.paid_at is None

    def test_single_installment_takes_everything(self):
        """Test a single installment carries the whole total"""
        schedule = generate_schedule(
            Decimal('123.45'), date(2024, 1, 1), InstallmentType.FIXED_COUNT, installment_count=1
        )
        assert len(schedule) == 1
        assert schedule[0].amount == Decimal('123.45')

    @pytest.mark.parametrize("count", [0, -3, None, True, 2.5])
    def test_invalid_count_rejected(self, count):
        """Test non-positive counts are rejected"""
        with pytest.raises(InvalidTerms):
            generate_schedule(Decimal('100'), date(2024, 1, 1),
                              InstallmentType.FIXED_COUNT, installment_count=count)

    def test_count_too_large_for_total_rejected(self):
        """Test a count that would leave a negative last installment"""
        # 0.11 / 7 rounds to 0.02, leaving -0.01 for the last installment
        with pytest.raises(InvalidTerms):
            generate_schedule(Decimal('0.11'), date(2024, 1, 1),
                              InstallmentType.FIXED_COUNT, installment_count=7)


class TestFixedAmountSchedule:
    """Test schedules sized by per-installment amount"""

    def test_remainder_goes_to_last_installment(self):
        """Test the last installment takes the remainder"""
        schedule = generate_schedule(
            Decimal('1000'), date(2024, 1, 1), InstallmentType.FIXED_AMOUNT,
            installment_amount=Decimal('300')
        )
        assert [entry.amount for entry in schedule] == [
            Decimal('300.00'), Decimal('300.00'), Decimal('300.00'), Decimal('100.00')
        ]

    def test_exact_multiple_never_ends_with_zero(self):
        """Test an exact multiple has no trailing zero installment"""
        schedule = generate_schedule(
            Decimal('1000'), date(2024, 1, 1), InstallmentType.FIXED_AMOUNT,
            installment_amount=Decimal('250')
        )
        assert len(schedule) == 4
        assert all(entry.amount == Decimal('250.00') for entry in schedule)

    def test_cardinality_is_ceiling(self):
        """Test installment count is the ceiling of total over amount"""
        cases = [
            (Decimal('1000'), Decimal('300'), 4),
            (Decimal('1000'), Decimal('1000'), 1),
            (Decimal('1000'), Decimal('5000'), 1),
            (Decimal('100.01'), Decimal('10'), 11),
            (Decimal('0.03'), Decimal('0.01'), 3),
        ]
        for total, amount, expected in cases:
            schedule = generate_schedule(total, date(2024, 1, 1), "fixed_amount",
                                         installment_amount=amount)
            assert len(schedule) == expected
            assert validate_schedule(schedule, total)

    def test_zero_total_gives_empty_schedule(self):
        """Test a zero total yields no installments"""
        schedule = generate_schedule(Decimal('0'), date(2024, 1, 1), InstallmentType.FIXED_AMOUNT,
                                     installment_amount=Decimal('100'))
        assert schedule == []

    @pytest.mark.parametrize("amount", [None, Decimal('0'), Decimal('-10'), "abc"])
    def test_invalid_amount_rejected(self, amount):
        """Test non-positive installment amounts are rejected"""
        with pytest.raises(InvalidTerms):
            generate_schedule(Decimal('1000'), date(2024, 1, 1),
                              InstallmentType.FIXED_AMOUNT, installment_amount=amount)


class TestScheduleConfiguration:
    """Test common schedule validation"""

    def test_start_date_required(self):
        """Test a schedule needs a start date"""
        with pytest.raises(InvalidTerms):
            generate_schedule(Decimal('1000'), None, InstallmentType.FIXED_COUNT, installment_count=2)

    def test_unknown_installment_type_rejected(self):
        """Test unknown installment types are rejected"""
        with pytest.raises(InvalidTerms):
            generate_schedule(Decimal('1000'), date(2024, 1, 1), "weekly", installment_count=2)

    def test_datetime_start_is_truncated_to_date(self):
        """Test a datetime start date keeps only the date"""
        schedule = generate_schedule(Decimal('200'), datetime(2024, 1, 31, 15, 30),
                                     InstallmentType.FIXED_COUNT, installment_count=2)
        assert schedule[0].due_date == date(2024, 2, 29)
        assert schedule[1].due_date == date(2024, 3, 31)

    def test_sum_invariant_across_configurations(self):
        """Test installments always sum to the total"""
        totals = [Decimal('0.01'), Decimal('1.00'), Decimal('1100.00'), Decimal('12345.67')]
        for total in totals:
            for count in [1, 3, 7]:
                if total < Decimal('0.01') * count:
                    continue
                schedule = generate_schedule(total, date(2024, 1, 1), "fixed_count",
                                             installment_count=count)
                assert sum(entry.amount for entry in schedule) == total
            for amount in [Decimal('0.01'), Decimal('0.33'), Decimal('250')]:
                if total / amount > 2000:
                    continue
                schedule = generate_schedule(total, date(2024, 1, 1), "fixed_amount",
                                             installment_amount=amount)
                assert sum(entry.amount for entry in schedule) == total


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple_month(self):
        """Test adding one month"""
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_month_end(self):
        """Test day clamping at short months"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 3, 31), 1) == date(2024, 4, 30)

    def test_year_rollover(self):
        """Test adding months across a year boundary"""
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
        assert add_months(date(2024, 12, 1), 12) == date(2025, 12, 1)

    def test_zero_months(self):
        """Test adding zero months"""
        assert add_months(date(2024, 5, 5), 0) == date(2024, 5, 5)


class TestInstallment:
    """Test installment value object"""

    def test_remaining_due_never_negative(self):
        """Test remaining due floors at zero"""
        installment = Installment(1, date(2024, 2, 1), Decimal('100.00'), paid_amount=Decimal('150.00'))
        assert installment.remaining_due == Decimal('0')

    def test_dict_conversion_keeps_values(self):
        """Test installment dict conversion"""
        installment = Installment(
            installment_number=2,
            due_date=date(2024, 3, 1),
            amount=Decimal('366.67'),
            paid_amount=Decimal('366.67'),
            status=InstallmentStatus.PAID,
            paid_at=datetime(2024, 3, 1, 9, 0),
            payroll_record_id="PR-2024-03"
        )

        data = installment.to_dict()
        assert data['amount'] == '366.67'
        assert data['status'] == 'paid'
        assert Installment.from_dict(data) == installment

    def test_validate_schedule_detects_gaps_and_drift(self):
        """Test schedule validation problems"""
        schedule = generate_schedule(Decimal('300'), date(2024, 1, 1), "fixed_count", installment_count=3)
        assert validate_schedule(schedule, Decimal('300'))
        assert not validate_schedule(schedule, Decimal('300.01'))
        assert not validate_schedule(schedule[1:], Decimal('200'))
