"""
Test suite for schedule generation

Covers the annuity math, rounding of the final installment, due-date
arithmetic and the amount-due invariant on installment rows.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_engine.currency import Money, Currency
from loan_engine.errors import InvalidLoanTerms
from loan_engine.loans import LoanTerms
from loan_engine.schedule import (
    Installment, InstallmentStatus, InstallmentKind, PaymentMethod,
    ScheduleGenerator, add_months, annuity_payment, amortize, ordered,
    next_sequence_index
)


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


class TestAddMonths:
    """Test due-date arithmetic"""

    def test_simple_offsets(self):
        """Test adding months within and across years"""
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
        assert add_months(date(2024, 1, 15), 24) == date(2026, 1, 15)

    def test_clamps_to_month_end(self):
        """Test day-of-month is clamped to the target month's length"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)
        assert add_months(date(2024, 1, 31), 2) == date(2024, 3, 31)


class TestAnnuityPayment:
    """Test level payment formula"""

    def test_standard_example(self):
        """Test 100000 at 6% over 12 months"""
        payment = annuity_payment(usd('100000.00'), Decimal('0.005'), 12)
        assert payment == usd('8606.64')

    def test_zero_rate_divides_equally(self):
        """Test zero interest falls back to equal division"""
        assert annuity_payment(usd('1000.00'), Decimal('0'), 3) == usd('333.33')

    def test_single_period(self):
        """Test one period repays principal plus one month of interest"""
        assert annuity_payment(usd('1000.00'), Decimal('0.01'), 1) == usd('1010.00')

    def test_rounds_down_so_last_row_absorbs(self):
        """Test the level payment never rounds up past an even share"""
        assert annuity_payment(usd('100.00'), Decimal('0'), 480) == usd('0.20')
        assert annuity_payment(usd('2.00'), Decimal('0'), 3) == usd('0.66')

    def test_small_balance_long_term(self):
        """Test interest rounding never repays the balance before the last row"""
        payment = annuity_payment(usd('100.00'), Decimal('0.005'), 480)
        splits = amortize(usd('100.00'), Decimal('0.005'), payment, 480)

        for principal, interest in splits[:-1]:
            assert principal + interest == payment
        last_principal, last_interest = splits[-1]
        assert (last_principal + last_interest).is_positive()
        assert Money.total((p for p, _ in splits), Currency.USD) == usd('100.00')

    def test_principal_below_one_cent_per_period(self):
        """Test a principal too small to spread is rejected"""
        with pytest.raises(ValueError):
            annuity_payment(usd('4.79'), Decimal('0'), 480)

    def test_invalid_periods(self):
        """Test zero periods is rejected"""
        with pytest.raises(ValueError):
            annuity_payment(usd('1000.00'), Decimal('0.01'), 0)


class TestAmortize:
    """Test principal/interest split"""

    def test_principal_sums_to_balance(self):
        """Test the final period absorbs rounding"""
        balance = usd('81893.36')
        rate = Decimal('0.005')
        payment = annuity_payment(balance, rate, 11)
        splits = amortize(balance, rate, payment, 11)

        assert len(splits) == 11
        assert Money.total((p for p, _ in splits), Currency.USD) == balance
        for principal, interest in splits[:-1]:
            assert principal + interest == payment

    def test_zero_rate_remainder_on_last(self):
        """Test zero-rate split puts the remainder cent on the last row"""
        splits = amortize(usd('1000.00'), Decimal('0'), usd('333.33'), 3)
        assert [p for p, _ in splits] == [usd('333.33'), usd('333.33'), usd('333.34')]
        assert all(i.is_zero() for _, i in splits)


class TestScheduleGenerator:
    """Test initial schedule generation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.generator = ScheduleGenerator()
        self.terms = LoanTerms(
            principal=usd('100000.00'),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            start_date=date(2024, 1, 15),
        )

    def test_standard_schedule(self):
        """Test the 100000 / 6% / 12 example"""
        schedule = self.generator.generate("LOAN001", self.terms)
        rows = schedule.installments

        assert schedule.monthly_payment == usd('8606.64')
        assert len(rows) == 12
        assert rows[0].interest_portion == usd('500.00')
        assert rows[0].principal_portion == usd('8106.64')
        assert rows[1].interest_portion == usd('459.47')
        assert rows[1].principal_portion == usd('8147.17')
        assert Money.total((r.principal_portion for r in rows), Currency.USD) == usd('100000.00')
        assert schedule.total_interest == Money.total((r.interest_portion for r in rows), Currency.USD)
        assert schedule.total_fees.is_zero()

    def test_rows_are_ordered_and_scheduled(self):
        """Test sequence, due dates and initial state"""
        rows = self.generator.generate("LOAN001", self.terms).installments

        assert [r.sequence_index for r in rows] == list(range(1, 13))
        assert rows[0].due_date == date(2024, 2, 15)
        assert rows[-1].due_date == date(2025, 1, 15)
        assert all(r.status == InstallmentStatus.SCHEDULED for r in rows)
        assert all(r.kind == InstallmentKind.REGULAR for r in rows)
        assert all(r.loan_id == "LOAN001" for r in rows)
        assert len({r.id for r in rows}) == 12

    def test_zero_rate_schedule(self):
        """Test zero-rate schedule sums to principal with no interest"""
        terms = LoanTerms(
            principal=usd('1000.00'),
            annual_rate_percent=Decimal('0'),
            term_months=3,
            start_date=date(2024, 1, 1),
        )
        schedule = self.generator.generate("LOAN002", terms)

        assert [r.amount_due for r in schedule.installments] == [
            usd('333.33'), usd('333.33'), usd('333.34')
        ]
        assert schedule.total_interest.is_zero()

    def test_fee_added_to_each_row(self):
        """Test the flat fee becomes every row's fees portion"""
        terms = LoanTerms(
            principal=usd('1200.00'),
            annual_rate_percent=Decimal('0'),
            term_months=12,
            start_date=date(2024, 1, 1),
            fee_per_installment=usd('5.00'),
        )
        schedule = self.generator.generate("LOAN003", terms)

        assert all(r.fees_portion == usd('5.00') for r in schedule.installments)
        assert all(r.amount_due == usd('105.00') for r in schedule.installments)
        assert schedule.total_fees == usd('60.00')

    def test_invalid_terms_rejected(self):
        """Test out-of-range terms raise InvalidLoanTerms"""
        bad_terms = [
            LoanTerms(usd('0.00'), Decimal('6'), 12, date(2024, 1, 1)),
            LoanTerms(usd('1000.00'), Decimal('6'), 0, date(2024, 1, 1)),
            LoanTerms(usd('1000.00'), Decimal('6'), 481, date(2024, 1, 1)),
            LoanTerms(usd('1000.00'), Decimal('-1'), 12, date(2024, 1, 1)),
            LoanTerms(usd('1000.00'), Decimal('30.5'), 12, date(2024, 1, 1)),
            LoanTerms(usd('1000.00'), Decimal('6'), 12, date(2024, 1, 1),
                      fee_per_installment=Money(Decimal('1.00'), Currency.EUR)),
        ]
        for terms in bad_terms:
            with pytest.raises(InvalidLoanTerms):
                self.generator.generate("BAD", terms)

    def test_zero_rate_long_term_has_no_empty_rows(self):
        """Test 100.00 over 480 months keeps every row positive"""
        terms = LoanTerms(usd('100.00'), Decimal('0'), 480, date(2024, 1, 1))
        schedule = self.generator.generate("LOAN004", terms)
        rows = schedule.installments

        assert schedule.monthly_payment == usd('0.20')
        assert all(r.amount_due == usd('0.20') for r in rows[:-1])
        assert rows[-1].amount_due == usd('4.20')
        assert Money.total((r.principal_portion for r in rows), Currency.USD) == usd('100.00')

    def test_principal_too_small_for_term(self):
        """Test terms needing less than a cent per installment are rejected"""
        with pytest.raises(InvalidLoanTerms):
            self.generator.generate("BAD", LoanTerms(usd('4.79'), Decimal('0'), 480, date(2024, 1, 1)))
        schedule = self.generator.generate("MIN", LoanTerms(usd('4.80'), Decimal('0'), 480, date(2024, 1, 1)))
        assert all(r.amount_due == usd('0.01') for r in schedule.installments)

    def test_term_limit_boundaries(self):
        """Test the maximum term and rate are accepted"""
        terms = LoanTerms(usd('480000.00'), Decimal('30'), 480, date(2024, 1, 1))
        schedule = self.generator.generate("LONG", terms)

        assert len(schedule.installments) == 480
        assert Money.total(
            (r.principal_portion for r in schedule.installments), Currency.USD
        ) == usd('480000.00')


class TestInstallment:
    """Test installment row invariants and transitions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.row = Installment(
            id="INST001",
            loan_id="LOAN001",
            sequence_index=1,
            due_date=date(2024, 2, 15),
            principal_portion=usd('8106.64'),
            interest_portion=usd('500.00'),
            fees_portion=usd('0.00'),
            amount_due=usd('8606.64'),
        )
        self.now = datetime(2024, 2, 10, tzinfo=timezone.utc)

    def test_amount_due_invariant(self):
        """Test mismatched components are rejected on construction"""
        with pytest.raises(ValueError, match="does not equal"):
            Installment(
                id="BAD", loan_id="LOAN001", sequence_index=1, due_date=date(2024, 2, 15),
                principal_portion=usd('100.00'), interest_portion=usd('1.00'),
                fees_portion=usd('0.00'), amount_due=usd('100.00'),
            )

    def test_mark_paid(self):
        """Test paying returns a new PAID row and leaves the original alone"""
        paid = self.row.mark_paid(self.now, PaymentMethod.ACH, reference="REF1")

        assert paid.status == InstallmentStatus.PAID
        assert paid.paid_amount == usd('8606.64')
        assert paid.paid_at == self.now
        assert paid.payment_method == PaymentMethod.ACH
        assert paid.reference == "REF1"
        assert self.row.is_scheduled
        assert self.row.paid_amount is None

    def test_status_is_monotonic(self):
        """Test a settled row can be neither paid, cancelled nor recast again"""
        paid = self.row.mark_paid(self.now)
        cancelled = self.row.cancel()

        for row in (paid, cancelled):
            with pytest.raises(ValueError):
                row.mark_paid(self.now)
            with pytest.raises(ValueError):
                row.cancel()
            with pytest.raises(ValueError):
                row.rebalance(usd('1.00'), usd('1.00'))

    def test_rebalance_keeps_fees(self):
        """Test recasting a row recomputes amount due around its fee"""
        row = Installment(
            id="INST002", loan_id="LOAN001", sequence_index=2, due_date=date(2024, 3, 15),
            principal_portion=usd('100.00'), interest_portion=usd('10.00'),
            fees_portion=usd('5.00'), amount_due=usd('115.00'),
        )
        recast = row.rebalance(usd('80.00'), usd('8.00'))

        assert recast.amount_due == usd('93.00')
        assert recast.fees_portion == usd('5.00')

    def test_ordering(self):
        """Test ordering by due date then sequence index"""
        later = Installment(
            id="INST013", loan_id="LOAN001", sequence_index=13, due_date=date(2024, 2, 15),
            principal_portion=usd('1.00'), interest_portion=usd('0.00'),
            fees_portion=usd('0.00'), amount_due=usd('1.00'),
        )
        earlier_date = Installment(
            id="INST000", loan_id="LOAN001", sequence_index=20, due_date=date(2024, 1, 15),
            principal_portion=usd('1.00'), interest_portion=usd('0.00'),
            fees_portion=usd('0.00'), amount_due=usd('1.00'),
        )

        assert [r.id for r in ordered([later, self.row, earlier_date])] == [
            "INST000", "INST001", "INST013"
        ]
        assert next_sequence_index([later, self.row, earlier_date]) == 21
        assert next_sequence_index([]) == 1
