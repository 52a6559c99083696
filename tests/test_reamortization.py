"""
Test suite for re-amortization

Recasts keep the number of remaining installments and close the balance to
zero on the last one; a cleared balance cancels what is left, and a balance
left over after the term produces a balloon installment.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from loan_engine.config import EngineConfig
from loan_engine.currency import Money, Currency
from loan_engine.engine import LoanEngine
from loan_engine.loans import LoanLifecycle, LoanStatus, LoanTerms
from loan_engine.reamortization import Reamortizer
from loan_engine.schedule import (
    Installment, InstallmentKind, InstallmentStatus, outstanding_balance
)


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


def prepayment(loan_id: str, amount: Money, due_date: date, sequence_index: int,
               now: datetime) -> Installment:
    return Installment(
        id=f"PRE{sequence_index}",
        loan_id=loan_id,
        sequence_index=sequence_index,
        due_date=due_date,
        principal_portion=amount,
        interest_portion=Money.zero(amount.currency),
        fees_portion=Money.zero(amount.currency),
        amount_due=amount,
        status=InstallmentStatus.PAID,
        kind=InstallmentKind.PREPAYMENT,
        paid_amount=amount,
        paid_at=now,
    )


class TestReamortizer:
    """Test recasting the remaining schedule"""

    def setup_method(self):
        """Set up test fixtures"""
        self.reamortizer = Reamortizer()
        self.now = datetime(2024, 2, 10, tzinfo=timezone.utc)
        terms = LoanTerms(
            principal=usd('100000.00'),
            annual_rate_percent=Decimal('6'),
            term_months=12,
            start_date=date(2024, 1, 15),
        )
        loan, self.installments = LoanEngine().generate_schedule(terms, loan_id="LOAN001")
        self.loan = LoanLifecycle.activate(LoanLifecycle.approve(loan))

    def test_recast_after_prepayment(self):
        """Test all scheduled rows are recast around the lower balance"""
        rows = self.installments + [
            prepayment("LOAN001", usd('20000.00'), date(2024, 1, 20), 13, self.now)
        ]
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        assert result.outstanding_balance == usd('80000.00')
        assert result.remaining_term == 12
        assert result.previous_payment == usd('8606.64')
        assert result.new_payment < usd('8606.64')
        assert result.loan.current_monthly_payment == result.new_payment
        assert not result.completed

        scheduled = [i for i in result.installments if i.is_scheduled]
        assert len(scheduled) == 12
        assert Money.total((i.principal_portion for i in scheduled), Currency.USD) == usd('80000.00')
        assert scheduled[0].interest_portion == usd('400.00')
        # Due dates and identities survive a recast
        assert [i.id for i in scheduled] == [i.id for i in self.installments]
        assert [i.due_date for i in scheduled] == [i.due_date for i in self.installments]

    def test_anchor_limits_recast(self):
        """Test only rows after the anchor are recast"""
        paid = self.installments[0].mark_paid(self.now)
        rows = [paid] + self.installments[1:] + [
            prepayment("LOAN001", usd('10000.00'), paid.due_date, 13, self.now)
        ]
        result = self.reamortizer.reamortize(self.loan, rows, anchor=paid, now=self.now)

        assert result.remaining_term == 11
        assert result.outstanding_balance == usd('81893.36')
        assert result.installments[0] == paid

    def test_payoff_cancels_remaining(self):
        """Test a cleared balance cancels the remaining rows and completes the loan"""
        rows = self.installments + [
            prepayment("LOAN001", usd('100000.00'), date(2024, 1, 20), 13, self.now)
        ]
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        assert result.completed
        assert result.loan.status == LoanStatus.COMPLETED
        assert result.loan.current_monthly_payment.is_zero()
        assert len(result.cancelled_ids) == 12
        assert all(
            i.status == InstallmentStatus.CANCELLED
            for i in result.installments if i.kind == InstallmentKind.REGULAR
        )
        assert result.audit_payload()["cancelledInstallments"] == result.cancelled_ids

    def test_balance_within_tolerance_counts_as_paid(self):
        """Test a remaining cent is within the payoff tolerance"""
        rows = self.installments + [
            prepayment("LOAN001", usd('99999.99'), date(2024, 1, 20), 13, self.now)
        ]
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        assert result.completed
        assert result.outstanding_balance == usd('0.01')

    def test_tiny_balance_spread_over_fewer_rows(self):
        """Test rows that would be left with nothing to repay are cancelled"""
        rows = self.installments + [
            prepayment("LOAN001", usd('99999.95'), date(2024, 1, 20), 13, self.now)
        ]
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        scheduled = [i for i in result.installments if i.is_scheduled]
        assert not result.completed
        assert result.remaining_term == 5
        assert len(result.cancelled_ids) == 7
        assert [i.id for i in scheduled] == [i.id for i in self.installments[:5]]
        assert all(i.amount_due.is_positive() for i in scheduled)
        assert Money.total((i.principal_portion for i in scheduled), Currency.USD) == usd('0.05')

    def test_balloon_when_term_exhausted(self):
        """Test a balance left with nothing scheduled becomes a balloon row"""
        rows = [i.mark_paid(self.now) for i in self.installments]
        # Pretend the last row settled less principal than scheduled
        last = rows[-1]
        rows[-1] = Installment(
            id=last.id, loan_id=last.loan_id, sequence_index=last.sequence_index,
            due_date=last.due_date, principal_portion=last.principal_portion - usd('250.00'),
            interest_portion=last.interest_portion, fees_portion=last.fees_portion,
            amount_due=last.amount_due - usd('250.00'), status=InstallmentStatus.PAID,
        )
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        balloon = result.balloon
        assert balloon is not None
        assert balloon.kind == InstallmentKind.BALLOON
        assert balloon.is_scheduled
        assert balloon.amount_due == usd('250.00')
        assert balloon.due_date == last.due_date + timedelta(days=30)
        assert balloon.sequence_index == 13
        assert not result.completed
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.audit_payload()["balloonAmount"] == "250.00"

    def test_balloon_offset_configurable(self):
        """Test the balloon due date follows configuration"""
        reamortizer = Reamortizer(EngineConfig(balloon_offset_days=10))
        rows = [i.mark_paid(self.now) for i in self.installments[:-1]] + [self.installments[-1].cancel()]
        result = reamortizer.reamortize(self.loan, rows, now=self.now)

        assert result.balloon.due_date == self.installments[-1].due_date + timedelta(days=10)
        assert result.balloon.amount_due == self.installments[-1].principal_portion

    def test_nothing_left_completes(self):
        """Test a fully repaid loan with nothing scheduled is completed"""
        rows = [i.mark_paid(self.now) for i in self.installments]
        result = self.reamortizer.reamortize(self.loan, rows, now=self.now)

        assert result.completed
        assert outstanding_balance(result.loan, result.installments).is_zero()

    def test_inputs_not_mutated(self):
        """Test the loan and installment list passed in are left alone"""
        rows = self.installments + [
            prepayment("LOAN001", usd('20000.00'), date(2024, 1, 20), 13, self.now)
        ]
        before = list(rows)
        self.reamortizer.reamortize(self.loan, rows, now=self.now)

        assert rows == before
        assert self.loan.current_monthly_payment == usd('8606.64')
