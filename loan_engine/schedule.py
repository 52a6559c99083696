"""
Repayment Schedule Module

Installment records, the annuity math and the generator that builds a new
loan's schedule. Installments are replaced rather than edited: every change
goes through a method returning a new row, so the amount-due invariant is
re-checked on each mutation.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Iterable, List, Optional, Tuple
import calendar
import logging
import uuid

from .config import EngineConfig, get_config
from .currency import Money, Currency
from .loans import Loan, LoanTerms

logger = logging.getLogger("loan_engine.schedule")


class InstallmentStatus(Enum):
    """Installment states. Never returns to SCHEDULED once left."""
    SCHEDULED = "scheduled"
    PAID = "paid"
    CANCELLED = "cancelled"


class InstallmentKind(Enum):
    """Why an installment row exists"""
    REGULAR = "regular"          # Generated with the original schedule
    PREPAYMENT = "prepayment"    # Principal-only reduction from an overpayment
    BALLOON = "balloon"          # Residual balance after the term ran out


class PaymentMethod(Enum):
    """Accepted payment channels"""
    BANK_TRANSFER = "bank_transfer"
    ACH = "ach"
    WIRE = "wire"
    CHECK = "check"
    CASH = "cash"


@dataclass
class Installment:
    """One obligation within a loan's repayment schedule"""
    id: str
    loan_id: str
    sequence_index: int
    due_date: date
    principal_portion: Money
    interest_portion: Money
    fees_portion: Money
    amount_due: Money
    status: InstallmentStatus = InstallmentStatus.SCHEDULED
    kind: InstallmentKind = InstallmentKind.REGULAR

    # Set only on transition to PAID
    paid_amount: Optional[Money] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        components = self.principal_portion + self.interest_portion + self.fees_portion
        if components != self.amount_due:
            raise ValueError(f"Amount due {self.amount_due.to_string()} does not equal "
                             f"principal {self.principal_portion.to_string()} + "
                             f"interest {self.interest_portion.to_string()} + "
                             f"fees {self.fees_portion.to_string()}")

    @property
    def sort_key(self):
        return (self.due_date, self.sequence_index)

    @property
    def currency(self) -> Currency:
        return self.amount_due.currency

    @property
    def is_scheduled(self) -> bool:
        return self.status == InstallmentStatus.SCHEDULED

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def _require_scheduled(self, action: str) -> None:
        if not self.is_scheduled:
            raise ValueError(f"Cannot {action} installment {self.id}: it is {self.status.value}")

    def mark_paid(self, paid_at: datetime, payment_method: Optional[PaymentMethod] = None,
                  reference: Optional[str] = None, notes: Optional[str] = None) -> 'Installment':
        """Settle exactly the amount due"""
        self._require_scheduled("pay")
        return replace(
            self,
            status=InstallmentStatus.PAID,
            paid_amount=self.amount_due,
            paid_at=paid_at,
            payment_method=payment_method,
            reference=reference,
            notes=notes,
        )

    def cancel(self) -> 'Installment':
        self._require_scheduled("cancel")
        return replace(self, status=InstallmentStatus.CANCELLED)

    def rebalance(self, principal: Money, interest: Money) -> 'Installment':
        """Replace the principal/interest split, keeping fees"""
        self._require_scheduled("rebalance")
        return replace(
            self,
            principal_portion=principal,
            interest_portion=interest,
            amount_due=principal + interest + self.fees_portion,
        )


@dataclass(frozen=True)
class GeneratedSchedule:
    """Result of schedule generation"""
    installments: List[Installment]
    monthly_payment: Money
    total_interest: Money
    total_fees: Money


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's end"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _exhausts_early(principal: Money, rate: Decimal, payment: Money, periods: int) -> bool:
    remaining = principal
    for _ in range(periods - 1):
        principal_part = payment - remaining * rate
        if principal_part >= remaining:
            return True
        if principal_part.is_positive():
            remaining = remaining - principal_part
    return False


def annuity_payment(principal: Money, rate: Decimal, periods: int) -> Money:
    """
    Level payment that amortizes ``principal`` over ``periods`` installments

    Standard formula P * r(1+r)^n / ((1+r)^n - 1); equal division when the
    rate is zero. Rounded down to the currency's minor unit, and lowered
    further if per-period interest rounding would repay the balance before
    the last installment, so the remainder always lands on the last row.

    Raises:
        ValueError: If ``periods`` is below one or ``principal`` is smaller
            than one minor unit per period
    """
    if periods < 1:
        raise ValueError(f"Cannot amortize over {periods} periods")
    quantum = principal.currency.quantum
    if principal.amount < quantum * periods:
        raise ValueError(f"Cannot amortize {principal.to_string()} over {periods} periods")

    if rate == Decimal('0'):
        exact = principal.amount / Decimal(periods)
    else:
        factor = (Decimal('1') + rate) ** periods
        exact = principal.amount * rate * factor / (factor - Decimal('1'))
    payment = Money(exact.quantize(quantum, rounding=ROUND_DOWN), principal.currency)

    step = Money(quantum, principal.currency)
    while payment > step and _exhausts_early(principal, rate, payment, periods):
        payment = payment - step
    return payment


def amortize(balance: Money, rate: Decimal, payment: Money,
             periods: int) -> List[Tuple[Money, Money]]:
    """
    Split ``periods`` level payments into (principal, interest) pairs

    Interest is charged on the running balance; the final pair takes
    whatever balance remains so the principal parts sum to ``balance``
    exactly.
    """
    splits = []
    remaining = balance
    for period in range(periods):
        interest = remaining * rate
        if period == periods - 1:
            principal = remaining
        else:
            principal = payment - interest
            if principal > remaining:
                principal = remaining
            elif principal.is_negative():
                principal = Money.zero(balance.currency)
        remaining = remaining - principal
        splits.append((principal, interest))
    return splits


def ordered(installments: Iterable[Installment]) -> List[Installment]:
    """Installments in processing order: earliest due first"""
    return sorted(installments, key=lambda installment: installment.sort_key)


def paid_principal(installments: Iterable[Installment], currency: Currency) -> Money:
    return Money.total(
        (i.principal_portion for i in installments if i.is_paid), currency
    )


def outstanding_balance(loan: Loan, installments: Iterable[Installment]) -> Money:
    """Original principal minus all principal paid to date"""
    return loan.principal - paid_principal(installments, loan.currency)


def next_sequence_index(installments: Iterable[Installment]) -> int:
    return max((i.sequence_index for i in installments), default=0) + 1


class ScheduleGenerator:
    """
    Builds the initial repayment schedule for a loan
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()

    def generate(self, loan_id: str, terms: LoanTerms) -> GeneratedSchedule:
        """
        Generate ``terms.term_months`` monthly installments

        Args:
            loan_id: Owning loan
            terms: Validated loan terms

        Returns:
            GeneratedSchedule with installments in due-date order

        Raises:
            InvalidLoanTerms: If the terms fail validation
        """
        terms.validate(self.config)

        rate = terms.monthly_rate
        payment = annuity_payment(terms.principal, rate, terms.term_months)
        fee = terms.fee_per_installment

        installments = []
        for index, (principal, interest) in enumerate(
                amortize(terms.principal, rate, payment, terms.term_months)):
            installments.append(Installment(
                id=str(uuid.uuid4()),
                loan_id=loan_id,
                sequence_index=index + 1,
                due_date=add_months(terms.start_date, index + 1),
                principal_portion=principal,
                interest_portion=interest,
                fees_portion=fee,
                amount_due=principal + interest + fee,
            ))

        total_interest = Money.total((i.interest_portion for i in installments), terms.currency)
        total_fees = Money.total((i.fees_portion for i in installments), terms.currency)

        logger.debug(
            f"Generated {len(installments)} installments for loan {loan_id}: "
            f"payment {payment.to_string()}, interest {total_interest.to_string()}"
        )

        return GeneratedSchedule(
            installments=installments,
            monthly_payment=payment,
            total_interest=total_interest,
            total_fees=total_fees,
        )
