"""
Loan Module

Loan terms, the loan record and the lifecycle state machine. Status changes
happen only through LoanLifecycle so the allowed transitions live in one
place instead of being re-checked at every call site.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .config import EngineConfig, get_config
from .currency import Money, Currency
from .errors import InvalidLoanTerms, InvalidStatusTransition
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Schedule generated, awaiting approval
    APPROVED = "approved"      # Approved, may receive payments
    ACTIVE = "active"          # In regular repayment
    COMPLETED = "completed"    # Fully repaid (terminal)
    DEFAULTED = "defaulted"    # In default (terminal)
    CANCELLED = "cancelled"    # Withdrawn before approval (terminal)


@dataclass(frozen=True)
class LoanTerms:
    """Terms a schedule is generated from"""
    principal: Money
    annual_rate_percent: Decimal        # e.g. Decimal('6') for 6% APR
    term_months: int
    start_date: date
    fee_per_installment: Optional[Money] = None

    def __post_init__(self):
        if not isinstance(self.annual_rate_percent, Decimal):
            object.__setattr__(self, 'annual_rate_percent', Decimal(str(self.annual_rate_percent)))
        if self.fee_per_installment is None:
            object.__setattr__(self, 'fee_per_installment', Money.zero(self.principal.currency))

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def monthly_rate(self) -> Decimal:
        return monthly_rate(self.annual_rate_percent)

    def validate(self, config: Optional[EngineConfig] = None) -> None:
        """
        Reject terms that cannot produce a schedule

        Raises:
            InvalidLoanTerms: On non-positive principal, a term outside
                1..max_term_months, a rate outside 0..max_annual_rate_percent
                or a fee in another currency
        """
        config = config or get_config()

        if not self.principal.is_positive():
            raise InvalidLoanTerms(f"Principal must be positive, got {self.principal.to_string()}")
        if not isinstance(self.term_months, int) or self.term_months < 1:
            raise InvalidLoanTerms(f"Term must be at least 1 month, got {self.term_months}")
        if self.term_months > config.max_term_months:
            raise InvalidLoanTerms(
                f"Term of {self.term_months} months exceeds maximum of {config.max_term_months}"
            )
        if self.principal.amount < self.currency.quantum * self.term_months:
            raise InvalidLoanTerms(
                f"Principal {self.principal.to_string()} is less than one minor unit "
                f"per installment over {self.term_months} months"
            )
        if self.annual_rate_percent < 0 or self.annual_rate_percent > config.max_annual_rate:
            raise InvalidLoanTerms(
                f"Annual rate {self.annual_rate_percent}% outside 0..{config.max_annual_rate}%"
            )
        if self.fee_per_installment.currency != self.currency:
            raise InvalidLoanTerms("Fee currency must match principal currency")
        if self.fee_per_installment.is_negative():
            raise InvalidLoanTerms("Fee must not be negative")


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Convert an annual percentage rate to a monthly fraction"""
    return annual_rate_percent / Decimal('100') / Decimal('12')


@dataclass
class Loan(StorageRecord):
    """A borrowing agreement and its current repayment state"""
    principal: Money
    annual_rate_percent: Decimal
    term_months: int
    start_date: date
    current_monthly_payment: Money
    status: LoanStatus = LoanStatus.PENDING
    fee_per_installment: Optional[Money] = None

    # Figures of the original schedule
    total_interest: Optional[Money] = None
    total_amount: Optional[Money] = None

    def __post_init__(self):
        zero_amount = Money.zero(self.principal.currency)
        if self.fee_per_installment is None:
            self.fee_per_installment = zero_amount
        if self.total_interest is None:
            self.total_interest = zero_amount
        if self.total_amount is None:
            self.total_amount = self.principal + self.total_interest

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def monthly_rate(self) -> Decimal:
        return monthly_rate(self.annual_rate_percent)

    @property
    def accepts_payments(self) -> bool:
        return LoanLifecycle.can_accept_payments(self.status)

    @property
    def is_closed(self) -> bool:
        return self.status in LoanLifecycle.TERMINAL


class LoanLifecycle:
    """
    Loan status state machine

    PENDING -> APPROVED -> ACTIVE -> {COMPLETED | DEFAULTED}
    PENDING -> CANCELLED
    APPROVED -> COMPLETED (payments are accepted while approved)
    """

    TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
        LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.CANCELLED}),
        LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE, LoanStatus.COMPLETED}),
        LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
        LoanStatus.COMPLETED: frozenset(),
        LoanStatus.DEFAULTED: frozenset(),
        LoanStatus.CANCELLED: frozenset(),
    }

    PAYABLE = frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE})
    TERMINAL = frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED})

    @staticmethod
    def initial_status() -> LoanStatus:
        return LoanStatus.PENDING

    @classmethod
    def can_accept_payments(cls, status: LoanStatus) -> bool:
        return status in cls.PAYABLE

    @classmethod
    def can_transition(cls, current: LoanStatus, target: LoanStatus) -> bool:
        return target in cls.TRANSITIONS[current]

    @classmethod
    def transition(cls, loan: Loan, target: LoanStatus,
                   now: Optional[datetime] = None) -> Loan:
        """
        Return a copy of the loan in the target status

        Raises:
            InvalidStatusTransition: If the move is not allowed from the
                loan's current status
        """
        if not cls.can_transition(loan.status, target):
            raise InvalidStatusTransition(
                f"Cannot move loan from {loan.status.value} to {target.value}",
                loan_id=loan.id,
            )
        return replace(loan, status=target, updated_at=now or datetime.now(timezone.utc))

    @classmethod
    def approve(cls, loan: Loan, now: Optional[datetime] = None) -> Loan:
        return cls.transition(loan, LoanStatus.APPROVED, now)

    @classmethod
    def activate(cls, loan: Loan, now: Optional[datetime] = None) -> Loan:
        return cls.transition(loan, LoanStatus.ACTIVE, now)

    @classmethod
    def complete(cls, loan: Loan, now: Optional[datetime] = None) -> Loan:
        return cls.transition(loan, LoanStatus.COMPLETED, now)

    @classmethod
    def mark_defaulted(cls, loan: Loan, now: Optional[datetime] = None) -> Loan:
        return cls.transition(loan, LoanStatus.DEFAULTED, now)

    @classmethod
    def cancel(cls, loan: Loan, now: Optional[datetime] = None) -> Loan:
        return cls.transition(loan, LoanStatus.CANCELLED, now)
