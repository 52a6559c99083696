"""
Reporting Module

Read-only figures over a loan's installments: a per-loan schedule summary and
payment statistics (totals and counts per installment status) over any set of
installments, optionally limited to a due-date range.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from .config import get_config
from .currency import Currency, Money
from .loans import Loan, LoanStatus
from .schedule import Installment, InstallmentStatus, ordered, outstanding_balance


@dataclass
class ScheduleSummary:
    """Repayment position of one loan"""
    loan_id: str
    status: LoanStatus
    principal: Money
    current_monthly_payment: Money
    outstanding_balance: Money
    principal_paid: Money
    interest_paid: Money
    fees_paid: Money
    total_paid: Money
    installments_total: int
    installments_paid: int
    installments_scheduled: int
    installments_cancelled: int
    next_due_date: Optional[date] = None
    next_amount_due: Optional[Money] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'status': self.status.value,
            'currency': self.principal.currency.code,
            'principal': str(self.principal.amount),
            'current_monthly_payment': str(self.current_monthly_payment.amount),
            'outstanding_balance': str(self.outstanding_balance.amount),
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'fees_paid': str(self.fees_paid.amount),
            'total_paid': str(self.total_paid.amount),
            'installments_total': self.installments_total,
            'installments_paid': self.installments_paid,
            'installments_scheduled': self.installments_scheduled,
            'installments_cancelled': self.installments_cancelled,
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'next_amount_due': str(self.next_amount_due.amount) if self.next_amount_due else None,
        }


def summarize_schedule(loan: Loan, installments: Iterable[Installment]) -> ScheduleSummary:
    """
    Summarize a loan's repayment position

    Args:
        loan: Loan the installments belong to
        installments: Full installment set

    Returns:
        ScheduleSummary with paid totals, counts per status and the next
        scheduled installment
    """
    rows = ordered(installments)
    currency = loan.currency
    paid = [i for i in rows if i.is_paid]
    scheduled = [i for i in rows if i.is_scheduled]
    cancelled = [i for i in rows if i.status == InstallmentStatus.CANCELLED]

    next_row = scheduled[0] if scheduled else None

    return ScheduleSummary(
        loan_id=loan.id,
        status=loan.status,
        principal=loan.principal,
        current_monthly_payment=loan.current_monthly_payment,
        outstanding_balance=outstanding_balance(loan, rows),
        principal_paid=Money.total((i.principal_portion for i in paid), currency),
        interest_paid=Money.total((i.interest_portion for i in paid), currency),
        fees_paid=Money.total((i.fees_portion for i in paid), currency),
        total_paid=Money.total((i.paid_amount for i in paid), currency),
        installments_total=len(rows),
        installments_paid=len(paid),
        installments_scheduled=len(scheduled),
        installments_cancelled=len(cancelled),
        next_due_date=next_row.due_date if next_row else None,
        next_amount_due=next_row.amount_due if next_row else None,
    )


def payment_statistics(installments: Iterable[Installment],
                       date_from: Optional[date] = None,
                       date_to: Optional[date] = None,
                       as_of: Optional[date] = None,
                       currency: Optional[Currency] = None) -> Dict[str, Any]:
    """
    Totals and counts of installments per status

    Args:
        installments: Installments to report on (one currency)
        date_from: Only rows due on or after this date
        date_to: Only rows due on or before this date
        as_of: Scheduled rows due before this date count as overdue
            (defaults to today)
        currency: Currency of the totals; the configured default when the
            set is empty

    Returns:
        Dictionary of amount totals (as strings) and counts
    """
    as_of = as_of or date.today()
    rows: List[Installment] = [
        i for i in installments
        if (date_from is None or i.due_date >= date_from)
        and (date_to is None or i.due_date <= date_to)
    ]
    if currency is None:
        currency = rows[0].currency if rows else get_config().currency

    def total(selected: List[Installment]) -> Money:
        return Money.total((i.amount_due for i in selected), currency)

    paid = [i for i in rows if i.is_paid]
    scheduled = [i for i in rows if i.is_scheduled]
    overdue = [i for i in scheduled if i.due_date < as_of]
    cancelled = [i for i in rows if i.status == InstallmentStatus.CANCELLED]
    # Cancelled rows were never owed
    owed = paid + scheduled

    return {
        'currency': currency.code,
        'total_amount': str(total(owed).amount),
        'paid_amount': str(total(paid).amount),
        'scheduled_amount': str(total(scheduled).amount),
        'overdue_amount': str(total(overdue).amount),
        'total_count': len(owed),
        'paid_count': len(paid),
        'scheduled_count': len(scheduled),
        'overdue_count': len(overdue),
        'cancelled_count': len(cancelled),
    }
