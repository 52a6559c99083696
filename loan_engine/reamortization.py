"""
Re-amortization Module

Recomputes the unpaid part of a schedule after principal has been prepaid.
The number of remaining installments is kept (a recast, not a term
shortening); only their size and principal/interest split change. When the
prepayment clears the balance the remaining installments are cancelled and
the loan is completed.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

from .config import EngineConfig, get_config
from .currency import Money
from .loans import Loan, LoanLifecycle
from .schedule import (
    Installment, InstallmentKind, amortize, annuity_payment, next_sequence_index,
    ordered, outstanding_balance
)

logger = logging.getLogger("loan_engine.reamortization")


@dataclass(frozen=True)
class Reamortization:
    """Outcome of a recast"""
    loan: Loan
    installments: List[Installment]
    outstanding_balance: Money
    previous_payment: Money
    remaining_term: int
    completed: bool = False
    cancelled_ids: List[str] = field(default_factory=list)
    balloon: Optional[Installment] = None

    @property
    def new_payment(self) -> Money:
        return self.loan.current_monthly_payment

    def audit_payload(self) -> Dict[str, Any]:
        payload = {
            "outstandingBalance": str(self.outstanding_balance.amount),
            "previousMonthlyPayment": str(self.previous_payment.amount),
            "newMonthlyPayment": str(self.new_payment.amount),
            "remainingTerm": self.remaining_term,
            "cancelledInstallments": list(self.cancelled_ids),
        }
        if self.balloon is not None:
            payload["balloonInstallmentId"] = self.balloon.id
            payload["balloonAmount"] = str(self.balloon.amount_due.amount)
        return payload


class Reamortizer:
    """
    Rebuilds the remaining scheduled installments around the current
    outstanding balance
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()

    def reamortize(self, loan: Loan, installments: List[Installment],
                   anchor: Optional[Installment] = None,
                   now: Optional[datetime] = None) -> Reamortization:
        """
        Recast the scheduled installments due after ``anchor``

        Args:
            loan: Loan being recast; not modified
            installments: Full installment set, including any PAID prepayment
                row already recorded; not modified
            anchor: Installment just paid. Only scheduled rows ordered after
                it are recast; all scheduled rows when omitted.
            now: Timestamp for the loan update

        Returns:
            Reamortization with the updated loan and full installment set
        """
        now = now or datetime.now(timezone.utc)
        working = ordered(installments)
        tolerance = Money(self.config.payoff_tolerance_amount, loan.currency)
        outstanding = outstanding_balance(loan, working)
        previous_payment = loan.current_monthly_payment

        remaining = [
            installment for installment in working
            if installment.is_scheduled
            and (anchor is None or installment.sort_key > anchor.sort_key)
        ]

        if not remaining:
            if outstanding <= tolerance:
                loan = LoanLifecycle.complete(loan, now)
                logger.info(f"Loan {loan.id} repaid in full; nothing left to recast")
                return Reamortization(loan, working, outstanding, previous_payment, 0, completed=True)

            balloon = self._balloon(loan, working, outstanding)
            working.append(balloon)
            logger.info(
                f"Loan {loan.id} term exhausted with {outstanding.to_string()} outstanding; "
                f"balloon installment due {balloon.due_date.isoformat()}"
            )
            loan = replace(loan, updated_at=now)
            return Reamortization(loan, working, outstanding, previous_payment, 0, balloon=balloon)

        remaining_ids = {installment.id for installment in remaining}

        if outstanding <= tolerance:
            working = [i.cancel() if i.id in remaining_ids else i for i in working]
            loan = replace(loan, current_monthly_payment=Money.zero(loan.currency))
            loan = LoanLifecycle.complete(loan, now)
            logger.info(f"Loan {loan.id} paid off early; cancelled {len(remaining)} installments")
            return Reamortization(
                loan, working, outstanding, previous_payment, len(remaining),
                completed=True, cancelled_ids=[installment.id for installment in remaining],
            )

        # Fewer minor units outstanding than rows left: recast over as many
        # rows as there are units and cancel the rest
        capacity = int(outstanding.amount / loan.currency.quantum)
        surplus = remaining[capacity:]
        if surplus:
            surplus_ids = {installment.id for installment in surplus}
            working = [i.cancel() if i.id in surplus_ids else i for i in working]
            remaining = remaining[:capacity]
            logger.info(f"Loan {loan.id}: cancelled {len(surplus)} installments left with nothing to repay")

        rate = loan.monthly_rate
        new_payment = annuity_payment(outstanding, rate, len(remaining))
        splits = dict(zip(
            (installment.id for installment in remaining),
            amortize(outstanding, rate, new_payment, len(remaining)),
        ))
        working = [
            i.rebalance(*splits[i.id]) if i.id in splits else i
            for i in working
        ]
        loan = replace(loan, current_monthly_payment=new_payment, updated_at=now)

        logger.info(
            f"Recast loan {loan.id}: {outstanding.to_string()} over {len(remaining)} installments, "
            f"payment {previous_payment.to_string()} -> {new_payment.to_string()}"
        )
        return Reamortization(
            loan, working, outstanding, previous_payment, len(remaining),
            cancelled_ids=[installment.id for installment in surplus],
        )

    def _balloon(self, loan: Loan, installments: List[Installment],
                 outstanding: Money) -> Installment:
        zero = Money.zero(loan.currency)
        last_due = max((i.due_date for i in installments), default=loan.start_date)
        return Installment(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            sequence_index=next_sequence_index(installments),
            due_date=last_due + timedelta(days=self.config.balloon_offset_days),
            principal_portion=outstanding,
            interest_portion=zero,
            fees_portion=zero,
            amount_due=outstanding,
            kind=InstallmentKind.BALLOON,
        )
