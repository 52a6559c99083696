"""
Payment Application Module

Matches an incoming payment to the next due installment, settles it, and
turns any excess into a principal prepayment that triggers a recast.
Preconditions are checked before anything is touched; a rejected payment
leaves the loan and its installments exactly as they were.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditEventType, AuditRecord
from .config import EngineConfig, get_config
from .currency import Money
from .errors import (
    CurrencyMismatch, InsufficientPayment, InvalidLoanStatus, InvalidPaymentAmount,
    NoScheduledPayments
)
from .loans import Loan, LoanLifecycle
from .reamortization import Reamortization, Reamortizer
from .schedule import (
    Installment, InstallmentKind, InstallmentStatus, PaymentMethod,
    next_sequence_index, ordered, outstanding_balance
)

logger = logging.getLogger("loan_engine.payments")


@dataclass(frozen=True)
class PaymentIntent:
    """A payment presented by the host"""
    loan_id: str
    amount: Money
    payment_method: PaymentMethod
    reference: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentApplication:
    """Everything one successful payment changed"""
    loan: Loan
    installments: List[Installment]
    intent: PaymentIntent
    matched: Installment
    excess_principal: Money
    unapplied_amount: Money
    outstanding_balance: Money
    prepayment: Optional[Installment] = None
    reamortization: Optional[Reamortization] = None
    completed: bool = False
    events: List[AuditRecord] = field(default_factory=list)

    def payment_payload(self) -> Dict[str, Any]:
        return {
            "amount": str(self.intent.amount.amount),
            "currency": self.intent.amount.currency.code,
            "paymentMethod": self.intent.payment_method.value,
            "reference": self.intent.reference,
            "extraPrincipalApplied": str(self.excess_principal.amount),
            "unappliedAmount": str(self.unapplied_amount.amount),
            "installmentId": self.matched.id,
            "outstandingBalance": str(self.outstanding_balance.amount),
        }


class PaymentMatcher:
    """Selects the single installment a payment must satisfy"""

    @staticmethod
    def match(installments: List[Installment]) -> Optional[Installment]:
        """The scheduled installment due earliest, or None when nothing is left"""
        scheduled = [i for i in installments if i.is_scheduled]
        if not scheduled:
            return None
        return min(scheduled, key=lambda installment: installment.sort_key)


class PaymentApplier:
    """
    Validates a payment and applies it to a loan's schedule
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 matcher: Optional[PaymentMatcher] = None,
                 reamortizer: Optional[Reamortizer] = None):
        self.config = config or get_config()
        self.matcher = matcher or PaymentMatcher()
        self.reamortizer = reamortizer or Reamortizer(self.config)

    def validate(self, loan: Loan, installments: List[Installment],
                 intent: PaymentIntent) -> Installment:
        """
        Check preconditions in order and return the matched installment

        Raises:
            InvalidLoanStatus: Loan is not approved or active
            NoScheduledPayments: Nothing left to collect
            CurrencyMismatch: Payment currency differs from the loan's
            InvalidPaymentAmount: Amount is zero or negative
            InsufficientPayment: Amount is below the matched amount due
        """
        if not LoanLifecycle.can_accept_payments(loan.status):
            raise InvalidLoanStatus(
                f"Loan {loan.id} is {loan.status.value}; only approved or active loans accept payments",
                loan_id=loan.id,
            )

        matched = self.matcher.match(installments)
        if matched is None:
            raise NoScheduledPayments(f"No scheduled payments found for loan {loan.id}", loan_id=loan.id)

        if intent.amount.currency != loan.currency:
            raise CurrencyMismatch(
                f"Payment in {intent.amount.currency.code} for a {loan.currency.code} loan",
                loan_id=loan.id,
            )

        if not intent.amount.is_positive():
            raise InvalidPaymentAmount(
                f"Payment amount must be positive, got {intent.amount.to_string()}",
                loan_id=loan.id,
            )

        if intent.amount < matched.amount_due:
            raise InsufficientPayment(matched.amount_due, intent.amount, loan_id=loan.id)

        return matched

    def apply(self, loan: Loan, installments: List[Installment],
              intent: PaymentIntent, now: Optional[datetime] = None) -> PaymentApplication:
        """
        Apply a payment to the next due installment

        Args:
            loan: Loan receiving the payment; not modified
            installments: Full installment set; not modified
            intent: Payment to apply
            now: Payment timestamp (defaults to current UTC time)

        Returns:
            PaymentApplication with the updated loan and full installment set

        Raises:
            LoanEngineError: Any failed precondition, see ``validate``
        """
        now = now or datetime.now(timezone.utc)
        matched = self.validate(loan, installments, intent)

        paid = matched.mark_paid(
            paid_at=now,
            payment_method=intent.payment_method,
            reference=intent.reference,
            notes=intent.notes,
        )
        working = [paid if i.id == matched.id else i for i in ordered(installments)]

        excess = intent.amount - matched.amount_due
        balance_after_match = outstanding_balance(loan, working)
        unapplied = Money.zero(loan.currency)
        if excess > balance_after_match:
            # Never prepay more principal than is owed; the rest goes back to the host
            unapplied = excess - balance_after_match
            excess = balance_after_match

        prepayment = None
        reamortization = None
        completed = False

        if excess.is_positive():
            prepayment = self._prepayment_row(loan, working, paid, intent, excess, now)
            working.append(prepayment)
            reamortization = self.reamortizer.reamortize(loan, working, anchor=paid, now=now)
            loan = reamortization.loan
            working = reamortization.installments
            completed = reamortization.completed
        else:
            balance = outstanding_balance(loan, working)
            if not any(i.is_scheduled for i in working):
                tolerance = Money(self.config.payoff_tolerance_amount, loan.currency)
                if balance <= tolerance:
                    loan = LoanLifecycle.complete(loan, now)
                    completed = True
                else:
                    logger.warning(
                        f"Loan {loan.id} has {balance.to_string()} outstanding "
                        f"but no scheduled installments"
                    )

        application = PaymentApplication(
            loan=loan,
            installments=ordered(working),
            intent=intent,
            matched=paid,
            excess_principal=excess,
            unapplied_amount=unapplied,
            outstanding_balance=outstanding_balance(loan, working),
            prepayment=prepayment,
            reamortization=reamortization,
            completed=completed,
        )
        return replace(application, events=self._audit_records(application))

    def _prepayment_row(self, loan: Loan, installments: List[Installment],
                        anchor: Installment, intent: PaymentIntent,
                        excess: Money, now: datetime) -> Installment:
        zero = Money.zero(loan.currency)
        return Installment(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            sequence_index=next_sequence_index(installments),
            due_date=anchor.due_date,
            principal_portion=excess,
            interest_portion=zero,
            fees_portion=zero,
            amount_due=excess,
            status=InstallmentStatus.PAID,
            kind=InstallmentKind.PREPAYMENT,
            paid_amount=excess,
            paid_at=now,
            payment_method=intent.payment_method,
            reference=intent.reference or self.config.prepayment_reference,
            notes=intent.notes,
        )

    @staticmethod
    def _audit_records(application: PaymentApplication) -> List[AuditRecord]:
        loan_id = application.loan.id
        records = [AuditRecord(AuditEventType.PAYMENT_PROCESSED, loan_id, application.payment_payload())]
        reamortization = application.reamortization
        if reamortization is not None and not reamortization.completed:
            records.append(AuditRecord(
                AuditEventType.LOAN_REAMORTIZED, loan_id, reamortization.audit_payload()
            ))
        if application.completed:
            records.append(AuditRecord(AuditEventType.LOAN_COMPLETED, loan_id, {
                "completedBy": "payment",
                "installmentId": application.matched.id,
                "cancelledInstallments": list(reamortization.cancelled_ids) if reamortization else [],
            }))
        return records
