"""
Loan Engine Module

Host-facing entry points: generate a schedule, apply a payment, recast a
loan. The engine is pure computation over the loan and installment set it is
handed and returns the full updated set; loading, saving and per-loan locking
belong to the host (see ``servicing``).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import logging
import uuid

from .audit import AuditEmitter, AuditEventType, AuditRecord
from .config import EngineConfig, get_config
from .currency import Money
from .errors import CurrencyMismatch, InvalidLoanStatus, LoanEngineError
from .loans import Loan, LoanLifecycle, LoanStatus, LoanTerms
from .logging_config import log_action
from .payments import PaymentApplication, PaymentApplier, PaymentIntent, PaymentMatcher
from .reamortization import Reamortization, Reamortizer
from .schedule import (
    Installment, InstallmentKind, InstallmentStatus, ScheduleGenerator,
    next_sequence_index, ordered, outstanding_balance
)

logger = logging.getLogger("loan_engine.engine")


@dataclass
class EngineResult:
    """Outcome of ``apply_payment`` or ``reamortize``

    On rejection ``error`` is set and ``loan``/``installments`` are the
    unchanged inputs.
    """
    loan: Optional[Loan]
    installments: List[Installment]
    error: Optional[LoanEngineError] = None
    application: Optional[PaymentApplication] = None
    reamortization: Optional[Reamortization] = None
    events: List[AuditRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def loan_status(self) -> Optional[LoanStatus]:
        return self.loan.status if self.loan else None


def schedule_generated_record(loan: Loan, installments: List[Installment]) -> AuditRecord:
    return AuditRecord(AuditEventType.SCHEDULE_GENERATED, loan.id, {
        "principal": str(loan.principal.amount),
        "currency": loan.currency.code,
        "annualRatePercent": str(loan.annual_rate_percent),
        "termMonths": loan.term_months,
        "monthlyPayment": str(loan.current_monthly_payment.amount),
        "totalInterest": str(loan.total_interest.amount),
        "installments": len(installments),
    })


class LoanEngine:
    """
    Loan amortization and payment application engine

    Built with an AuditEmitter, records are emitted as soon as an operation
    succeeds. Hosts that persist first should leave it out and emit
    ``EngineResult.events`` after their write commits.
    """

    def __init__(self, audit: Optional[AuditEmitter] = None,
                 config: Optional[EngineConfig] = None):
        self.config = config or get_config()
        self.audit = audit
        self.generator = ScheduleGenerator(self.config)
        self.matcher = PaymentMatcher()
        self.reamortizer = Reamortizer(self.config)
        self.applier = PaymentApplier(self.config, self.matcher, self.reamortizer)

    def _emit(self, records: List[AuditRecord]) -> None:
        if self.audit is not None and self.config.enable_audit_logging:
            self.audit.emit_all(records)

    def generate_schedule(self, terms: LoanTerms, loan_id: Optional[str] = None,
                          now: Optional[datetime] = None) -> Tuple[Loan, List[Installment]]:
        """
        Create a pending loan and its repayment schedule

        Args:
            terms: Principal, rate, term and start date
            loan_id: Identifier to use (generated when omitted)
            now: Creation timestamp

        Returns:
            (loan, installments) with the loan in PENDING status

        Raises:
            InvalidLoanTerms: If the terms are out of range
        """
        now = now or datetime.now(timezone.utc)
        loan_id = loan_id or str(uuid.uuid4())

        schedule = self.generator.generate(loan_id, terms)
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            principal=terms.principal,
            annual_rate_percent=terms.annual_rate_percent,
            term_months=terms.term_months,
            start_date=terms.start_date,
            current_monthly_payment=schedule.monthly_payment,
            status=LoanLifecycle.initial_status(),
            fee_per_installment=terms.fee_per_installment,
            total_interest=schedule.total_interest,
            total_amount=terms.principal + schedule.total_interest + schedule.total_fees,
        )

        log_action(logger, "info", "Generated repayment schedule", loan_id=loan.id,
                   action="generate_schedule",
                   extra={"monthly_payment": str(schedule.monthly_payment.amount),
                          "installments": len(schedule.installments)})
        self._emit([schedule_generated_record(loan, schedule.installments)])
        return loan, schedule.installments

    def apply_payment(self, loan: Loan, installments: List[Installment],
                      intent: PaymentIntent, now: Optional[datetime] = None) -> EngineResult:
        """
        Apply a payment to the loan's next due installment

        Rejections (wrong status, nothing scheduled, wrong currency,
        insufficient amount) come back in ``EngineResult.error`` with the
        inputs untouched.
        """
        try:
            application = self.applier.apply(loan, installments, intent, now)
        except LoanEngineError as exc:
            log_action(logger, "warning", f"Payment rejected: {exc.message}",
                       loan_id=loan.id, action="apply_payment",
                       extra={"code": exc.code, "amount": str(intent.amount.amount)})
            return EngineResult(loan=loan, installments=list(installments), error=exc)

        log_action(logger, "info", "Payment applied", loan_id=loan.id, action="apply_payment",
                   extra={"amount": str(intent.amount.amount),
                          "extra_principal": str(application.excess_principal.amount),
                          "status": application.loan.status.value})
        self._emit(application.events)
        return EngineResult(
            loan=application.loan,
            installments=application.installments,
            application=application,
            reamortization=application.reamortization,
            events=application.events,
        )

    def reamortize(self, loan: Loan, installments: List[Installment],
                   extra_principal: Optional[Money] = None,
                   reference: Optional[str] = None,
                   now: Optional[datetime] = None) -> EngineResult:
        """
        Administrative recast of every scheduled installment

        Args:
            loan: Approved or active loan
            installments: Full installment set
            extra_principal: Optional principal reduction to record first as
                a paid prepayment row; capped at the outstanding balance
            reference: Reference for that row
            now: Timestamp for the change
        """
        now = now or datetime.now(timezone.utc)
        try:
            working = self._record_extra_principal(loan, installments, extra_principal, reference, now)
            reamortization = self.reamortizer.reamortize(loan, working, anchor=None, now=now)
        except LoanEngineError as exc:
            log_action(logger, "warning", f"Recast rejected: {exc.message}",
                       loan_id=loan.id, action="reamortize", extra={"code": exc.code})
            return EngineResult(loan=loan, installments=list(installments), error=exc)

        events = []
        if reamortization.completed:
            events.append(AuditRecord(AuditEventType.LOAN_COMPLETED, loan.id, {
                "completedBy": "recast",
                "cancelledInstallments": list(reamortization.cancelled_ids),
            }))
        else:
            events.append(AuditRecord(
                AuditEventType.LOAN_REAMORTIZED, loan.id, reamortization.audit_payload()
            ))

        log_action(logger, "info", "Loan recast", loan_id=loan.id, action="reamortize",
                   extra={"new_payment": str(reamortization.new_payment.amount),
                          "remaining_term": reamortization.remaining_term})
        self._emit(events)
        return EngineResult(
            loan=reamortization.loan,
            installments=reamortization.installments,
            reamortization=reamortization,
            events=events,
        )

    def _record_extra_principal(self, loan: Loan, installments: List[Installment],
                                extra_principal: Optional[Money], reference: Optional[str],
                                now: datetime) -> List[Installment]:
        if not LoanLifecycle.can_accept_payments(loan.status):
            raise InvalidLoanStatus(
                f"Loan {loan.id} is {loan.status.value}; only approved or active loans can be recast",
                loan_id=loan.id,
            )

        working = ordered(installments)
        if extra_principal is None or not extra_principal.is_positive():
            return working

        if extra_principal.currency != loan.currency:
            raise CurrencyMismatch(
                f"Prepayment in {extra_principal.currency.code} for a {loan.currency.code} loan",
                loan_id=loan.id,
            )

        amount = min(extra_principal, outstanding_balance(loan, working))
        if not amount.is_positive():
            return working

        zero = Money.zero(loan.currency)
        working.append(Installment(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            sequence_index=next_sequence_index(working),
            due_date=now.date(),
            principal_portion=amount,
            interest_portion=zero,
            fees_portion=zero,
            amount_due=amount,
            status=InstallmentStatus.PAID,
            kind=InstallmentKind.PREPAYMENT,
            paid_amount=amount,
            paid_at=now,
            reference=reference or self.config.prepayment_reference,
        ))
        return working
