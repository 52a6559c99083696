"""
Loan Servicing Module

Reference host for the engine. Every mutating operation holds the loan's lock
for the whole load, compute, save sequence, saves the loan and its
installments in one atomic write, and only then records the audit events.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .audit import AuditEmitter, AuditEventType, AuditRecord, AuditTrail
from .config import EngineConfig, get_config
from .currency import Money
from .engine import EngineResult, LoanEngine, schedule_generated_record
from .errors import InvalidStatusTransition, LoanNotFound
from .loans import Loan, LoanLifecycle, LoanTerms
from .logging_config import configure_logging, log_action
from .payments import PaymentIntent
from .reporting import ScheduleSummary, payment_statistics, summarize_schedule
from .repository import LoanRepository, StorageLoanRepository
from .schedule import Installment
from .storage import SQLiteStorage

logger = logging.getLogger("loan_engine.servicing")


class LoanServicer:
    """
    Loan servicing operations over a repository and an audit emitter
    """

    def __init__(self, repository: LoanRepository, audit: Optional[AuditEmitter] = None,
                 config: Optional[EngineConfig] = None, engine: Optional[LoanEngine] = None):
        self.repository = repository
        self.audit = audit
        self.config = config or get_config()
        # Events are emitted here after the save, never by the engine itself
        self.engine = engine or LoanEngine(config=self.config)

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None) -> 'LoanServicer':
        """
        Wire a servicer from settings: SQLite storage at ``database_url``,
        a hash-chained audit trail on the same storage and configured logging
        """
        config = config or get_config()
        configure_logging(config)
        storage = SQLiteStorage.from_url(config.database_url)
        audit = AuditTrail(storage) if config.enable_audit_logging else None
        return cls(StorageLoanRepository(storage), audit=audit, config=config)

    def _emit(self, records: List[AuditRecord]) -> None:
        if self.audit is not None and self.config.enable_audit_logging:
            self.audit.emit_all(records)

    def _load(self, loan_id: str) -> Tuple[Loan, List[Installment]]:
        loan = self.repository.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return loan, self.repository.get_installments(loan_id)

    def originate(self, terms: LoanTerms, loan_id: Optional[str] = None,
                  now: Optional[datetime] = None) -> Tuple[Loan, List[Installment]]:
        """
        Create a pending loan with its schedule and persist it

        Raises:
            InvalidLoanTerms: If the terms are out of range
        """
        loan, installments = self.engine.generate_schedule(terms, loan_id=loan_id, now=now)
        with self.repository.lock(loan.id):
            self.repository.save(loan, installments)
        self._emit([schedule_generated_record(loan, installments)])
        return loan, installments

    def get_loan(self, loan_id: str) -> Loan:
        loan, _ = self._load(loan_id)
        return loan

    def get_schedule(self, loan_id: str) -> List[Installment]:
        return self._load(loan_id)[1]

    def process_payment(self, intent: PaymentIntent,
                        now: Optional[datetime] = None) -> EngineResult:
        """
        Apply a payment under the loan's lock

        Returns:
            EngineResult; ``error`` is LoanNotFound for an unknown loan and the
            engine's rejection otherwise. Nothing is saved or recorded on error.
        """
        with self.repository.lock(intent.loan_id):
            loan = self.repository.get_loan(intent.loan_id)
            if loan is None:
                error = LoanNotFound(f"Loan {intent.loan_id} not found", loan_id=intent.loan_id)
                log_action(logger, "warning", error.message, loan_id=intent.loan_id,
                           action="process_payment", extra={"code": error.code})
                return EngineResult(loan=None, installments=[], error=error)

            installments = self.repository.get_installments(loan.id)
            result = self.engine.apply_payment(loan, installments, intent, now=now)
            if result.ok:
                self.repository.save(result.loan, result.installments)
        if result.ok:
            self._emit(result.events)
        return result

    def recast(self, loan_id: str, extra_principal: Optional[Money] = None,
               reference: Optional[str] = None,
               now: Optional[datetime] = None) -> EngineResult:
        """Administrative re-amortization of the loan's scheduled installments"""
        with self.repository.lock(loan_id):
            loan = self.repository.get_loan(loan_id)
            if loan is None:
                error = LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
                log_action(logger, "warning", error.message, loan_id=loan_id,
                           action="recast", extra={"code": error.code})
                return EngineResult(loan=None, installments=[], error=error)
            installments = self.repository.get_installments(loan_id)
            result = self.engine.reamortize(loan, installments, extra_principal=extra_principal,
                                            reference=reference, now=now)
            if result.ok:
                self.repository.save(result.loan, result.installments)
        if result.ok:
            self._emit(result.events)
        return result

    def _change_status(self, loan_id: str, action: str,
                       transition: Callable[[Loan, Optional[datetime]], Loan],
                       now: Optional[datetime] = None,
                       cancel_installments: bool = False) -> Loan:
        now = now or datetime.now(timezone.utc)
        with self.repository.lock(loan_id):
            loan, installments = self._load(loan_id)
            previous = loan.status
            try:
                updated = transition(loan, now)
            except InvalidStatusTransition as exc:
                log_action(logger, "warning", exc.message, loan_id=loan_id,
                           action=action, extra={"code": exc.code})
                raise
            if cancel_installments:
                installments = [i.cancel() if i.is_scheduled else i for i in installments]
            self.repository.save(updated, installments)

        log_action(logger, "info", f"Loan {previous.value} -> {updated.status.value}",
                   loan_id=loan_id, action=action)
        self._emit([AuditRecord(AuditEventType.LOAN_STATUS_CHANGED, loan_id, {
            "from": previous.value,
            "to": updated.status.value,
            "action": action,
        })])
        return updated

    def approve(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        return self._change_status(loan_id, "approve", LoanLifecycle.approve, now)

    def activate(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        return self._change_status(loan_id, "activate", LoanLifecycle.activate, now)

    def mark_defaulted(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        return self._change_status(loan_id, "default", LoanLifecycle.mark_defaulted, now)

    def cancel(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        """Withdraw a pending loan; its installments are cancelled with it"""
        return self._change_status(loan_id, "cancel", LoanLifecycle.cancel, now,
                                   cancel_installments=True)

    def summary(self, loan_id: str) -> ScheduleSummary:
        loan, installments = self._load(loan_id)
        return summarize_schedule(loan, installments)

    def statistics(self, loan_id: str, **filters) -> Dict[str, Any]:
        """Payment statistics for one loan; see ``payment_statistics``"""
        loan, installments = self._load(loan_id)
        return payment_statistics(installments, currency=loan.currency, **filters)
