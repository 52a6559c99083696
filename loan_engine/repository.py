"""
Loan Repository Module

Persistence collaborator for the engine. The engine never touches storage
itself; hosts load a loan and its installments here, hand them to the engine
and save the returned set back in one atomic write.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
import threading

from .currency import Currency, Money
from .loans import Loan, LoanStatus
from .schedule import (
    Installment, InstallmentKind, InstallmentStatus, PaymentMethod, ordered
)
from .storage import StorageInterface


class LoanRepository(ABC):
    """Storage collaborator consumed by the servicer"""

    @abstractmethod
    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Load a loan, None when unknown"""

    @abstractmethod
    def get_installments(self, loan_id: str) -> List[Installment]:
        """All installments of a loan in processing order"""

    @abstractmethod
    def save(self, loan: Loan, installments: List[Installment]) -> None:
        """Persist a loan and its full installment set atomically"""

    @abstractmethod
    def lock(self, loan_id: str):
        """Context manager holding the loan's exclusive lock"""


def _money_to_dict(result: Dict, field: str, value: Optional[Money]) -> None:
    if value is None:
        result[f'{field}_amount'] = None
        result[f'{field}_currency'] = None
    else:
        result[f'{field}_amount'] = str(value.amount)
        result[f'{field}_currency'] = value.currency.code


def _money_from_dict(data: Dict, field: str) -> Optional[Money]:
    if data.get(f'{field}_amount') is None:
        return None
    return Money(Decimal(data[f'{field}_amount']), Currency[data[f'{field}_currency']])


class StorageLoanRepository(LoanRepository):
    """
    LoanRepository over a StorageInterface backend

    Locks are created on first use, one per loan id, and dropped when the
    loan is deleted.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "installments"
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def lock(self, loan_id: str):
        with self._registry_lock:
            loan_lock = self._locks.setdefault(loan_id, threading.Lock())
        with loan_lock:
            yield

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def get_installments(self, loan_id: str) -> List[Installment]:
        installments_data = self.storage.find(self.installments_table, {"loan_id": loan_id})
        return ordered(self._installment_from_dict(data) for data in installments_data)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status is None:
            loans_data = self.storage.load_all(self.loans_table)
        else:
            loans_data = self.storage.find(self.loans_table, {"status": status.value})
        return [self._loan_from_dict(data) for data in loans_data]

    def save(self, loan: Loan, installments: List[Installment]) -> None:
        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))
            for installment in installments:
                self.storage.save(
                    self.installments_table, installment.id,
                    self._installment_to_dict(installment)
                )

    def delete(self, loan_id: str) -> bool:
        """Remove a loan and its installments"""
        with self.storage.atomic():
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id}):
                self.storage.delete(self.installments_table, data['id'])
            removed = self.storage.delete(self.loans_table, loan_id)
        with self._registry_lock:
            self._locks.pop(loan_id, None)
        return removed

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'annual_rate_percent': str(loan.annual_rate_percent),
            'term_months': loan.term_months,
            'start_date': loan.start_date.isoformat(),
            'status': loan.status.value,
        }
        for field in ['principal', 'current_monthly_payment', 'fee_per_installment',
                      'total_interest', 'total_amount']:
            _money_to_dict(result, field, getattr(loan, field))
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            principal=_money_from_dict(data, 'principal'),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            term_months=data['term_months'],
            start_date=date.fromisoformat(data['start_date']),
            current_monthly_payment=_money_from_dict(data, 'current_monthly_payment'),
            status=LoanStatus(data['status']),
            fee_per_installment=_money_from_dict(data, 'fee_per_installment'),
            total_interest=_money_from_dict(data, 'total_interest'),
            total_amount=_money_from_dict(data, 'total_amount'),
        )

    def _installment_to_dict(self, installment: Installment) -> Dict:
        result = {
            'id': installment.id,
            'loan_id': installment.loan_id,
            'sequence_index': installment.sequence_index,
            'due_date': installment.due_date.isoformat(),
            'status': installment.status.value,
            'kind': installment.kind.value,
            'paid_at': installment.paid_at.isoformat() if installment.paid_at else None,
            'payment_method': installment.payment_method.value if installment.payment_method else None,
            'reference': installment.reference,
            'notes': installment.notes,
        }
        for field in ['principal_portion', 'interest_portion', 'fees_portion',
                      'amount_due', 'paid_amount']:
            _money_to_dict(result, field, getattr(installment, field))
        return result

    def _installment_from_dict(self, data: Dict) -> Installment:
        return Installment(
            id=data['id'],
            loan_id=data['loan_id'],
            sequence_index=data['sequence_index'],
            due_date=date.fromisoformat(data['due_date']),
            principal_portion=_money_from_dict(data, 'principal_portion'),
            interest_portion=_money_from_dict(data, 'interest_portion'),
            fees_portion=_money_from_dict(data, 'fees_portion'),
            amount_due=_money_from_dict(data, 'amount_due'),
            status=InstallmentStatus(data['status']),
            kind=InstallmentKind(data['kind']),
            paid_amount=_money_from_dict(data, 'paid_amount'),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            reference=data.get('reference'),
            notes=data.get('notes'),
        )
