"""Exception hierarchy for the loan engine.

Every rejection carries a stable ``code`` so hosts can map it to their own
response format without string matching.
"""

from typing import Any, Dict, Optional

from .currency import Money


class LoanEngineError(Exception):
    """Base exception for all loan engine rejections."""

    code = "LOAN_ENGINE_ERROR"

    def __init__(self, message: str, loan_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.loan_id = loan_id

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidLoanTerms(LoanEngineError):
    """Raised when loan terms cannot produce a schedule."""

    code = "INVALID_LOAN_TERMS"


class InvalidLoanStatus(LoanEngineError):
    """Raised when the loan is not in a state that accepts payments."""

    code = "INVALID_LOAN_STATUS"


class InvalidStatusTransition(LoanEngineError):
    """Raised when a lifecycle transition is not allowed."""

    code = "INVALID_STATUS_TRANSITION"


class NoScheduledPayments(LoanEngineError):
    """Raised when a loan has no scheduled installment left to collect."""

    code = "NO_SCHEDULED_PAYMENTS"


class CurrencyMismatch(LoanEngineError):
    """Raised when a payment is not in the loan's currency."""

    code = "CURRENCY_MISMATCH"


class InvalidPaymentAmount(LoanEngineError):
    """Raised when a payment amount is zero or negative."""

    code = "INVALID_PAYMENT_AMOUNT"


class InsufficientPayment(LoanEngineError):
    """Raised when a payment is below the amount due on the next installment."""

    code = "INSUFFICIENT_PAYMENT"

    def __init__(self, amount_due: Money, amount: Money, loan_id: Optional[str] = None):
        self.amount_due = amount_due
        self.amount = amount
        self.shortfall = amount_due - amount
        super().__init__(
            f"Payment of {amount.to_string()} is {self.shortfall.to_string()} short "
            f"of the {amount_due.to_string()} due",
            loan_id=loan_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["amount_due"] = str(self.amount_due.amount)
        result["shortfall"] = str(self.shortfall.amount)
        return result


class LoanNotFound(LoanEngineError):
    """Raised when a host lookup finds no loan for the given id."""

    code = "LOAN_NOT_FOUND"
