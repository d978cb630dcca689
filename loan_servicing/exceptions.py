"""
Servicing error taxonomy

Validation errors are rejected before any state is touched. LoanLocked is the
only retryable error. LedgerImbalance is reported by the reconciler and only
raised when a caller explicitly asks for it.
"""

from typing import Optional


class ServicingError(Exception):
    """Base class for all loan servicing errors"""


class InvalidScheduleInput(ServicingError, ValueError):
    """Principal, rate or term cannot produce a schedule"""


class InvalidPaymentAmount(ServicingError, ValueError):
    """Zero or negative payment amount"""


class AllocationMismatch(ServicingError, ValueError):
    """Allocation rows do not add up to the payment, or overflow a component"""


class InvalidLoanTransition(ServicingError, ValueError):
    """Requested status change breaks the loan lifecycle"""


class InvalidResolution(ServicingError, ValueError):
    """Settlement/write-off/repossession request is not acceptable"""


class LoanNotFound(ServicingError, LookupError):
    """No loan with the given id"""


class PaymentNotFound(ServicingError, LookupError):
    """No payment with the given id"""


class LoanNotPayable(ServicingError):
    """Loan is in a terminal state and cannot take payments"""

    def __init__(self, loan_id: str, status: str):
        self.loan_id = loan_id
        self.status = status
        super().__init__(f"Loan {loan_id} is {status} and cannot receive payments")


class LoanLocked(ServicingError):
    """Another operation holds the loan; safe to retry with backoff"""

    retryable = True

    def __init__(self, loan_id: str, timeout: float):
        self.loan_id = loan_id
        self.timeout = timeout
        super().__init__(f"Loan {loan_id} is locked (waited {timeout}s)")


class LedgerImbalance(ServicingError):
    """Assets do not equal liabilities + capital + provisional net income"""

    def __init__(self, control, period: Optional[str] = None):
        self.control = control
        self.period = period
        suffix = f" for {period}" if period else ""
        super().__init__(f"Ledger out of balance{suffix}: control={control}")
