"""
Shared API dependencies: the servicing system, the acting user, error mapping
"""

from typing import Optional
from fastapi import Header, HTTPException, status

from ..service import LoanServicingSystem
from ..exceptions import (
    ServicingError, LoanNotFound, PaymentNotFound, LoanNotPayable, InvalidLoanTransition,
    LoanLocked, LedgerImbalance
)


_system: Optional[LoanServicingSystem] = None


def get_servicing_system() -> LoanServicingSystem:
    """Process-wide servicing system, built from configuration on first use"""
    global _system
    if _system is None:
        _system = LoanServicingSystem()
    return _system


def get_actor(x_actor: Optional[str] = Header(None)) -> Optional[str]:
    """Identity recorded in audit notes; authentication happens upstream"""
    return x_actor


def http_error(error: Exception) -> HTTPException:
    """Translate a servicing error into the HTTP status a client can act on"""
    if isinstance(error, (LoanNotFound, PaymentNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (LoanNotPayable, InvalidLoanTransition, LedgerImbalance)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, LoanLocked):
        code = status.HTTP_423_LOCKED
    elif isinstance(error, (ServicingError, ValueError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))
