"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import LoanServicingSystem, get_servicing_system, get_actor, http_error
from .schemas import (
    ScheduleRequest, CreateLoanRequest, StatusChangeRequest, DisburseRequest,
    SettlementRequest, WriteOffRequest, RepossessionRequest, CollectionActionRequest,
    schedule_row_dict, installment_dict, loan_dict, money
)
from ..exceptions import ServicingError


router = APIRouter()


@router.post("/schedule")
async def preview_schedule(
    request: ScheduleRequest,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Amortization schedule for the given terms, nothing is stored"""
    try:
        rows = system.generate_schedule(
            request.principal, request.annual_rate, request.term_periods,
            start_date=request.start_date, frequency=request.frequency
        )
    except (ServicingError, ValueError) as e:
        raise http_error(e)

    return {"schedule": [schedule_row_dict(row) for row in rows]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Create a loan and its installments"""
    try:
        loan = system.loan_manager.create_loan(
            customer_id=request.customer_id,
            principal=request.principal,
            annual_rate=request.annual_rate,
            term_periods=request.term_periods,
            start_date=request.start_date,
            frequency=request.frequency,
            loan_id=request.loan_id,
            actor=actor
        )
    except (ServicingError, ValueError) as e:
        raise http_error(e)

    return {
        "loan_id": loan.id,
        "status": loan.status.value,
        "message": "Loan created successfully"
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_dict(loan)


@router.get("/{loan_id}/installments")
async def get_installments(
    loan_id: str,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Installments of a loan in period order"""
    try:
        installments = system.loan_manager.get_schedule(loan_id)
    except ServicingError as e:
        raise http_error(e)
    return {"loan_id": loan_id, "installments": [installment_dict(i) for i in installments]}


@router.post("/{loan_id}/status")
async def change_status(
    loan_id: str,
    request: StatusChangeRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Approval workflow moves (pending approval, approved)"""
    try:
        loan = system.loan_manager.change_status(loan_id, request.status, actor=actor,
                                                 reason=request.reason)
    except ServicingError as e:
        raise http_error(e)
    return {"loan_id": loan.id, "status": loan.status.value}


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Hand the loan over to the customer"""
    try:
        loan = system.loan_manager.disburse(loan_id, request.disbursed_on, actor=actor,
                                            funding_account=request.method.account_code)
    except (ServicingError, ValueError) as e:
        raise http_error(e)
    return {"loan_id": loan.id, "status": loan.status.value,
            "message": "Loan disbursed successfully"}


@router.get("/{loan_id}/resolution-options")
async def get_resolution_options(
    loan_id: str,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Settlement range and write-off amount for a loan"""
    try:
        options = system.resolutions.resolution_options(loan_id)
    except ServicingError as e:
        raise http_error(e)
    return {
        "loan_id": loan_id,
        "outstanding_capital": money(options.outstanding_capital),
        "outstanding_interest": money(options.outstanding_interest),
        "outstanding_penalties": money(options.outstanding_penalties),
        "advance_credit": money(options.advance_credit),
        "settlement": {
            "minimum_amount": money(options.settlement_minimum),
            "recommended_amount": money(options.settlement_recommended),
            "maximum_amount": money(options.settlement_maximum)
        },
        "write_off": {"amount": money(options.write_off_amount)}
    }


@router.post("/{loan_id}/settle")
async def settle_loan(
    loan_id: str,
    request: SettlementRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Close a loan for a negotiated amount"""
    try:
        record = system.resolutions.settle(loan_id, request.amount, request.resolved_on,
                                           actor=actor, reason=request.reason,
                                           funding_account=request.method.account_code)
    except (ServicingError, ValueError) as e:
        raise http_error(e)
    return _resolution_response(record)


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: WriteOffRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Charge the outstanding capital to bad debt"""
    try:
        record = system.resolutions.write_off(loan_id, request.resolved_on, actor=actor,
                                              reason=request.reason)
    except (ServicingError, ValueError) as e:
        raise http_error(e)
    return _resolution_response(record)


@router.post("/{loan_id}/repossess")
async def repossess_loan(
    loan_id: str,
    request: RepossessionRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Take the financed product back"""
    try:
        record = system.resolutions.repossess(loan_id, request.recovery_value, request.resolved_on,
                                              actor=actor, recovery_costs=request.recovery_costs,
                                              reason=request.reason)
    except (ServicingError, ValueError) as e:
        raise http_error(e)
    return _resolution_response(record)


@router.post("/{loan_id}/collection-actions", status_code=status.HTTP_201_CREATED)
async def record_collection_action(
    loan_id: str,
    request: CollectionActionRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Log a contact attempt with the customer"""
    try:
        action = system.overdue_detector.record_collection_action(
            loan_id, request.action_type, contact_method=request.contact_method,
            notes=request.notes, actor=actor
        )
    except (ServicingError, ValueError) as e:
        raise http_error(e)
    return {"action_id": action.id, "message": "Collection action recorded"}


def _resolution_response(record) -> dict:
    return {
        "resolution_id": record.id,
        "loan_id": record.loan_id,
        "type": record.resolution_type.value,
        "amount": money(record.amount),
        "write_off_amount": money(record.write_off_amount),
        "status": record.status.value
    }
