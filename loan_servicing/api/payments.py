"""
Payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LoanServicingSystem, get_servicing_system, get_actor, http_error
from .schemas import PaymentRequest, ReclassifyRequest, allocation_dict, installment_dict, money
from ..exceptions import ServicingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def allocate_payment(
    request: PaymentRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Record a payment and apply it through the waterfall"""
    try:
        result = system.allocate_payment(
            request.loan_id,
            request.amount,
            request.payment_date,
            payment_id=request.payment_id,
            target_period=request.target_period,
            method=request.method,
            actor=actor
        )
    except (ServicingError, ValueError) as e:
        raise http_error(e)

    return {
        "payment_id": result.payment.id,
        "loan_id": result.payment.loan_id,
        "amount": money(result.payment.amount),
        "loan_status": result.loan_status.value,
        "replayed": result.replayed,
        "allocations": [allocation_dict(a) for a in result.allocations],
        "updated_installments": [installment_dict(i) for i in result.updated_installments]
    }


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    include_superseded: bool = False,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Payment with its allocation rows"""
    try:
        payment = system.allocator.require_payment(payment_id)
    except ServicingError as e:
        raise http_error(e)

    allocations = system.allocator.get_allocations(payment_id, include_superseded=include_superseded)
    return {
        "payment_id": payment.id,
        "loan_id": payment.loan_id,
        "amount": money(payment.amount),
        "payment_date": payment.payment_date.isoformat(),
        "method": payment.method.value,
        "allocation_version": payment.allocation_version,
        "allocations": [allocation_dict(a) for a in allocations]
    }


@router.post("/{payment_id}/reclassify")
async def reclassify_payment(
    payment_id: str,
    request: ReclassifyRequest,
    system: LoanServicingSystem = Depends(get_servicing_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Replace the allocation of a recorded payment"""
    try:
        lines = [a.to_line(system.currency) for a in request.allocations]
        result = system.reclassify_payment(payment_id, request.new_date, lines, request.note,
                                           actor=actor)
    except (ServicingError, ValueError) as e:
        raise http_error(e)

    return {
        "payment_id": result.payment.id,
        "allocation_version": result.payment.allocation_version,
        "payment_date": result.payment.payment_date.isoformat(),
        "loan_status": result.loan_status.value,
        "allocations": [allocation_dict(a) for a in result.allocations],
        "superseded": [allocation_dict(a) for a in result.superseded],
        "updated_installments": [installment_dict(i) for i in result.updated_installments]
    }


@router.get("/{payment_id}/reclassifications")
async def get_reclassifications(
    payment_id: str,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Audit notes of every correction made to a payment"""
    try:
        system.allocator.require_payment(payment_id)
    except ServicingError as e:
        raise http_error(e)

    return {
        "payment_id": payment_id,
        "notes": [
            {
                "old_date": note.old_date.isoformat(),
                "new_date": note.new_date.isoformat(),
                "old_version": note.old_version,
                "new_version": note.new_version,
                "reason": note.reason,
                "actor": note.actor,
                "recorded_at": note.created_at.isoformat()
            }
            for note in system.reclassifier.get_notes(payment_id)
        ]
    }
