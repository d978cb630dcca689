"""
Payment Reclassification Module

Corrects how a recorded payment was applied (wrong installment, wrong split,
wrong date) without editing history. The previous allocation rows stay in
storage marked as superseded, the payment's journal entry is reversed and
re-posted, and a note records who changed what and why.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .installments import Installment
from .loans import LoanStatus
from .payments import PaymentAllocator, Payment, PaymentAllocation, AllocationLine, sum_lines
from .exceptions import AllocationMismatch, LoanNotPayable
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


@dataclass
class ReclassificationNote(StorageRecord):
    """Audit note kept next to the payment"""
    payment_id: str
    loan_id: str
    old_date: date
    new_date: date
    old_version: int
    new_version: int
    reason: str
    actor: Optional[str] = None


@dataclass
class ReclassificationResult:
    payment: Payment
    allocations: List[PaymentAllocation]
    superseded: List[PaymentAllocation]
    updated_installments: List[Installment]
    loan_status: LoanStatus
    note: ReclassificationNote


class ReclassificationEngine:
    """
    Replaces the allocation of an existing payment in one atomic step
    """

    def __init__(self, storage: StorageInterface, allocator: PaymentAllocator,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.allocator = allocator
        self.audit_trail = audit_trail
        self.notes_table = "payment_reclassifications"

    def reclassify_payment(
        self,
        payment_id: str,
        new_date: Optional[date],
        allocations: List[AllocationLine],
        note: str,
        actor: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> ReclassificationResult:
        """
        Replace a payment's allocation with a full new set

        Args:
            payment_id: Payment to correct
            new_date: Corrected payment date (None keeps the current one)
            allocations: Complete replacement allocation; must add up to the payment
            note: Reason for the correction
            actor: Who asked for it
            as_of: Day used to re-derive installment status (defaults to the payment date)

        Raises:
            PaymentNotFound: If the payment does not exist
            AllocationMismatch: If the new rows do not add up to the payment amount
                or cannot be applied to the loan's installments
            LoanNotPayable: If the loan has already been closed
        """
        payment = self.allocator.require_payment(payment_id)

        with self.allocator.locks.hold(payment.loan_id), self.storage.atomic():
            payment = self.allocator.require_payment(payment_id)
            self._check_total(payment, allocations)

            loan = self.allocator.loans.require_loan(payment.loan_id)
            if not loan.status.accepts_payments:
                raise LoanNotPayable(loan.id, loan.status.value)

            old_date = payment.payment_date
            effective_date = new_date or old_date
            today = as_of or effective_date
            previous = self.allocator.get_allocations(payment.id)
            installments = self.allocator.installments.load(loan.id)

            reversed_rows = self.allocator.reverse_lines(
                loan, installments, [a.to_line() for a in previous], today)
            applied_rows = self.allocator.apply_lines(loan, installments, allocations, today)
            self.allocator.supersede_allocations(previous)

            self.allocator.ledger.reverse_entry(
                payment.journal_entry_id,
                entry_date=old_date,
                reason=f"reclassification of payment {payment.id}",
                user_id=actor
            )

            old_version = payment.allocation_version
            payment.allocation_version = old_version + 1
            payment.payment_date = effective_date
            entry = self.allocator.post_payment_entry(payment, allocations, actor=actor)
            payment.journal_entry_id = entry.id
            self.allocator.save_payment(payment)
            current = self.allocator.save_allocations(payment, allocations)

            record = self._save_note(payment, old_date, old_version, note, actor)
            self.allocator.loans.save(loan)
            self.allocator.loans.refresh_status(loan, installments, today, actor=actor)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECLASSIFIED,
                entity_type="payment",
                entity_id=payment.id,
                user_id=actor,
                metadata={
                    "loan_id": loan.id,
                    "old_date": old_date,
                    "new_date": effective_date,
                    "reason": note,
                    "old_version": old_version,
                    "new_version": payment.allocation_version,
                    "superseded": [a.id for a in previous]
                }
            )

        log_action(logger, "reclassify_payment", "Payment reclassified", actor=actor,
                   loan_id=payment.loan_id, payment_id=payment.id,
                   version=payment.allocation_version)

        touched = {i.period_index: i for i in reversed_rows + applied_rows}
        return ReclassificationResult(
            payment=payment,
            allocations=current,
            superseded=previous,
            updated_installments=[touched[p] for p in sorted(touched)],
            loan_status=loan.status,
            note=record
        )

    def get_notes(self, payment_id: str) -> List[ReclassificationNote]:
        rows = [self._note_from_dict(d)
                for d in self.storage.find(self.notes_table, {"payment_id": payment_id})]
        rows.sort(key=lambda n: n.new_version)
        return rows

    def _check_total(self, payment: Payment, allocations: List[AllocationLine]) -> None:
        if not allocations:
            raise AllocationMismatch(f"Reclassification of payment {payment.id} has no allocations")
        currencies = {line.amount.currency for line in allocations}
        if currencies != {payment.amount.currency}:
            raise AllocationMismatch(
                f"Allocations must be in {payment.amount.currency.code}")
        total = sum_lines(allocations, payment.amount.currency)
        if total != payment.amount:
            raise AllocationMismatch(
                f"Allocations add up to {total.to_string()}, payment {payment.id} "
                f"is {payment.amount.to_string()}")

    def _save_note(self, payment: Payment, old_date: date, old_version: int, reason: str,
                   actor: Optional[str]) -> ReclassificationNote:
        now = datetime.now(timezone.utc)
        record = ReclassificationNote(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_id=payment.id,
            loan_id=payment.loan_id,
            old_date=old_date,
            new_date=payment.payment_date,
            old_version=old_version,
            new_version=payment.allocation_version,
            reason=reason,
            actor=actor
        )
        self.storage.save(self.notes_table, record.id, record.to_dict())
        return record

    def _note_from_dict(self, data: Dict) -> ReclassificationNote:
        return ReclassificationNote(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            loan_id=data['loan_id'],
            old_date=date.fromisoformat(data['old_date']),
            new_date=date.fromisoformat(data['new_date']),
            old_version=data['old_version'],
            new_version=data['new_version'],
            reason=data['reason'],
            actor=data.get('actor')
        )
