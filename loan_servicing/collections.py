"""
Collections Module

Overdue detection over live loans, penalty accrual for newly overdue
installments, and the log of collection actions taken with customers.
detect_overdue() only reads; apply_penalties() is its mutating companion.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
from abc import ABC, abstractmethod
import uuid

from .currency import Money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .installments import InstallmentLedger, InstallmentStatus, PenaltyPolicy, derive_status
from .loans import LoanManager, LoanStatus
from .locking import LoanLockManager
from .logging_config import get_logger, log_action


logger = get_logger(__name__)

LIVE_STATUSES = [LoanStatus.DELIVERED, LoanStatus.ACTIVE, LoanStatus.OVERDUE]


class CollectionPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecommendedAction(Enum):
    """Advisory only; nothing enforces it"""
    SOFT_REMINDER = "soft_reminder"
    PAYMENT_PLAN_OFFER = "payment_plan_offer"
    PHONE_CALL = "phone_call"
    SCHEDULED_VISIT = "scheduled_visit"
    LEGAL_NOTICE = "legal_notice"


class ContactMethod(Enum):
    WHATSAPP = "whatsapp"
    PHONE = "phone"
    VISIT = "visit"
    LETTER = "letter"


def classify_priority(days_overdue: int) -> CollectionPriority:
    if days_overdue <= 7:
        return CollectionPriority.LOW
    if days_overdue <= 14:
        return CollectionPriority.MEDIUM
    if days_overdue <= 30:
        return CollectionPriority.HIGH
    return CollectionPriority.CRITICAL


def recommend_action(days_overdue: int) -> RecommendedAction:
    if days_overdue <= 3:
        return RecommendedAction.SOFT_REMINDER
    if days_overdue <= 7:
        return RecommendedAction.PAYMENT_PLAN_OFFER
    if days_overdue <= 14:
        return RecommendedAction.PHONE_CALL
    if days_overdue <= 30:
        return RecommendedAction.SCHEDULED_VISIT
    return RecommendedAction.LEGAL_NOTICE


@dataclass
class OverdueItem:
    loan_id: str
    customer_id: str
    installment_id: str
    period_index: int
    due_date: date
    days_overdue: int
    amount_overdue: Money         # capital + interest still unpaid
    penalty_outstanding: Money
    priority: CollectionPriority
    recommended_action: RecommendedAction


@dataclass
class OverdueSummary:
    total_items: int
    total_amount_overdue: Money
    total_penalties: Money
    distinct_loans: int
    distinct_customers: int
    average_days_overdue: Decimal
    by_priority: Dict[str, int] = field(default_factory=dict)


@dataclass
class OverdueReport:
    as_of: date
    items: List[OverdueItem]
    summary: OverdueSummary


@dataclass
class PenaltyCharge:
    loan_id: str
    period_index: int
    amount: Money
    charged_on: date


@dataclass
class CollectionActionRecord(StorageRecord):
    """A contact attempt with a customer about an overdue loan"""
    loan_id: str
    action_type: str
    contact_method: ContactMethod
    notes: str = ""
    performed_at: Optional[datetime] = None
    performed_by: Optional[str] = None


class CollectionActionSink(ABC):
    """Destination for collection actions (message gateways, call logs, ...)"""

    @abstractmethod
    def record(self, action: CollectionActionRecord) -> None:
        pass


class StorageCollectionSink(CollectionActionSink):
    """Keeps collection actions as rows in the storage backend"""

    def __init__(self, storage: StorageInterface, table_name: str = "collection_actions"):
        self.storage = storage
        self.table_name = table_name

    def record(self, action: CollectionActionRecord) -> None:
        data = action.to_dict()
        data['contact_method'] = action.contact_method.value
        self.storage.save(self.table_name, action.id, data)

    def list_for_loan(self, loan_id: str) -> List[Dict]:
        rows = self.storage.find(self.table_name, {"loan_id": loan_id})
        rows.sort(key=lambda r: r['created_at'])
        return rows


class OverdueDetector:
    """
    Scans live loans for overdue installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        installment_ledger: InstallmentLedger,
        audit_trail: AuditTrail,
        locks: Optional[LoanLockManager] = None,
        sink: Optional[CollectionActionSink] = None
    ):
        self.storage = storage
        self.loans = loan_manager
        self.installments = installment_ledger
        self.audit_trail = audit_trail
        self.locks = locks or LoanLockManager()
        self.sink = sink or StorageCollectionSink(storage)
        self.currency = installment_ledger.currency

    def detect_overdue(self, as_of: date) -> OverdueReport:
        """
        Read-only overdue scan

        Args:
            as_of: The day to measure against; never the system clock

        Returns:
            OverdueReport with items sorted by days overdue (most overdue first)
        """
        items = []
        with self.storage.snapshot():
            for loan in self.loans.list_loans(LIVE_STATUSES):
                for installment in self.installments.load(loan.id):
                    if installment.due_date >= as_of:
                        continue
                    if derive_status(installment, as_of) == InstallmentStatus.PAID:
                        continue
                    days = (as_of - installment.due_date).days
                    items.append(OverdueItem(
                        loan_id=loan.id,
                        customer_id=loan.customer_id,
                        installment_id=installment.id,
                        period_index=installment.period_index,
                        due_date=installment.due_date,
                        days_overdue=days,
                        amount_overdue=installment.capital_due + installment.interest_due,
                        penalty_outstanding=installment.penalty_due,
                        priority=classify_priority(days),
                        recommended_action=recommend_action(days)
                    ))

        items.sort(key=lambda i: (-i.days_overdue, i.loan_id, i.period_index))
        report = OverdueReport(as_of=as_of, items=items, summary=self._summarize(items))
        logger.debug("Overdue scan as of %s: %d items", as_of, len(items))
        return report

    def apply_penalties(self, as_of: date, policy: PenaltyPolicy,
                        actor: Optional[str] = None) -> List[PenaltyCharge]:
        """
        Charge penalties on overdue installments and sync loan status

        Each installment is charged once; running this again on the same
        or a later day charges nothing new.
        """
        charges = []
        for loan in self.loans.list_loans(LIVE_STATUSES):
            with self.locks.hold(loan.id), self.storage.atomic():
                loan = self.loans.require_loan(loan.id)
                installments = self.installments.load(loan.id)
                for installment in installments:
                    previous = installment.status
                    penalty = self.installments.accrue_penalty(installment, policy, as_of)
                    if penalty.is_positive():
                        charges.append(PenaltyCharge(loan.id, installment.period_index, penalty, as_of))
                        self.audit_trail.log_event(
                            event_type=AuditEventType.PENALTY_APPLIED,
                            entity_type="installment",
                            entity_id=installment.id,
                            user_id=actor,
                            metadata={"loan_id": loan.id, "amount": penalty.amount,
                                      "charged_on": as_of, "policy": policy.kind.value}
                        )
                    if penalty.is_positive() or installment.status != previous:
                        self.installments.save(installment)
                self.loans.refresh_status(loan, installments, as_of, actor=actor)

        if charges:
            log_action(logger, "apply_penalties", "Penalties applied", actor=actor,
                       count=len(charges), as_of=as_of)
        return charges

    def record_collection_action(
        self,
        loan_id: str,
        action_type: str,
        contact_method: ContactMethod = ContactMethod.PHONE,
        notes: str = "",
        actor: Optional[str] = None,
        performed_at: Optional[datetime] = None
    ) -> CollectionActionRecord:
        """Log a contact attempt; delivery of any message is the sink's business"""
        loan = self.loans.require_loan(loan_id)
        now = datetime.now(timezone.utc)
        action = CollectionActionRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            action_type=action_type,
            contact_method=ContactMethod(contact_method),
            notes=notes,
            performed_at=performed_at or now,
            performed_by=actor
        )

        with self.storage.atomic():
            self.sink.record(action)
            self.audit_trail.log_event(
                event_type=AuditEventType.COLLECTION_ACTION_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={"action_type": action_type,
                          "contact_method": action.contact_method.value,
                          "notes": notes}
            )
        return action

    def _summarize(self, items: List[OverdueItem]) -> OverdueSummary:
        if items:
            average = (Decimal(sum(i.days_overdue for i in items)) / Decimal(len(items))).quantize(
                Decimal('0.1'), rounding=ROUND_HALF_UP)
        else:
            average = Decimal('0')

        by_priority = {priority.value: 0 for priority in CollectionPriority}
        for item in items:
            by_priority[item.priority.value] += 1

        return OverdueSummary(
            total_items=len(items),
            total_amount_overdue=Money.sum((i.amount_overdue for i in items), self.currency),
            total_penalties=Money.sum((i.penalty_outstanding for i in items), self.currency),
            distinct_loans=len({i.loan_id for i in items}),
            distinct_customers=len({i.customer_id for i in items}),
            average_days_overdue=average,
            by_priority=by_priority
        )
