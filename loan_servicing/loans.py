"""
Loan Module

Loan records and their lifecycle. Creating a loan generates its amortization
schedule and installments in one atomic step. Status only moves forward
through the lifecycle, except active <-> overdue which follows the state of
the installments.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .amortization import AmortizationCalculator, PaymentFrequency, ScheduleRow
from .installments import InstallmentLedger, Installment, InstallmentStatus
from .ledger import GeneralLedger, JournalEntryLine, AccountCode
from .exceptions import InvalidLoanTransition, LoanNotFound
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    CREATED = "created"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DELIVERED = "delivered"        # Funds or product handed to the customer
    ACTIVE = "active"              # Repaying on time
    OVERDUE = "overdue"            # At least one installment overdue
    SETTLED = "settled"            # Paid off or closed by negotiated settlement
    WRITTEN_OFF = "written_off"
    REPOSSESSED = "repossessed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK

    @property
    def accepts_payments(self) -> bool:
        return self in (LoanStatus.DELIVERED, LoanStatus.ACTIVE, LoanStatus.OVERDUE)


_STATUS_RANK = {
    LoanStatus.CREATED: 0,
    LoanStatus.PENDING_APPROVAL: 1,
    LoanStatus.APPROVED: 2,
    LoanStatus.DELIVERED: 3,
    LoanStatus.ACTIVE: 4,
    LoanStatus.OVERDUE: 4,
    LoanStatus.SETTLED: 5,
    LoanStatus.WRITTEN_OFF: 5,
    LoanStatus.REPOSSESSED: 5,
}
_TERMINAL_RANK = 5

# Statuses an operator may set by hand
WORKFLOW_STATUSES = (LoanStatus.PENDING_APPROVAL, LoanStatus.APPROVED)


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Forward moves only, plus the active/overdue toggle"""
    if current.is_terminal:
        return False
    if {current, target} == {LoanStatus.ACTIVE, LoanStatus.OVERDUE}:
        return True
    return target.rank > current.rank


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, lifecycle status and unapplied advance credit"""
    customer_id: str
    principal: Money
    annual_rate: Decimal               # e.g. 0.52 for 52%
    term_periods: int
    payment_frequency: PaymentFrequency
    start_date: date
    status: LoanStatus = LoanStatus.CREATED
    advance_credit: Money = None
    delivered_date: Optional[date] = None
    closed_date: Optional[date] = None

    def __post_init__(self):
        if self.advance_credit is None:
            self.advance_credit = Money.zero(self.principal.currency)

    @property
    def currency(self) -> Currency:
        return self.principal.currency


class LoanManager:
    """
    Manages loan records, schedules and lifecycle transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        installment_ledger: InstallmentLedger,
        ledger: GeneralLedger,
        audit_trail: AuditTrail,
        calculator: Optional[AmortizationCalculator] = None
    ):
        self.storage = storage
        self.installment_ledger = installment_ledger
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.calculator = calculator or AmortizationCalculator(installment_ledger.currency)
        self.loans_table = "loans"

    def create_loan(
        self,
        customer_id: str,
        principal: Union[Money, Decimal, int, str],
        annual_rate: Decimal,
        term_periods: int,
        start_date: date,
        frequency: PaymentFrequency = PaymentFrequency.WEEKLY,
        loan_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Loan:
        """
        Create a loan in CREATED state together with its installments

        Raises:
            InvalidScheduleInput: If principal, rate or term are invalid
        """
        schedule = self.calculator.generate_schedule(
            principal, annual_rate, term_periods, start_date=start_date, frequency=frequency
        )
        principal_money = Money.sum((row.principal_portion for row in schedule),
                                    self.calculator.currency)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            principal=principal_money,
            annual_rate=annual_rate,
            term_periods=term_periods,
            payment_frequency=frequency,
            start_date=start_date
        )

        with self.storage.atomic():
            if self.storage.exists(self.loans_table, loan.id):
                raise ValueError(f"Loan {loan.id} already exists")
            self._save_loan(loan)
            self.installment_ledger.create_installments(loan.id, schedule)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata={
                    "customer_id": customer_id,
                    "principal": loan.principal.amount,
                    "annual_rate": annual_rate,
                    "term_periods": term_periods,
                    "frequency": frequency.value,
                    "start_date": start_date
                }
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor,
                metadata=self._schedule_summary(schedule)
            )

        log_action(logger, "create_loan", "Loan created", actor=actor, loan_id=loan.id,
                   principal=loan.principal.amount, term_periods=term_periods)
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            LoanNotFound: If the loan does not exist
        """
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, statuses: Optional[List[LoanStatus]] = None) -> List[Loan]:
        loans = [self._loan_from_dict(d) for d in self.storage.load_all(self.loans_table)]
        if statuses:
            loans = [loan for loan in loans if loan.status in statuses]
        loans.sort(key=lambda loan: (loan.start_date, loan.id))
        return loans

    def transition(self, loan: Loan, target: LoanStatus, actor: Optional[str] = None,
                   reason: str = "", today: Optional[date] = None) -> Loan:
        """
        Move a loan to a new status

        Raises:
            InvalidLoanTransition: If the lifecycle does not allow the move
        """
        if loan.status == target:
            return loan
        if not can_transition(loan.status, target):
            raise InvalidLoanTransition(
                f"Loan {loan.id} cannot move from {loan.status.value} to {target.value}")

        previous = loan.status
        loan.status = target
        if target.is_terminal:
            loan.closed_date = today
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor,
            metadata={"from": previous.value, "to": target.value, "reason": reason}
        )
        logger.info("Loan %s status %s -> %s", loan.id, previous.value, target.value)
        return loan

    def change_status(self, loan_id: str, target: LoanStatus, actor: Optional[str] = None,
                      reason: str = "") -> Loan:
        """
        Approval workflow entry point (created -> pending_approval -> approved)

        Raises:
            InvalidLoanTransition: For any other target; disbursement and
                resolutions have their own flows because they post to the ledger
        """
        if target not in WORKFLOW_STATUSES:
            raise InvalidLoanTransition(
                f"Status {target.value} cannot be set directly on loan {loan_id}")
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            return self.transition(loan, target, actor=actor, reason=reason)

    def disburse(self, loan_id: str, disbursed_on: date, actor: Optional[str] = None,
                 funding_account: str = AccountCode.CASH) -> Loan:
        """
        Hand the principal to the customer: status DELIVERED plus
        Dr customer receivable / Cr cash (or bank)
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status.rank >= LoanStatus.DELIVERED.rank:
                raise InvalidLoanTransition(f"Loan {loan.id} is already {loan.status.value}")
            self.transition(loan, LoanStatus.DELIVERED, actor=actor, reason="disbursement")
            loan.delivered_date = disbursed_on
            self._save_loan(loan)

            self.ledger.post_entry(
                entry_date=disbursed_on,
                source_type="loan_disbursement",
                source_id=loan.id,
                description=f"Loan disbursement #{loan.id}",
                lines=[
                    JournalEntryLine.debit_line(AccountCode.CUSTOMER_RECEIVABLE, loan.principal,
                                                f"Receivable loan #{loan.id}"),
                    JournalEntryLine.credit_line(funding_account, loan.principal,
                                                 f"Disbursement loan #{loan.id}")
                ],
                user_id=actor
            )
        return loan

    def refresh_status(self, loan: Loan, installments: List[Installment], today: date,
                       actor: Optional[str] = None) -> Loan:
        """
        Re-derive loan status from its installments

        Terminal loans are left untouched.
        """
        if loan.status.is_terminal or loan.status.rank < LoanStatus.DELIVERED.rank:
            return loan

        if installments and all(i.is_settled for i in installments):
            target = LoanStatus.SETTLED
        elif any(i.status == InstallmentStatus.OVERDUE for i in installments):
            target = LoanStatus.OVERDUE
        elif loan.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE) or \
                any(i.total_paid.is_positive() for i in installments):
            target = LoanStatus.ACTIVE
        else:
            return loan

        return self.transition(loan, target, actor=actor, reason="installment state", today=today)

    def save(self, loan: Loan) -> None:
        self._save_loan(loan)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        self.require_loan(loan_id)
        return self.installment_ledger.load(loan_id)

    def _schedule_summary(self, schedule: List[ScheduleRow]) -> Dict:
        return {
            "periods": len(schedule),
            "first_payment": schedule[0].payment.amount,
            "total_interest": sum((row.interest_portion.amount for row in schedule), Decimal('0')),
            "first_due_date": schedule[0].due_date,
            "last_due_date": schedule[-1].due_date
        }

    def _save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = loan.to_dict()
        result['principal'] = str(loan.principal.amount)
        result['advance_credit'] = str(loan.advance_credit.amount)
        result['currency'] = loan.currency.code
        result['annual_rate'] = str(loan.annual_rate)
        result['payment_frequency'] = loan.payment_frequency.value
        result['status'] = loan.status.value
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        currency = Currency[data['currency']]

        def get_date(field_name: str) -> Optional[date]:
            if data.get(field_name):
                return date.fromisoformat(data[field_name])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            principal=Money(Decimal(data['principal']), currency),
            annual_rate=Decimal(data['annual_rate']),
            term_periods=data['term_periods'],
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            start_date=date.fromisoformat(data['start_date']),
            status=LoanStatus(data['status']),
            advance_credit=Money(Decimal(data['advance_credit']), currency),
            delivered_date=get_date('delivered_date'),
            closed_date=get_date('closed_date')
        )
