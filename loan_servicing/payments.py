"""
Payment Allocation Module

One canonical waterfall shared by live payment entry, advance credit
application and backfills. Inside an installment the order is always
penalty -> interest -> capital; installments are taken oldest due first.
Whatever is left once the open installments are covered is kept as advance
credit, so the allocations of a payment always add up to its amount.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, min_money, fits_currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .installments import InstallmentLedger, Installment, Component, WATERFALL_ORDER
from .loans import LoanManager, Loan, LoanStatus
from .ledger import GeneralLedger, JournalEntry, JournalEntryLine, AccountCode
from .locking import LoanLockManager
from .exceptions import (
    InvalidPaymentAmount, AllocationMismatch, LoanNotPayable, PaymentNotFound
)
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class PaymentMethod(Enum):
    """How the money arrived"""
    CASH = "cash"
    TRANSFER = "transfer"

    @property
    def account_code(self) -> str:
        if self == PaymentMethod.TRANSFER:
            return AccountCode.BANK
        return AccountCode.CASH


# Ledger account credited for each allocation component
COMPONENT_ACCOUNTS = {
    Component.CAPITAL: AccountCode.CUSTOMER_RECEIVABLE,
    Component.INTEREST: AccountCode.INTEREST_INCOME,
    Component.PENALTY: AccountCode.PENALTY_INCOME,
    Component.ADVANCE: AccountCode.CUSTOMER_ADVANCES,
}


@dataclass(frozen=True)
class AllocationLine:
    """One share of a payment: which period, which component, how much"""
    period_index: Optional[int]  # None for unapplied advance credit
    component: Component
    amount: Money

    def __post_init__(self):
        if not self.amount.is_positive():
            raise AllocationMismatch(
                f"Allocation amounts must be positive, got {self.amount.to_string()}")
        if self.component != Component.ADVANCE and self.period_index is None:
            raise AllocationMismatch(f"{self.component.value} allocation needs a period")


@dataclass
class Payment(StorageRecord):
    """Money received against a loan; only reclassification changes its allocation"""
    loan_id: str
    amount: Money
    payment_date: date
    method: PaymentMethod = PaymentMethod.CASH
    target_period: Optional[int] = None
    allocation_version: int = 1
    journal_entry_id: Optional[str] = None
    recorded_by: Optional[str] = None


@dataclass
class PaymentAllocation(StorageRecord):
    """Persisted allocation row; superseded rows are kept for history"""
    payment_id: str
    loan_id: str
    period_index: Optional[int]
    component: Component
    amount: Money
    version: int
    superseded: bool = False

    def to_line(self) -> AllocationLine:
        return AllocationLine(self.period_index, self.component, self.amount)


@dataclass
class AllocationResult:
    payment: Payment
    allocations: List[PaymentAllocation]
    updated_installments: List[Installment]
    loan_status: LoanStatus
    replayed: bool = False


@dataclass
class AdvanceApplication(StorageRecord):
    """Advance credit moved onto installments once they came due"""
    loan_id: str
    applied_on: date
    amount: Money
    lines: List[AllocationLine] = field(default_factory=list)
    journal_entry_id: Optional[str] = None


@dataclass
class PaymentRequest:
    """Input row for backfills"""
    payment_id: str
    loan_id: str
    amount: Union[Money, Decimal, str]
    payment_date: date
    method: PaymentMethod = PaymentMethod.CASH
    target_period: Optional[int] = None


def sum_lines(lines: Iterable[AllocationLine], currency: Currency,
              component: Optional[Component] = None) -> Money:
    return Money.sum((line.amount for line in lines
                      if component is None or line.component == component), currency)


def open_installments(installments: List[Installment], as_of: date,
                      target_period: Optional[int] = None) -> List[Installment]:
    """
    Installments a payment on as_of may settle, in waterfall order

    Everything due on or before as_of plus the next installment coming due.
    A target period, when still unpaid, goes first.
    """
    unpaid = sorted((i for i in installments if i.outstanding.is_positive()),
                    key=lambda i: (i.due_date, i.period_index))
    result = [i for i in unpaid if i.due_date <= as_of]
    upcoming = [i for i in unpaid if i.due_date > as_of]
    if upcoming:
        result.append(upcoming[0])

    if target_period is not None:
        target = next((i for i in unpaid if i.period_index == target_period), None)
        if target is not None:
            result = [target] + [i for i in result if i.period_index != target_period]
    return result


def allocate_waterfall(installments: List[Installment], amount: Money, as_of: date,
                       target_period: Optional[int] = None) -> List[AllocationLine]:
    """
    Split a payment across installments (pure, deterministic)

    Args:
        installments: The loan's installments in any order (not mutated)
        amount: Payment amount
        as_of: Payment date, decides which installments are open
        target_period: Optional period to serve first

    Returns:
        Allocation lines whose amounts add up to amount

    Raises:
        InvalidPaymentAmount: If amount is zero or negative
    """
    if not amount.is_positive():
        raise InvalidPaymentAmount(f"Payment amount must be positive, got {amount.to_string()}")

    candidates = open_installments(installments, as_of, target_period)
    remaining = amount
    lines = []
    for installment in candidates:
        for component in WATERFALL_ORDER:
            if not remaining.is_positive():
                break
            portion = min_money(remaining, installment.component_due(component))
            if portion.is_positive():
                lines.append(AllocationLine(installment.period_index, component, portion))
                remaining = remaining - portion
        if not remaining.is_positive():
            break

    if remaining.is_positive():
        served = {i.period_index for i in candidates}
        future = sorted((i for i in installments
                         if i.outstanding.is_positive() and i.period_index not in served),
                        key=lambda i: (i.due_date, i.period_index))
        period = future[0].period_index if future else None
        lines.append(AllocationLine(period, Component.ADVANCE, remaining))

    return lines


class PaymentAllocator:
    """
    Records payments and applies them to a loan's installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        installment_ledger: InstallmentLedger,
        ledger: GeneralLedger,
        audit_trail: AuditTrail,
        locks: Optional[LoanLockManager] = None
    ):
        self.storage = storage
        self.loans = loan_manager
        self.installments = installment_ledger
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.locks = locks or LoanLockManager()
        self.currency = installment_ledger.currency

        self.payments_table = "payments"
        self.allocations_table = "payment_allocations"
        self.advance_table = "advance_applications"

    def to_money(self, amount: Union[Money, Decimal, int, str]) -> Money:
        """
        Raises:
            InvalidPaymentAmount: For floats, other currencies or unparseable input
        """
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise InvalidPaymentAmount(
                    f"Payment currency {amount.currency.code} does not match {self.currency.code}")
            return amount
        if isinstance(amount, float):
            raise InvalidPaymentAmount("Payment amount must be Decimal, int or str, never float")
        try:
            value = Decimal(str(amount))
            if not fits_currency(value, self.currency):
                raise InvalidPaymentAmount(
                    f"Payment amount {value} has more than {self.currency.precision} decimal places")
            return Money(value, self.currency)
        except ArithmeticError:
            raise InvalidPaymentAmount(f"Invalid payment amount {amount!r}")

    def allocate_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, int, str],
        payment_date: date,
        payment_id: Optional[str] = None,
        target_period: Optional[int] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        actor: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> AllocationResult:
        """
        Record a payment and run it through the waterfall

        A payment id that was already allocated is returned as it stands.
        The payment date picks the open installments and dates the journal
        entry; statuses are derived as of as_of (never earlier than the
        payment date), so a backdated payment cannot clear overdue flags.

        Raises:
            InvalidPaymentAmount: If amount <= 0
            LoanNotFound: If the loan does not exist
            LoanNotPayable: If the loan does not accept payments
            LoanLocked: If another operation holds the loan
        """
        amount = self.to_money(amount)
        if not amount.is_positive():
            raise InvalidPaymentAmount(f"Payment amount must be positive, got {amount.to_string()}")
        method = PaymentMethod(method)
        status_date = max(payment_date, as_of) if as_of else payment_date

        with self.locks.hold(loan_id), self.storage.atomic():
            if payment_id:
                existing = self.get_payment(payment_id)
                if existing:
                    return self._replay(existing, loan_id, amount)

            loan = self.loans.require_loan(loan_id)
            if not loan.status.accepts_payments:
                raise LoanNotPayable(loan.id, loan.status.value)

            installments = self.installments.load(loan_id)
            lines = allocate_waterfall(installments, amount, payment_date, target_period)

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=payment_id or str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                payment_date=payment_date,
                method=method,
                target_period=target_period,
                recorded_by=actor
            )

            updated = self.apply_lines(loan, installments, lines, status_date)
            entry = self.post_payment_entry(payment, lines, actor=actor)
            payment.journal_entry_id = entry.id
            self.save_payment(payment)
            allocations = self.save_allocations(payment, lines)
            self.loans.save(loan)
            self.loans.refresh_status(loan, installments, status_date, actor=actor)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_ALLOCATED,
                entity_type="payment",
                entity_id=payment.id,
                user_id=actor,
                metadata={
                    "loan_id": loan_id,
                    "amount": amount.amount,
                    "payment_date": payment_date,
                    "method": method.value,
                    "allocations": self._lines_metadata(lines)
                }
            )

        log_action(logger, "allocate_payment", "Payment allocated", actor=actor, loan_id=loan_id,
                   payment_id=payment.id, amount=amount.amount, rows=len(allocations))
        return AllocationResult(
            payment=payment,
            allocations=allocations,
            updated_installments=updated,
            loan_status=loan.status
        )

    def backfill_payments(self, requests: Iterable[PaymentRequest],
                          actor: Optional[str] = None,
                          as_of: Optional[date] = None) -> List[AllocationResult]:
        """
        Replay historical payments through the live waterfall

        Each payment commits on its own; re-running skips ids already recorded.
        """
        results = []
        for request in sorted(requests, key=lambda r: (r.payment_date, r.payment_id)):
            results.append(self.allocate_payment(
                loan_id=request.loan_id,
                amount=request.amount,
                payment_date=request.payment_date,
                payment_id=request.payment_id,
                target_period=request.target_period,
                method=request.method,
                actor=actor,
                as_of=as_of
            ))
        replayed = sum(1 for r in results if r.replayed)
        logger.info("Backfill finished: %d payments, %d already recorded", len(results), replayed)
        return results

    def apply_advance_credit(self, loan_id: str, today: date, actor: Optional[str] = None,
                             as_of: Optional[date] = None) -> Optional[AdvanceApplication]:
        """
        Move held advance credit onto installments whose due date has arrived

        The credit runs through the full penalty -> interest -> capital
        waterfall over every installment due by today. This departs from the
        stated rule of putting it on the earliest future installment's capital
        on its due date, and needs product sign-off before it is relied on.

        Returns None when there is nothing to apply.
        """
        status_date = max(today, as_of) if as_of else today
        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.loans.require_loan(loan_id)
            if not loan.advance_credit.is_positive() or not loan.status.accepts_payments:
                return None

            installments = self.installments.load(loan_id)
            due = [i for i in installments if i.due_date <= today and i.outstanding.is_positive()]
            if not due:
                return None

            amount = min_money(loan.advance_credit, self.installments.outstanding_total(due))
            lines = allocate_waterfall(due, amount, today)
            loan.advance_credit = loan.advance_credit - amount
            self.apply_lines(loan, installments, lines, status_date)

            credit_lines = self._component_credit_lines(lines, f"advance credit loan #{loan_id}")
            entry = self.ledger.post_entry(
                entry_date=today,
                source_type="advance_application",
                source_id=loan_id,
                description=f"Advance credit applied loan #{loan_id}",
                lines=[JournalEntryLine.debit_line(AccountCode.CUSTOMER_ADVANCES, amount,
                                                   f"Advance applied loan #{loan_id}")] + credit_lines,
                user_id=actor
            )

            now = datetime.now(timezone.utc)
            application = AdvanceApplication(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                applied_on=today,
                amount=amount,
                lines=lines,
                journal_entry_id=entry.id
            )
            self.storage.save(self.advance_table, application.id, self._application_to_dict(application))
            self.loans.save(loan)
            self.loans.refresh_status(loan, installments, status_date, actor=actor)

            self.audit_trail.log_event(
                event_type=AuditEventType.ADVANCE_APPLIED,
                entity_type="loan",
                entity_id=loan_id,
                user_id=actor,
                metadata={"amount": amount.amount, "applied_on": today,
                          "allocations": self._lines_metadata(lines)}
            )

        logger.info("Applied advance credit %s on loan %s", amount.to_string(), loan_id)
        return application

    def apply_lines(self, loan: Loan, installments: List[Installment],
                    lines: List[AllocationLine], today: date) -> List[Installment]:
        """
        Apply allocation lines to the loan's installment array and advance credit

        Returns the touched installments (saved).

        Raises:
            AllocationMismatch: If a line points to a missing period or overflows a component
        """
        touched = {}
        for line in lines:
            if line.component == Component.ADVANCE:
                loan.advance_credit = loan.advance_credit + line.amount
                continue
            installment = self._by_index(loan, installments, line.period_index)
            self.installments.apply(installment, line.component, line.amount, today)
            touched[installment.period_index] = installment
        return self._save_touched(installments, touched, today)

    def reverse_lines(self, loan: Loan, installments: List[Installment],
                      lines: List[AllocationLine], today: date) -> List[Installment]:
        """
        Undo allocation lines

        Raises:
            AllocationMismatch: If advance credit was already applied or a
                component was paid less than the line says
        """
        touched = {}
        for line in lines:
            if line.component == Component.ADVANCE:
                if line.amount > loan.advance_credit:
                    raise AllocationMismatch(
                        f"Loan {loan.id} holds {loan.advance_credit.to_string()} of advance credit; "
                        f"cannot reverse {line.amount.to_string()} already applied")
                loan.advance_credit = loan.advance_credit - line.amount
                continue
            installment = self._by_index(loan, installments, line.period_index)
            self.installments.reverse(installment, line.component, line.amount, today)
            touched[installment.period_index] = installment
        return self._save_touched(installments, touched, today)

    def post_payment_entry(self, payment: Payment, lines: List[AllocationLine],
                           actor: Optional[str] = None) -> JournalEntry:
        """Dr cash/bank for the payment, Cr one account per component"""
        debit = JournalEntryLine.debit_line(payment.method.account_code, payment.amount,
                                            f"Payment {payment.id}")
        return self.ledger.post_entry(
            entry_date=payment.payment_date,
            source_type="payment",
            source_id=payment.id,
            description=f"Payment loan #{payment.loan_id}",
            lines=[debit] + self._component_credit_lines(lines, f"payment {payment.id}"),
            user_id=actor
        )

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return self._payment_from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        """
        Raises:
            PaymentNotFound: If the payment does not exist
        """
        payment = self.get_payment(payment_id)
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return payment

    def get_allocations(self, payment_id: str, include_superseded: bool = False) -> List[PaymentAllocation]:
        rows = [self._allocation_from_dict(d)
                for d in self.storage.find(self.allocations_table, {"payment_id": payment_id})]
        if not include_superseded:
            rows = [r for r in rows if not r.superseded]
        rows.sort(key=lambda r: r.id)
        return rows

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        payments = [self._payment_from_dict(d)
                    for d in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def get_advance_applications(self, loan_id: str) -> List[AdvanceApplication]:
        rows = [self._application_from_dict(d)
                for d in self.storage.find(self.advance_table, {"loan_id": loan_id})]
        rows.sort(key=lambda a: (a.applied_on, a.created_at))
        return rows

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def save_allocations(self, payment: Payment, lines: List[AllocationLine]) -> List[PaymentAllocation]:
        """Persist lines as the payment's current allocation version"""
        now = datetime.now(timezone.utc)
        allocations = []
        for position, line in enumerate(lines, start=1):
            allocation = PaymentAllocation(
                # Sortable ids keep the waterfall order on reload
                id=f"{payment.id}_v{payment.allocation_version:03d}_{position:03d}",
                created_at=now,
                updated_at=now,
                payment_id=payment.id,
                loan_id=payment.loan_id,
                period_index=line.period_index,
                component=line.component,
                amount=line.amount,
                version=payment.allocation_version
            )
            self.storage.save(self.allocations_table, allocation.id,
                              self._allocation_to_dict(allocation))
            allocations.append(allocation)
        return allocations

    def supersede_allocations(self, allocations: List[PaymentAllocation]) -> None:
        now = datetime.now(timezone.utc)
        for allocation in allocations:
            allocation.superseded = True
            allocation.updated_at = now
            self.storage.save(self.allocations_table, allocation.id,
                              self._allocation_to_dict(allocation))

    def _replay(self, payment: Payment, loan_id: str, amount: Money) -> AllocationResult:
        if payment.loan_id != loan_id or payment.amount != amount:
            raise AllocationMismatch(
                f"Payment {payment.id} was recorded as {payment.amount.to_string()} "
                f"on loan {payment.loan_id}")
        allocations = self.get_allocations(payment.id)
        periods = {a.period_index for a in allocations if a.period_index is not None}
        installments = [i for i in self.installments.load(loan_id) if i.period_index in periods]
        loan = self.loans.require_loan(loan_id)
        logger.info("Payment %s already allocated; returning recorded allocation", payment.id)
        return AllocationResult(
            payment=payment,
            allocations=allocations,
            updated_installments=installments,
            loan_status=loan.status,
            replayed=True
        )

    def _by_index(self, loan: Loan, installments: List[Installment],
                  period_index: Optional[int]) -> Installment:
        if period_index is None or not 1 <= period_index <= len(installments):
            raise AllocationMismatch(f"Loan {loan.id} has no period {period_index}")
        installment = installments[period_index - 1]
        if installment.period_index != period_index:
            raise AllocationMismatch(f"Installments of loan {loan.id} are not contiguous")
        return installment

    def _save_touched(self, installments: List[Installment], touched: Dict[int, Installment],
                      today: date) -> List[Installment]:
        # Untouched rows are saved only when the date moved their status
        for installment in installments:
            previous = installment.status
            self.installments.refresh_status(installment, today)
            if installment.period_index in touched or installment.status != previous:
                self.installments.save(installment)
        return [touched[p] for p in sorted(touched)]

    def _component_credit_lines(self, lines: List[AllocationLine],
                                label: str) -> List[JournalEntryLine]:
        credit_lines = []
        for component in Component:
            total = sum_lines(lines, self.currency, component)
            if total.is_positive():
                credit_lines.append(JournalEntryLine.credit_line(
                    COMPONENT_ACCOUNTS[component], total, f"{component.value} {label}"))
        return credit_lines

    def _lines_metadata(self, lines: List[AllocationLine]) -> List[Dict]:
        return [{"period": line.period_index, "component": line.component.value,
                 "amount": line.amount.amount} for line in lines]

    def _payment_to_dict(self, payment: Payment) -> Dict:
        result = payment.to_dict()
        result['amount'] = str(payment.amount.amount)
        result['currency'] = payment.amount.currency.code
        result['method'] = payment.method.value
        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        currency = Currency[data['currency']]
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), currency),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            target_period=data.get('target_period'),
            allocation_version=data.get('allocation_version', 1),
            journal_entry_id=data.get('journal_entry_id'),
            recorded_by=data.get('recorded_by')
        )

    def _allocation_to_dict(self, allocation: PaymentAllocation) -> Dict:
        result = allocation.to_dict()
        result['amount'] = str(allocation.amount.amount)
        result['currency'] = allocation.amount.currency.code
        result['component'] = allocation.component.value
        return result

    def _allocation_from_dict(self, data: Dict) -> PaymentAllocation:
        return PaymentAllocation(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            loan_id=data['loan_id'],
            period_index=data.get('period_index'),
            component=Component(data['component']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            version=data['version'],
            superseded=data.get('superseded', False)
        )

    def _application_to_dict(self, application: AdvanceApplication) -> Dict:
        return {
            'id': application.id,
            'created_at': application.created_at.isoformat(),
            'updated_at': application.updated_at.isoformat(),
            'loan_id': application.loan_id,
            'applied_on': application.applied_on.isoformat(),
            'amount': str(application.amount.amount),
            'currency': application.amount.currency.code,
            'journal_entry_id': application.journal_entry_id,
            'lines': self._lines_to_dicts(application.lines)
        }

    def _application_from_dict(self, data: Dict) -> AdvanceApplication:
        currency = Currency[data['currency']]
        return AdvanceApplication(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            applied_on=date.fromisoformat(data['applied_on']),
            amount=Money(Decimal(data['amount']), currency),
            lines=[AllocationLine(line['period_index'], Component(line['component']),
                                  Money(Decimal(line['amount']), currency))
                   for line in data['lines']],
            journal_entry_id=data.get('journal_entry_id')
        )

    def _lines_to_dicts(self, lines: List[AllocationLine]) -> List[Dict]:
        return [{'period_index': line.period_index, 'component': line.component.value,
                 'amount': str(line.amount.amount)} for line in lines]
