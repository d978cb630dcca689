"""
Installment Ledger Module

Materializes an amortization schedule into per-loan installments and owns
their paid/due/penalty state. A loan's installments are handled as an ordered
array indexed by period (installments[period_index - 1]).

Status is never set by callers: derive_status() is the single rule that turns
amounts, due date and "today" into pending/partial/paid/overdue.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .amortization import ScheduleRow
from .exceptions import AllocationMismatch


class InstallmentStatus(Enum):
    """Derived installment status"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class Component(Enum):
    """Closed set of allocation components"""
    CAPITAL = "capital"
    INTEREST = "interest"
    PENALTY = "penalty"
    ADVANCE = "advance"


# Waterfall order inside one installment
WATERFALL_ORDER = (Component.PENALTY, Component.INTEREST, Component.CAPITAL)


class PenaltyKind(Enum):
    PERCENTAGE = "percentage"  # rate * amount_due
    FLAT = "flat"              # fixed fee
    TIERED = "tiered"          # flat fee below threshold, percentage at or above


@dataclass(frozen=True)
class PenaltyPolicy:
    """
    Penalty charged once when an installment becomes overdue.
    Supplied by configuration; the engine never invents a formula.
    """
    kind: PenaltyKind
    rate: Decimal = Decimal('0')
    flat_fee: Optional[Money] = None
    threshold: Optional[Money] = None

    def __post_init__(self):
        if self.rate < Decimal('0'):
            raise ValueError("Penalty rate cannot be negative")
        if self.kind in (PenaltyKind.FLAT, PenaltyKind.TIERED) and self.flat_fee is None:
            raise ValueError(f"{self.kind.value} penalty policy needs a flat fee")
        if self.kind == PenaltyKind.TIERED and self.threshold is None:
            raise ValueError("Tiered penalty policy needs a threshold")

    @classmethod
    def from_config(cls, config, currency: Currency) -> 'PenaltyPolicy':
        kind = PenaltyKind(config.penalty_kind)
        return cls(
            kind=kind,
            rate=Decimal(config.penalty_rate),
            flat_fee=Money(Decimal(config.penalty_flat_fee), currency),
            threshold=Money(Decimal(config.penalty_threshold), currency)
        )

    def compute(self, amount_due: Money) -> Money:
        if self.kind == PenaltyKind.PERCENTAGE:
            return amount_due * self.rate
        if self.kind == PenaltyKind.FLAT:
            return self.flat_fee
        if amount_due < self.threshold:
            return self.flat_fee
        return amount_due * self.rate


@dataclass
class Installment(StorageRecord):
    """One period of a loan's repayment plan"""
    loan_id: str
    period_index: int
    due_date: date
    capital_portion: Money
    interest_portion: Money
    penalty_applied: Money
    capital_paid: Money
    interest_paid: Money
    penalty_paid: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    penalty_applied_on: Optional[date] = None

    @property
    def currency(self) -> Currency:
        return self.capital_portion.currency

    @property
    def amount_due(self) -> Money:
        return self.capital_portion + self.interest_portion

    @property
    def capital_due(self) -> Money:
        return self.capital_portion - self.capital_paid

    @property
    def interest_due(self) -> Money:
        return self.interest_portion - self.interest_paid

    @property
    def penalty_due(self) -> Money:
        return self.penalty_applied - self.penalty_paid

    @property
    def total_paid(self) -> Money:
        return self.capital_paid + self.interest_paid + self.penalty_paid

    @property
    def outstanding(self) -> Money:
        return self.capital_due + self.interest_due + self.penalty_due

    @property
    def is_settled(self) -> bool:
        return not self.outstanding.is_positive()

    def component_due(self, component: Component) -> Money:
        if component == Component.CAPITAL:
            return self.capital_due
        elif component == Component.INTEREST:
            return self.interest_due
        elif component == Component.PENALTY:
            return self.penalty_due
        raise AllocationMismatch("Advance credit has no due amount on an installment")

    def component_paid(self, component: Component) -> Money:
        if component == Component.CAPITAL:
            return self.capital_paid
        elif component == Component.INTEREST:
            return self.interest_paid
        elif component == Component.PENALTY:
            return self.penalty_paid
        raise AllocationMismatch("Advance credit is not paid into an installment")

    def _set_paid(self, component: Component, value: Money) -> None:
        if component == Component.CAPITAL:
            self.capital_paid = value
        elif component == Component.INTEREST:
            self.interest_paid = value
        elif component == Component.PENALTY:
            self.penalty_paid = value
        else:
            raise AllocationMismatch("Advance credit is not paid into an installment")


def derive_status(installment: Installment, today: date) -> InstallmentStatus:
    """Single status rule used by every flow and report"""
    if installment.total_paid >= installment.amount_due + installment.penalty_applied:
        return InstallmentStatus.PAID
    if (installment.due_date < today and
            installment.capital_paid + installment.interest_paid < installment.amount_due):
        return InstallmentStatus.OVERDUE
    if installment.total_paid.is_zero():
        return InstallmentStatus.PENDING
    return InstallmentStatus.PARTIAL


class InstallmentLedger:
    """
    Persists installments and exposes the only mutation surface for them
    """

    def __init__(self, storage: StorageInterface, currency: Currency = Currency.MXN):
        self.storage = storage
        self.currency = currency
        self.table_name = "installments"

    @staticmethod
    def installment_id(loan_id: str, period_index: int) -> str:
        return f"{loan_id}_{period_index:04d}"

    def create_installments(self, loan_id: str, schedule: List[ScheduleRow]) -> List[Installment]:
        """
        Materialize schedule rows as installments (one per period)

        Raises:
            ValueError: If a row has no due date or installments already exist
        """
        if self.storage.find(self.table_name, {"loan_id": loan_id}):
            raise ValueError(f"Installments for loan {loan_id} already exist")

        now = datetime.now(timezone.utc)
        zero = Money.zero(self.currency)
        installments = []
        for row in schedule:
            if row.due_date is None:
                raise ValueError(f"Schedule row {row.period_index} has no due date")
            installments.append(Installment(
                id=self.installment_id(loan_id, row.period_index),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                period_index=row.period_index,
                due_date=row.due_date,
                capital_portion=row.principal_portion,
                interest_portion=row.interest_portion,
                penalty_applied=zero,
                capital_paid=zero,
                interest_paid=zero,
                penalty_paid=zero
            ))

        self.save_all(installments)
        return installments

    def load(self, loan_id: str) -> List[Installment]:
        """All installments of a loan ordered by period"""
        rows = [self._from_dict(d) for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        rows.sort(key=lambda i: i.period_index)
        return rows

    def get(self, loan_id: str, period_index: int) -> Optional[Installment]:
        data = self.storage.load(self.table_name, self.installment_id(loan_id, period_index))
        if data:
            return self._from_dict(data)
        return None

    def load_all(self) -> List[Installment]:
        rows = [self._from_dict(d) for d in self.storage.load_all(self.table_name)]
        rows.sort(key=lambda i: (i.loan_id, i.period_index))
        return rows

    def save(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, installment.id, self._to_dict(installment))

    def save_all(self, installments: List[Installment]) -> None:
        with self.storage.atomic():
            for installment in installments:
                self.save(installment)

    def apply(self, installment: Installment, component: Component, amount: Money,
              today: date) -> None:
        """
        Add a paid amount to one component and re-derive status

        Raises:
            AllocationMismatch: If the amount exceeds what is due on the component
        """
        if not amount.is_positive():
            raise AllocationMismatch(f"Allocation amount must be positive, got {amount.to_string()}")
        due = installment.component_due(component)
        if amount > due:
            raise AllocationMismatch(
                f"{component.value} allocation {amount.to_string()} exceeds "
                f"{due.to_string()} due on period {installment.period_index}")
        installment._set_paid(component, installment.component_paid(component) + amount)
        self.refresh_status(installment, today)

    def reverse(self, installment: Installment, component: Component, amount: Money,
                today: date) -> None:
        """
        Remove a previously applied amount from one component

        Raises:
            AllocationMismatch: If more would be removed than was paid
        """
        paid = installment.component_paid(component)
        if amount > paid:
            raise AllocationMismatch(
                f"Cannot reverse {amount.to_string()} of {component.value}; only "
                f"{paid.to_string()} paid on period {installment.period_index}")
        installment._set_paid(component, paid - amount)
        self.refresh_status(installment, today)

    def refresh_status(self, installment: Installment, today: date) -> InstallmentStatus:
        installment.status = derive_status(installment, today)
        return installment.status

    def accrue_penalty(self, installment: Installment, policy: PenaltyPolicy,
                       today: date) -> Money:
        """
        Charge the policy penalty when the installment is overdue

        Charged at most once per installment; later calls return zero.
        """
        zero = Money.zero(installment.currency)
        self.refresh_status(installment, today)
        if installment.status != InstallmentStatus.OVERDUE:
            return zero
        if installment.penalty_applied_on is not None:
            return zero

        penalty = policy.compute(installment.amount_due)
        installment.penalty_applied = installment.penalty_applied + penalty
        installment.penalty_applied_on = today
        self.refresh_status(installment, today)
        return penalty

    def outstanding_capital(self, installments: List[Installment]) -> Money:
        return Money.sum((i.capital_due for i in installments), self.currency)

    def outstanding_total(self, installments: List[Installment]) -> Money:
        return Money.sum((i.outstanding for i in installments), self.currency)

    def _to_dict(self, installment: Installment) -> Dict:
        result = installment.to_dict()
        for field_name in ('capital_portion', 'interest_portion', 'penalty_applied',
                           'capital_paid', 'interest_paid', 'penalty_paid'):
            result[field_name] = str(getattr(installment, field_name).amount)
        result['currency'] = installment.currency.code
        result['status'] = installment.status.value
        return result

    def _from_dict(self, data: Dict) -> Installment:
        currency = Currency[data['currency']]

        def money(field_name: str) -> Money:
            return Money(Decimal(data[field_name]), currency)

        penalty_applied_on = None
        if data.get('penalty_applied_on'):
            penalty_applied_on = date.fromisoformat(data['penalty_applied_on'])

        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            period_index=data['period_index'],
            due_date=date.fromisoformat(data['due_date']),
            capital_portion=money('capital_portion'),
            interest_portion=money('interest_portion'),
            penalty_applied=money('penalty_applied'),
            capital_paid=money('capital_paid'),
            interest_paid=money('interest_paid'),
            penalty_paid=money('penalty_paid'),
            status=InstallmentStatus(data['status']),
            penalty_applied_on=penalty_applied_on
        )
