"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency, fits_currency
from ..amortization import PaymentFrequency, ScheduleRow
from ..installments import Installment, Component
from ..loans import Loan, LoanStatus
from ..payments import AllocationLine, PaymentAllocation, PaymentMethod
from ..exceptions import AllocationMismatch


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("MXN", description="Currency code (MXN, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money(value: Money) -> dict:
    return MoneyModel.from_money(value).model_dump()


# Loan schemas
class ScheduleRequest(BaseModel):
    principal: Decimal = Field(..., description="Amount financed")
    annual_rate: Decimal = Field(..., description="Annual rate as a fraction, e.g. 0.52")
    term_periods: int
    start_date: Optional[date] = None
    frequency: PaymentFrequency = PaymentFrequency.WEEKLY


class CreateLoanRequest(ScheduleRequest):
    customer_id: str
    start_date: date
    loan_id: Optional[str] = None


class StatusChangeRequest(BaseModel):
    status: LoanStatus
    reason: str = ""


class DisburseRequest(BaseModel):
    disbursed_on: date
    method: PaymentMethod = PaymentMethod.CASH


class SettlementRequest(BaseModel):
    amount: Decimal
    resolved_on: date
    reason: str = ""
    method: PaymentMethod = PaymentMethod.CASH


class WriteOffRequest(BaseModel):
    resolved_on: date
    reason: str = ""


class RepossessionRequest(BaseModel):
    recovery_value: Decimal
    resolved_on: date
    recovery_costs: Optional[Decimal] = None
    reason: str = ""


# Payment schemas
class PaymentRequest(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., description="Payment amount")
    payment_date: date
    payment_id: Optional[str] = None
    target_period: Optional[int] = None
    method: PaymentMethod = PaymentMethod.CASH


class AllocationModel(BaseModel):
    period_index: Optional[int] = None
    component: Component
    amount: Decimal

    def to_line(self, currency: Currency) -> AllocationLine:
        if not fits_currency(self.amount, currency):
            raise AllocationMismatch(
                f"Allocation amount {self.amount} has more than {currency.precision} decimal places")
        return AllocationLine(self.period_index, self.component, Money(self.amount, currency))


class ReclassifyRequest(BaseModel):
    allocations: List[AllocationModel]
    note: str
    new_date: Optional[date] = None


class CollectionActionRequest(BaseModel):
    action_type: str
    contact_method: str = "phone"
    notes: str = ""


# Response helpers
def schedule_row_dict(row: ScheduleRow) -> dict:
    return {
        "period_index": row.period_index,
        "due_date": row.due_date.isoformat() if row.due_date else None,
        "payment": money(row.payment),
        "interest_portion": money(row.interest_portion),
        "principal_portion": money(row.principal_portion),
        "ending_balance": money(row.ending_balance)
    }


def installment_dict(installment: Installment) -> dict:
    return {
        "id": installment.id,
        "period_index": installment.period_index,
        "due_date": installment.due_date.isoformat(),
        "status": installment.status.value,
        "amount_due": money(installment.amount_due),
        "capital_portion": money(installment.capital_portion),
        "interest_portion": money(installment.interest_portion),
        "penalty_applied": money(installment.penalty_applied),
        "capital_paid": money(installment.capital_paid),
        "interest_paid": money(installment.interest_paid),
        "penalty_paid": money(installment.penalty_paid),
        "outstanding": money(installment.outstanding)
    }


def loan_dict(loan: Loan) -> dict:
    return {
        "id": loan.id,
        "customer_id": loan.customer_id,
        "status": loan.status.value,
        "principal": money(loan.principal),
        "annual_rate": str(loan.annual_rate),
        "term_periods": loan.term_periods,
        "payment_frequency": loan.payment_frequency.value,
        "start_date": loan.start_date.isoformat(),
        "advance_credit": money(loan.advance_credit),
        "delivered_date": loan.delivered_date.isoformat() if loan.delivered_date else None,
        "closed_date": loan.closed_date.isoformat() if loan.closed_date else None
    }


def allocation_dict(allocation: PaymentAllocation) -> dict:
    return {
        "id": allocation.id,
        "period_index": allocation.period_index,
        "component": allocation.component.value,
        "amount": money(allocation.amount),
        "version": allocation.version,
        "superseded": allocation.superseded
    }
