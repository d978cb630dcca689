"""
Amortization Module

Fixed-payment (French) amortization schedules. Every row is rounded to
currency precision and the final row absorbs the rounding drift so that the
principal portions add up to the principal exactly.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional, Union
from enum import Enum
import calendar

from .currency import Money, Currency, fits_currency
from .exceptions import InvalidScheduleInput


class PaymentFrequency(Enum):
    """Payment frequency options"""
    WEEKLY = "weekly"          # 52 payments per year
    BI_WEEKLY = "bi_weekly"    # 26 payments per year
    MONTHLY = "monthly"        # 12 payments per year

    @property
    def periods_per_year(self) -> int:
        return {
            PaymentFrequency.WEEKLY: 52,
            PaymentFrequency.BI_WEEKLY: 26,
            PaymentFrequency.MONTHLY: 12
        }[self]

    def advance(self, start: date, periods: int) -> date:
        """Date that lies the given number of periods after start"""
        if self == PaymentFrequency.WEEKLY:
            return start + timedelta(days=7 * periods)
        elif self == PaymentFrequency.BI_WEEKLY:
            return start + timedelta(days=14 * periods)
        return add_months(start, periods)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(frozen=True)
class ScheduleRow:
    """Single period in an amortization schedule"""
    period_index: int
    payment: Money
    interest_portion: Money
    principal_portion: Money
    ending_balance: Money
    due_date: Optional[date] = None

    def __post_init__(self):
        if self.principal_portion + self.interest_portion != self.payment:
            raise ValueError(f"Payment {self.payment.to_string()} does not equal "
                             f"principal {self.principal_portion.to_string()} + "
                             f"interest {self.interest_portion.to_string()}")


class AmortizationCalculator:
    """Builds fixed-payment schedules for a single currency"""

    def __init__(self, currency: Currency = Currency.MXN):
        self.currency = currency

    def _to_money(self, value: Union[Money, Decimal, int, str]) -> Money:
        if isinstance(value, Money):
            if value.currency != self.currency:
                raise InvalidScheduleInput(
                    f"Principal currency {value.currency.code} does not match {self.currency.code}")
            return value
        if isinstance(value, float):
            raise InvalidScheduleInput("Principal must be Decimal, int or str, never float")
        try:
            amount = Decimal(str(value))
            if not fits_currency(amount, self.currency):
                raise InvalidScheduleInput(
                    f"Principal {amount} has more than {self.currency.precision} decimal places")
            return Money(amount, self.currency)
        except ArithmeticError:
            raise InvalidScheduleInput(f"Invalid principal {value!r}")

    def validate(self, principal: Money, annual_rate: Decimal, term_periods: int) -> None:
        """
        Raises:
            InvalidScheduleInput: principal <= 0, annual_rate < 0 or term_periods <= 0
        """
        if not principal.is_positive():
            raise InvalidScheduleInput(f"Principal must be positive, got {principal.to_string()}")
        if not isinstance(annual_rate, Decimal) or not annual_rate.is_finite():
            raise InvalidScheduleInput(f"Annual rate must be a finite Decimal, got {annual_rate!r}")
        if annual_rate < Decimal('0'):
            raise InvalidScheduleInput(f"Annual rate cannot be negative, got {annual_rate}")
        if isinstance(term_periods, bool) or not isinstance(term_periods, int) or term_periods <= 0:
            raise InvalidScheduleInput(f"Term must be a positive number of periods, got {term_periods!r}")

    def calculate_payment(
        self,
        principal: Money,
        periodic_rate: Decimal,
        term_periods: int
    ) -> Money:
        """
        Standard annuity payment: P * r(1+r)^n / ((1+r)^n - 1), or P / n when r == 0
        """
        if periodic_rate == Decimal('0'):
            return principal / Decimal(term_periods)

        factor = (Decimal('1') + periodic_rate) ** term_periods
        payment = principal.amount * periodic_rate * factor / (factor - Decimal('1'))
        return Money(payment, self.currency)

    def generate_schedule(
        self,
        principal: Union[Money, Decimal, int, str],
        annual_rate: Decimal,
        term_periods: int,
        start_date: Optional[date] = None,
        frequency: PaymentFrequency = PaymentFrequency.WEEKLY
    ) -> List[ScheduleRow]:
        """
        Generate an amortization schedule

        Args:
            principal: Amount financed
            annual_rate: Nominal annual rate as a fraction (0.52 for 52%)
            term_periods: Number of payments
            start_date: Loan start; row k is due k periods later (no dates if None)
            frequency: Payment frequency, weekly by default

        Returns:
            Ordered list of ScheduleRow, one per period

        Raises:
            InvalidScheduleInput: If any input is out of range
        """
        principal = self._to_money(principal)
        self.validate(principal, annual_rate, term_periods)

        periodic_rate = annual_rate / Decimal(frequency.periods_per_year)
        payment = self.calculate_payment(principal, periodic_rate, term_periods)
        zero = Money.zero(self.currency)

        schedule = []
        balance = principal
        for period in range(1, term_periods + 1):
            interest = balance * periodic_rate

            if period == term_periods:
                # Final row takes whatever is left so the balance lands on zero
                principal_portion = balance
            else:
                principal_portion = payment - interest
                if principal_portion > balance:
                    principal_portion = balance
                if principal_portion.is_negative():
                    principal_portion = zero

            ending = balance - principal_portion
            due_date = frequency.advance(start_date, period) if start_date else None

            schedule.append(ScheduleRow(
                period_index=period,
                payment=principal_portion + interest,
                interest_portion=interest,
                principal_portion=principal_portion,
                ending_balance=ending,
                due_date=due_date
            ))
            balance = ending

        return schedule
