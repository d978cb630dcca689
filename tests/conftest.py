"""
Shared fixtures: an in-memory servicing system with a pinned clock and a
disbursed 1,000 MXN weekly loan at 52% (1% per week) over 10 weeks.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.config import ServicingConfig
from loan_servicing.storage import InMemoryStorage
from loan_servicing.service import LoanServicingSystem


START = date(2024, 1, 1)
TODAY = date(2024, 1, 5)
# Four installments (due 01-08 to 01-29) are past due on this day
LATE_TODAY = date(2024, 1, 30)


def build_system(today: date) -> LoanServicingSystem:
    return LoanServicingSystem(
        storage=InMemoryStorage(),
        config=ServicingConfig(storage_backend="memory"),
        clock=lambda: today
    )


def open_loan(system: LoanServicingSystem):
    created = system.loan_manager.create_loan(
        customer_id="CUST001",
        principal=Decimal('1000.00'),
        annual_rate=Decimal('0.52'),
        term_periods=10,
        start_date=START,
        loan_id="LOAN001"
    )
    return system.loan_manager.disburse(created.id, START)


@pytest.fixture
def system():
    """Servicing system over in-memory storage, today pinned to 2024-01-05"""
    return build_system(TODAY)


@pytest.fixture
def loan(system):
    """Disbursed loan; installments fall due every Monday from 2024-01-08"""
    return open_loan(system)


@pytest.fixture
def late_system():
    """Servicing system whose clock reads 2024-01-30"""
    return build_system(LATE_TODAY)


@pytest.fixture
def late_loan(late_system):
    """The shared loan seen from 2024-01-30, after the daily cycle flagged it overdue"""
    loan = open_loan(late_system)
    late_system.run_daily_cycle()
    return late_system.loan_manager.get_loan(loan.id)
