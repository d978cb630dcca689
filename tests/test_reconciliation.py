"""
Test suite for ledger reconciliation

Balance sheet, income statement and the accounting control value.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.ledger import GeneralLedger, JournalEntryLine, AccountCode
from loan_servicing.reconciliation import LedgerReconciler
from loan_servicing.installments import PenaltyPolicy, PenaltyKind
from loan_servicing.exceptions import LedgerImbalance


def mxn(value: str) -> Money:
    return Money(Decimal(value), Currency.MXN)


class TestBalanceSheet:
    """Control value on hand-posted entries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = GeneralLedger(self.storage, self.audit_trail, Currency.MXN)
        self.ledger.ensure_chart_of_accounts()
        self.reconciler = LedgerReconciler(self.ledger, self.audit_trail)

    def post_funding(self):
        self.ledger.post_entry(
            entry_date=date(2024, 1, 1),
            source_type="capital",
            source_id="FUND001",
            description="Initial funding",
            lines=[
                JournalEntryLine.debit_line(AccountCode.CASH, mxn("50000.00")),
                JournalEntryLine.credit_line(AccountCode.CAPITAL_CONTRIBUTIONS, mxn("40000.00")),
                JournalEntryLine.credit_line(AccountCode.OTHER_CREDITORS, mxn("10000.00")),
            ]
        )

    def test_empty_ledger_is_balanced(self):
        report = self.reconciler.reconcile()
        assert report.is_balanced
        assert report.control.is_zero()

    def test_funding_balances(self):
        self.post_funding()

        report = self.reconciler.reconcile(end_date=date(2024, 1, 31))
        sheet = report.balance_sheet
        assert sheet.assets.total == mxn("50000.00")
        assert sheet.liabilities.total == mxn("10000.00")
        assert sheet.capital.total == mxn("40000.00")
        assert sheet.provisional_net_income.is_zero()
        assert report.control.is_zero()
        assert report.is_balanced
        assert report.warnings == []

    def test_income_statement_window(self):
        self.post_funding()
        for day, amount in ((date(2024, 1, 10), "100.00"), (date(2024, 2, 10), "40.00")):
            self.ledger.post_entry(day, "payment", f"P{day.isoformat()}", "Interest", [
                JournalEntryLine.debit_line(AccountCode.CASH, mxn(amount)),
                JournalEntryLine.credit_line(AccountCode.INTEREST_INCOME, mxn(amount)),
            ])

        report = self.reconciler.reconcile(date(2024, 2, 1), date(2024, 2, 29), as_of=date(2024, 3, 5))

        statement = report.income_statement
        assert statement.buckets["interest_income"] == mxn("40.00")
        assert statement.net_income == mxn("40.00")
        assert not statement.provisional
        # The balance sheet is cumulative, so all income since inception counts
        assert report.balance_sheet.provisional_net_income == mxn("140.00")
        assert report.is_balanced

    def test_statement_provisional_while_period_open(self):
        report = self.reconciler.reconcile(date(2024, 1, 1), date(2024, 1, 31), as_of=date(2024, 1, 15))
        assert report.income_statement.provisional

    def test_expense_buckets(self):
        self.post_funding()
        self.ledger.post_entry(date(2024, 1, 20), "write_off", "L1", "Bad debt", [
            JournalEntryLine.debit_line(AccountCode.BAD_DEBT_EXPENSE, mxn("300.00")),
            JournalEntryLine.credit_line(AccountCode.CASH, mxn("300.00")),
        ])

        report = self.reconciler.reconcile()
        assert report.income_statement.buckets["other_expenses"] == mxn("300.00")
        assert report.income_statement.total_expenses == mxn("300.00")
        assert report.balance_sheet.provisional_net_income == mxn("-300.00")
        assert report.is_balanced

    def test_imbalance_is_reported_not_fixed(self):
        self.post_funding()
        # A chart without the liability account drops its balance from the sheet
        self.storage.delete("ledger_accounts", AccountCode.OTHER_CREDITORS)

        report = self.reconciler.reconcile()

        assert not report.is_balanced
        assert report.control == mxn("10000.00")
        assert len(report.warnings) == 1
        assert "out of balance" in report.warnings[0]
        events = self.audit_trail.get_events_by_type(AuditEventType.LEDGER_IMBALANCE_DETECTED)
        assert len(events) == 1
        with pytest.raises(LedgerImbalance):
            report.raise_for_imbalance()

    def test_balanced_report_does_not_raise(self):
        self.post_funding()
        self.reconciler.reconcile().raise_for_imbalance()


class TestServicingBooks:
    """Books produced by the servicing flows stay balanced"""

    def fund(self, system):
        system.ledger.post_entry(date(2023, 12, 31), "capital", "FUND001", "Funding", [
            JournalEntryLine.debit_line(AccountCode.CASH, mxn("10000.00")),
            JournalEntryLine.credit_line(AccountCode.CAPITAL_CONTRIBUTIONS, mxn("10000.00")),
        ])

    def test_after_payments_penalties_and_advance(self, system, loan):
        self.fund(system)
        policy = PenaltyPolicy(PenaltyKind.FLAT, flat_fee=mxn("50.00"))
        system.overdue_detector.apply_penalties(date(2024, 1, 10), policy)
        system.allocate_payment(loan.id, "300.00", date(2024, 1, 10))

        report = system.reconcile()

        assert report.is_balanced
        statement = report.income_statement
        assert statement.buckets["penalties"] == mxn("50.00")
        assert statement.buckets["interest_income"] == mxn("19.04")
        assert report.balance_sheet.assets.total == mxn("10107.88")
        assert report.balance_sheet.liabilities.total == mxn("38.84")

    def test_after_write_off(self, system, loan):
        self.fund(system)
        system.allocate_payment(loan.id, "105.58", date(2024, 1, 5))
        system.resolutions.write_off(loan.id, date(2024, 2, 1))

        report = system.reconcile()

        assert report.is_balanced
        assert report.income_statement.buckets["other_expenses"] == mxn("904.42")
        assert report.balance_sheet.provisional_net_income == mxn("-894.42")
