"""
Test suite for the double-entry ledger

Balanced entries, reversals and account balances.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.ledger import (
    GeneralLedger, JournalEntry, JournalEntryLine, AccountCode, AccountType, AccountCategory
)


def mxn(value: str) -> Money:
    return Money(Decimal(value), Currency.MXN)


class TestJournalEntryLine:

    def test_exactly_one_side(self):
        with pytest.raises(ValueError, match="exactly one"):
            JournalEntryLine(AccountCode.CASH, mxn("1.00"), mxn("1.00"))
        with pytest.raises(ValueError, match="exactly one"):
            JournalEntryLine(AccountCode.CASH, mxn("0"), mxn("0"))

    def test_no_negative_amounts(self):
        with pytest.raises(ValueError, match="negative"):
            JournalEntryLine.debit_line(AccountCode.CASH, mxn("-1.00"))

    def test_helpers(self):
        assert JournalEntryLine.debit_line(AccountCode.CASH, mxn("5.00")).is_debit
        assert not JournalEntryLine.credit_line(AccountCode.CASH, mxn("5.00")).is_debit


class TestGeneralLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = GeneralLedger(self.storage, self.audit_trail, Currency.MXN)
        self.ledger.ensure_chart_of_accounts()

    def post_payment(self, entry_date=date(2024, 1, 8)):
        return self.ledger.post_entry(
            entry_date=entry_date,
            source_type="payment",
            source_id="PAY001",
            description="Payment loan #LOAN001",
            lines=[
                JournalEntryLine.debit_line(AccountCode.CASH, mxn("105.58")),
                JournalEntryLine.credit_line(AccountCode.CUSTOMER_RECEIVABLE, mxn("95.58")),
                JournalEntryLine.credit_line(AccountCode.INTEREST_INCOME, mxn("10.00")),
            ]
        )

    def test_chart_of_accounts_seeded_once(self):
        count = len(self.ledger.list_accounts())
        self.ledger.ensure_chart_of_accounts()
        assert len(self.ledger.list_accounts()) == count
        receivable = self.ledger.get_account(AccountCode.CUSTOMER_RECEIVABLE)
        assert receivable.account_type == AccountType.ASSET
        assert self.ledger.get_account(AccountCode.BAD_DEBT_EXPENSE).category == AccountCategory.BAD_DEBT

    def test_post_balanced_entry(self):
        entry = self.post_payment()

        stored = self.ledger.get_entry(entry.id)
        assert stored.total == mxn("105.58")
        assert stored.get_affected_accounts() == {
            AccountCode.CASH, AccountCode.CUSTOMER_RECEIVABLE, AccountCode.INTEREST_INCOME}
        events = self.audit_trail.get_events_by_type(AuditEventType.JOURNAL_ENTRY_POSTED)
        assert events[-1].entity_id == entry.id

    def test_unbalanced_entry_rejected(self):
        with pytest.raises(ValueError, match="not balanced"):
            self.ledger.post_entry(date(2024, 1, 8), "payment", "PAY001", "Broken", [
                JournalEntryLine.debit_line(AccountCode.CASH, mxn("105.58")),
                JournalEntryLine.credit_line(AccountCode.INTEREST_INCOME, mxn("10.00")),
            ])
        assert self.ledger.get_entries() == []

    def test_unknown_account_rejected(self):
        with pytest.raises(ValueError, match="Unknown ledger account"):
            self.ledger.post_entry(date(2024, 1, 8), "payment", "PAY001", "Typo", [
                JournalEntryLine.debit_line("9999", mxn("1.00")),
                JournalEntryLine.credit_line(AccountCode.CASH, mxn("1.00")),
            ])

    def test_other_currency_rejected(self):
        usd = Money(Decimal('1.00'), Currency.USD)
        with pytest.raises(ValueError, match="currency"):
            self.ledger.post_entry(date(2024, 1, 8), "payment", "PAY001", "USD", [
                JournalEntryLine.debit_line(AccountCode.CASH, usd),
                JournalEntryLine.credit_line(AccountCode.INTEREST_INCOME, usd),
            ])

    def test_balances_use_normal_sign(self):
        self.post_payment()

        assert self.ledger.account_balance(AccountCode.CASH) == mxn("105.58")
        assert self.ledger.account_balance(AccountCode.CUSTOMER_RECEIVABLE) == mxn("-95.58")
        assert self.ledger.account_balance(AccountCode.INTEREST_INCOME) == mxn("10.00")

    def test_balance_window(self):
        self.post_payment(date(2024, 1, 8))
        self.post_payment(date(2024, 2, 8))

        assert self.ledger.account_balance(AccountCode.CASH, end_date=date(2024, 1, 31)) == mxn("105.58")
        assert self.ledger.account_balance(AccountCode.CASH, start_date=date(2024, 2, 1)) == mxn("105.58")
        assert self.ledger.account_balance(AccountCode.CASH) == mxn("211.16")

    def test_reversal(self):
        entry = self.post_payment()

        reversal = self.ledger.reverse_entry(entry.id, date(2024, 1, 9), "posted twice")

        assert reversal.reverses == entry.id
        assert self.ledger.get_entry(entry.id).reversed_by == reversal.id
        assert self.ledger.account_balance(AccountCode.CASH).is_zero()
        assert self.ledger.account_balance(AccountCode.INTEREST_INCOME).is_zero()

    def test_reverse_twice_rejected(self):
        entry = self.post_payment()
        self.ledger.reverse_entry(entry.id, date(2024, 1, 9), "first")
        with pytest.raises(ValueError, match="already reversed"):
            self.ledger.reverse_entry(entry.id, date(2024, 1, 9), "second")

    def test_reverse_unknown_entry(self):
        with pytest.raises(ValueError, match="not found"):
            self.ledger.reverse_entry("missing", date(2024, 1, 9), "nothing")

    def test_entries_filtered_by_source(self):
        self.post_payment()
        assert len(self.ledger.get_entries(source_type="payment", source_id="PAY001")) == 1
        assert self.ledger.get_entries(source_type="loan_disbursement") == []

    def test_entry_needs_lines(self):
        with pytest.raises(ValueError, match="at least one line"):
            JournalEntry(id="E1", created_at=None, updated_at=None, entry_date=date(2024, 1, 8),
                         source_type="manual", source_id="X", description="Empty", lines=[])
