"""
Ledger Reconciliation Module

Builds the balance sheet and income statement from journal entries and checks
the accounting equation:

    control = assets - |liabilities + capital + provisional net income|

A non-zero control is reported as a warning, never corrected. Nothing in this
module writes to the books.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .currency import Money, Currency
from .audit import AuditTrail, AuditEventType
from .ledger import GeneralLedger, AccountType, AccountCategory, LedgerAccount, JournalEntry
from .exceptions import LedgerImbalance
from .logging_config import get_logger


logger = get_logger(__name__)


# Income statement bucket per account category
INCOME_BUCKETS = {
    AccountCategory.INTEREST_INCOME: "interest_income",
    AccountCategory.PENALTY_INCOME: "penalties",
    AccountCategory.PRODUCT_MARGIN: "product_margin",
    AccountCategory.COST_OF_GOODS: "cost_of_goods",
    AccountCategory.OPERATING_EXPENSES: "operating_expenses",
    AccountCategory.BAD_DEBT: "other_expenses",
}
BUCKET_ORDER = ["interest_income", "penalties", "product_margin", "cost_of_goods",
                "operating_expenses", "other_income", "other_expenses"]


@dataclass
class AccountBalance:
    code: str
    name: str
    category: AccountCategory
    balance: Money


@dataclass
class BalanceSheetSection:
    name: str
    accounts: List[AccountBalance]
    total: Money


@dataclass
class BalanceSheet:
    as_of: Optional[date]
    assets: BalanceSheetSection
    liabilities: BalanceSheetSection
    capital: BalanceSheetSection
    provisional_net_income: Money


@dataclass
class IncomeStatement:
    start_date: Optional[date]
    end_date: Optional[date]
    buckets: Dict[str, Money]
    total_revenue: Money
    total_expenses: Money
    net_income: Money
    provisional: bool = True


@dataclass
class ReconciliationReport:
    balance_sheet: BalanceSheet
    income_statement: IncomeStatement
    control: Money
    is_balanced: bool
    warnings: List[str] = field(default_factory=list)

    def raise_for_imbalance(self) -> None:
        """
        Raises:
            LedgerImbalance: If the control value is not zero
        """
        if not self.is_balanced:
            period = self.balance_sheet.as_of.isoformat() if self.balance_sheet.as_of else None
            raise LedgerImbalance(self.control.amount, period)


class LedgerReconciler:
    """
    Read-only aggregation over the general ledger
    """

    def __init__(self, ledger: GeneralLedger, audit_trail: Optional[AuditTrail] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.audit_trail = audit_trail
        self.currency: Currency = ledger.currency

    def reconcile(self, start_date: Optional[date] = None, end_date: Optional[date] = None,
                  as_of: Optional[date] = None) -> ReconciliationReport:
        """
        Balance sheet at end_date, income statement for [start_date, end_date]

        The balance sheet is cumulative up to end_date. Income not yet closed
        into capital (there are no closing entries) is the provisional net
        income that takes part in the control.

        Args:
            start_date: First day of the income statement window (None = inception)
            end_date: Last day of the window and balance sheet date (None = everything)
            as_of: Today; the statement is provisional while end_date has not passed
        """
        with self.storage.snapshot():
            accounts = {a.code: a for a in self.ledger.list_accounts()}
            cumulative_entries = self.ledger.get_entries(end_date=end_date)

        cumulative = self._balances(accounts, cumulative_entries)
        window = self._balances(accounts, [e for e in cumulative_entries
                                           if start_date is None or e.entry_date >= start_date])

        provisional = end_date is None or as_of is None or as_of <= end_date
        income_statement = self._income_statement(accounts, window, start_date, end_date, provisional)
        provisional_net_income = self._income_statement(
            accounts, cumulative, None, end_date, provisional).net_income

        balance_sheet = BalanceSheet(
            as_of=end_date,
            assets=self._section("assets", accounts, cumulative, AccountType.ASSET),
            liabilities=self._section("liabilities", accounts, cumulative, AccountType.LIABILITY),
            capital=self._section("capital", accounts, cumulative, AccountType.EQUITY),
            provisional_net_income=provisional_net_income
        )

        control = balance_sheet.assets.total - abs(
            balance_sheet.liabilities.total + balance_sheet.capital.total + provisional_net_income)
        is_balanced = control.is_zero()

        warnings = []
        if not is_balanced:
            message = (f"Ledger out of balance: assets {balance_sheet.assets.total.to_string()}, "
                       f"liabilities {balance_sheet.liabilities.total.to_string()}, "
                       f"capital {balance_sheet.capital.total.to_string()}, "
                       f"provisional net income {provisional_net_income.to_string()}, "
                       f"control {control.to_string()}")
            warnings.append(message)
            logger.warning(message)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LEDGER_IMBALANCE_DETECTED,
                    entity_type="ledger",
                    entity_id=end_date.isoformat() if end_date else "all",
                    metadata={"control": control.amount, "start_date": start_date,
                              "end_date": end_date}
                )

        return ReconciliationReport(
            balance_sheet=balance_sheet,
            income_statement=income_statement,
            control=control,
            is_balanced=is_balanced,
            warnings=warnings
        )

    def _balances(self, accounts: Dict[str, LedgerAccount],
                  entries: List[JournalEntry]) -> Dict[str, Money]:
        """Per-account balance in each account's normal-balance sign"""
        raw = {code: Money.zero(self.currency) for code in accounts}
        for entry in entries:
            for line in entry.lines:
                if line.account_code not in raw:
                    raw[line.account_code] = Money.zero(self.currency)
                raw[line.account_code] = raw[line.account_code] + line.debit - line.credit

        balances = {}
        for code, balance in raw.items():
            account = accounts.get(code)
            if account is not None and not account.account_type.is_debit_normal:
                balance = -balance
            balances[code] = balance
        return balances

    def _section(self, name: str, accounts: Dict[str, LedgerAccount], balances: Dict[str, Money],
                 account_type: AccountType) -> BalanceSheetSection:
        rows = [
            AccountBalance(code, accounts[code].name, accounts[code].category, balances[code])
            for code in sorted(accounts)
            if accounts[code].account_type == account_type
        ]
        return BalanceSheetSection(
            name=name,
            accounts=rows,
            total=Money.sum((row.balance for row in rows), self.currency)
        )

    def _income_statement(self, accounts: Dict[str, LedgerAccount], balances: Dict[str, Money],
                          start_date: Optional[date], end_date: Optional[date],
                          provisional: bool) -> IncomeStatement:
        buckets = {bucket: Money.zero(self.currency) for bucket in BUCKET_ORDER}
        revenue = Money.zero(self.currency)
        expenses = Money.zero(self.currency)

        for code, account in accounts.items():
            if account.account_type == AccountType.REVENUE:
                revenue = revenue + balances[code]
            elif account.account_type == AccountType.EXPENSE:
                expenses = expenses + balances[code]
            else:
                continue
            bucket = INCOME_BUCKETS.get(account.category)
            if bucket is None:
                bucket = "other_income" if account.account_type == AccountType.REVENUE else "other_expenses"
            buckets[bucket] = buckets[bucket] + balances[code]

        return IncomeStatement(
            start_date=start_date,
            end_date=end_date,
            buckets=buckets,
            total_revenue=revenue,
            total_expenses=expenses,
            net_income=revenue - expenses,
            provisional=provisional
        )
