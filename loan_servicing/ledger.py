"""
Double-Entry Ledger Engine

Chart of accounts and the journal. Every business event posts exactly one
journal entry whose debits equal its credits. Entries are immutable once
posted; corrections are made with reversing entries. Balances are derived
from entries, never stored separately.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountType.ASSET, AccountType.EXPENSE)


class AccountCategory(Enum):
    """Balance sheet groups and income statement buckets"""
    CURRENT_ASSETS = "current_assets"
    FIXED_ASSETS = "fixed_assets"
    CURRENT_LIABILITIES = "current_liabilities"
    CAPITAL = "capital"
    RETAINED_EARNINGS = "retained_earnings"
    INTEREST_INCOME = "interest_income"
    PENALTY_INCOME = "penalty_income"
    PRODUCT_MARGIN = "product_margin"
    COST_OF_GOODS = "cost_of_goods"
    OPERATING_EXPENSES = "operating_expenses"
    BAD_DEBT = "bad_debt"


class AccountCode:
    """Well-known account codes used by the servicing flows"""
    CASH = "1101"
    BANK = "1102"
    CUSTOMER_RECEIVABLE = "1103"
    INVENTORY = "1104"
    REPOSSESSED_INVENTORY = "1105"
    SUPPLIER_ADVANCES = "1106"
    FIXED_ASSETS = "1500"
    SUPPLIERS = "2100"
    OTHER_CREDITORS = "2200"
    CUSTOMER_ADVANCES = "2300"
    RETAINED_EARNINGS = "3000"
    CAPITAL_CONTRIBUTIONS = "3100"
    SALES = "4000"
    INTEREST_INCOME = "4100"
    PENALTY_INCOME = "4101"
    COST_OF_GOODS = "5000"
    GENERAL_EXPENSES = "6000"
    BAD_DEBT_EXPENSE = "6500"


DEFAULT_CHART_OF_ACCOUNTS = [
    (AccountCode.CASH, "Cash", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.BANK, "Bank", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.CUSTOMER_RECEIVABLE, "Customer Receivables", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.INVENTORY, "Inventory", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.REPOSSESSED_INVENTORY, "Repossessed Inventory", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.SUPPLIER_ADVANCES, "Supplier Advances", AccountType.ASSET, AccountCategory.CURRENT_ASSETS),
    (AccountCode.FIXED_ASSETS, "Fixed Assets", AccountType.ASSET, AccountCategory.FIXED_ASSETS),
    (AccountCode.SUPPLIERS, "Suppliers", AccountType.LIABILITY, AccountCategory.CURRENT_LIABILITIES),
    (AccountCode.OTHER_CREDITORS, "Other Creditors", AccountType.LIABILITY, AccountCategory.CURRENT_LIABILITIES),
    (AccountCode.CUSTOMER_ADVANCES, "Customer Advances", AccountType.LIABILITY, AccountCategory.CURRENT_LIABILITIES),
    (AccountCode.RETAINED_EARNINGS, "Retained Earnings", AccountType.EQUITY, AccountCategory.RETAINED_EARNINGS),
    (AccountCode.CAPITAL_CONTRIBUTIONS, "Capital Contributions", AccountType.EQUITY, AccountCategory.CAPITAL),
    (AccountCode.SALES, "Sales", AccountType.REVENUE, AccountCategory.PRODUCT_MARGIN),
    (AccountCode.INTEREST_INCOME, "Customer Interest", AccountType.REVENUE, AccountCategory.INTEREST_INCOME),
    (AccountCode.PENALTY_INCOME, "Customer Penalties", AccountType.REVENUE, AccountCategory.PENALTY_INCOME),
    (AccountCode.COST_OF_GOODS, "Cost of Goods Sold", AccountType.EXPENSE, AccountCategory.COST_OF_GOODS),
    (AccountCode.GENERAL_EXPENSES, "General Expenses", AccountType.EXPENSE, AccountCategory.OPERATING_EXPENSES),
    (AccountCode.BAD_DEBT_EXPENSE, "Bad Debt Expense", AccountType.EXPENSE, AccountCategory.BAD_DEBT),
]


@dataclass
class LedgerAccount:
    """Chart of accounts entry"""
    code: str
    name: str
    account_type: AccountType
    category: AccountCategory
    is_active: bool = True


@dataclass
class JournalEntryLine:
    """
    Individual line item in a journal entry
    Each line affects one account with either a debit or credit
    """
    account_code: str
    debit: Money
    credit: Money
    description: str = ""

    def __post_init__(self):
        if self.debit.currency != self.credit.currency:
            raise ValueError("Debit and credit amounts must use same currency")
        if self.debit.is_negative() or self.credit.is_negative():
            raise ValueError("Journal entry line amounts cannot be negative")
        if self.debit.is_zero() == self.credit.is_zero():
            raise ValueError("Journal entry line must have exactly one of debit or credit amount")

    @classmethod
    def debit_line(cls, account_code: str, amount: Money, description: str = "") -> 'JournalEntryLine':
        return cls(account_code, amount, Money.zero(amount.currency), description)

    @classmethod
    def credit_line(cls, account_code: str, amount: Money, description: str = "") -> 'JournalEntryLine':
        return cls(account_code, Money.zero(amount.currency), amount, description)

    @property
    def currency(self) -> Currency:
        return self.debit.currency

    @property
    def is_debit(self) -> bool:
        return not self.debit.is_zero()


@dataclass
class JournalEntry(StorageRecord):
    """
    Balanced journal entry for one atomic business event
    """
    entry_date: date
    source_type: str  # loan_payment, loan_disbursement, reclassification, ...
    source_id: str
    description: str
    lines: List[JournalEntryLine] = field(default_factory=list)
    reverses: Optional[str] = None
    reversed_by: Optional[str] = None

    def __post_init__(self):
        self.validate_balance()

    def validate_balance(self) -> None:
        """
        Validate that total debits equal total credits
        This is the fundamental rule of double-entry bookkeeping
        """
        if not self.lines:
            raise ValueError("Journal entry must have at least one line")

        currencies = {line.currency for line in self.lines}
        if len(currencies) != 1:
            raise ValueError("Journal entry lines must share one currency")
        currency = currencies.pop()

        debits = Money.sum((line.debit for line in self.lines), currency)
        credits = Money.sum((line.credit for line in self.lines), currency)
        if debits != credits:
            raise ValueError(f"Journal entry not balanced: "
                             f"debits={debits.to_string()}, credits={credits.to_string()}")

    @property
    def currency(self) -> Currency:
        return self.lines[0].currency

    @property
    def total(self) -> Money:
        return Money.sum((line.debit for line in self.lines), self.currency)

    def get_affected_accounts(self) -> Set[str]:
        return {line.account_code for line in self.lines}


class GeneralLedger:
    """
    General ledger that manages the chart of accounts and journal entries
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 currency: Currency = Currency.MXN):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.accounts_table = "ledger_accounts"
        self.entries_table = "journal_entries"

    def ensure_chart_of_accounts(self) -> None:
        """Seed the default chart of accounts (existing accounts are kept)"""
        for code, name, account_type, category in DEFAULT_CHART_OF_ACCOUNTS:
            if not self.storage.exists(self.accounts_table, code):
                self.add_account(code, name, account_type, category)

    def add_account(self, code: str, name: str, account_type: AccountType,
                    category: AccountCategory) -> LedgerAccount:
        account = LedgerAccount(code=code, name=name, account_type=account_type, category=category)
        self.storage.save(self.accounts_table, code, {
            'code': code,
            'name': name,
            'account_type': account_type.value,
            'category': category.value,
            'is_active': True
        })
        return account

    def get_account(self, code: str) -> Optional[LedgerAccount]:
        data = self.storage.load(self.accounts_table, code)
        if data:
            return self._account_from_dict(data)
        return None

    def list_accounts(self) -> List[LedgerAccount]:
        accounts = [self._account_from_dict(d) for d in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.code)
        return accounts

    def post_entry(
        self,
        entry_date: date,
        source_type: str,
        source_id: str,
        description: str,
        lines: List[JournalEntryLine],
        reverses: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> JournalEntry:
        """
        Post a balanced journal entry

        Raises:
            ValueError: If lines don't balance or reference unknown accounts
        """
        for line in lines:
            if line.currency != self.currency:
                raise ValueError(f"Ledger currency is {self.currency.code}, got {line.currency.code}")
            if not self.storage.exists(self.accounts_table, line.account_code):
                raise ValueError(f"Unknown ledger account {line.account_code}")

        now = datetime.now(timezone.utc)
        entry = JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_date=entry_date,
            source_type=source_type,
            source_id=source_id,
            description=description,
            lines=lines,
            reverses=reverses
        )

        with self.storage.atomic():
            self._save_entry(entry)
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                entity_type="journal_entry",
                entity_id=entry.id,
                user_id=user_id,
                metadata={
                    "source_type": source_type,
                    "source_id": source_id,
                    "total": entry.total.amount,
                    "accounts": sorted(entry.get_affected_accounts()),
                    "reverses": reverses
                }
            )

        return entry

    def reverse_entry(self, entry_id: str, entry_date: date, reason: str,
                      user_id: Optional[str] = None) -> JournalEntry:
        """
        Reverse a posted journal entry by posting the mirrored lines

        Raises:
            ValueError: If entry doesn't exist or was already reversed
        """
        original = self.get_entry(entry_id)
        if not original:
            raise ValueError(f"Journal entry {entry_id} not found")
        if original.reversed_by:
            raise ValueError(f"Journal entry {entry_id} already reversed")

        reversing_lines = [
            JournalEntryLine(
                account_code=line.account_code,
                debit=line.credit,
                credit=line.debit,
                description=f"REVERSAL: {line.description}"
            )
            for line in original.lines
        ]

        with self.storage.atomic():
            reversal = self.post_entry(
                entry_date=entry_date,
                source_type=original.source_type,
                source_id=original.source_id,
                description=f"REVERSAL: {reason}",
                lines=reversing_lines,
                reverses=original.id,
                user_id=user_id
            )
            original.reversed_by = reversal.id
            original.updated_at = datetime.now(timezone.utc)
            self._save_entry(original)

        return reversal

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        data = self.storage.load(self.entries_table, entry_id)
        if data:
            return self._entry_from_dict(data)
        return None

    def get_entries(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None
    ) -> List[JournalEntry]:
        """Entries inside an inclusive date window, oldest first"""
        filters = {}
        if source_type:
            filters['source_type'] = source_type
        if source_id:
            filters['source_id'] = source_id

        entries = [self._entry_from_dict(d) for d in self.storage.find(self.entries_table, filters)]
        if start_date:
            entries = [e for e in entries if e.entry_date >= start_date]
        if end_date:
            entries = [e for e in entries if e.entry_date <= end_date]

        entries.sort(key=lambda e: (e.entry_date, e.created_at))
        return entries

    def account_balance(self, code: str, start_date: Optional[date] = None,
                        end_date: Optional[date] = None) -> Money:
        """
        Balance of one account in its normal-balance sign convention
        (debits - credits for assets/expenses, credits - debits otherwise)
        """
        account = self.get_account(code)
        if not account:
            raise ValueError(f"Unknown ledger account {code}")

        balance = Money.zero(self.currency)
        for entry in self.get_entries(start_date, end_date):
            for line in entry.lines:
                if line.account_code == code:
                    balance = balance + line.debit - line.credit

        if not account.account_type.is_debit_normal:
            balance = -balance
        return balance

    def _save_entry(self, entry: JournalEntry) -> None:
        self.storage.save(self.entries_table, entry.id, self._entry_to_dict(entry))

    def _entry_to_dict(self, entry: JournalEntry) -> Dict:
        return {
            'id': entry.id,
            'created_at': entry.created_at.isoformat(),
            'updated_at': entry.updated_at.isoformat(),
            'entry_date': entry.entry_date.isoformat(),
            'source_type': entry.source_type,
            'source_id': entry.source_id,
            'description': entry.description,
            'currency': entry.currency.code,
            'reverses': entry.reverses,
            'reversed_by': entry.reversed_by,
            'lines': [
                {
                    'account_code': line.account_code,
                    'debit': str(line.debit.amount),
                    'credit': str(line.credit.amount),
                    'description': line.description
                }
                for line in entry.lines
            ]
        }

    def _entry_from_dict(self, data: Dict) -> JournalEntry:
        currency = Currency[data['currency']]
        lines = [
            JournalEntryLine(
                account_code=line['account_code'],
                debit=Money(Decimal(line['debit']), currency),
                credit=Money(Decimal(line['credit']), currency),
                description=line.get('description', '')
            )
            for line in data['lines']
        ]
        return JournalEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entry_date=date.fromisoformat(data['entry_date']),
            source_type=data['source_type'],
            source_id=data['source_id'],
            description=data['description'],
            lines=lines,
            reverses=data.get('reverses'),
            reversed_by=data.get('reversed_by')
        )

    def _account_from_dict(self, data: Dict) -> LedgerAccount:
        return LedgerAccount(
            code=data['code'],
            name=data['name'],
            account_type=AccountType(data['account_type']),
            category=AccountCategory(data['category']),
            is_active=data.get('is_active', True)
        )
