"""
Loan Resolution Module

Terminal outcomes for a loan that will not be repaid as scheduled:
negotiated settlement, write-off, or repossession of the financed product.
Each one closes the loan, clears its receivable with a balanced journal entry
and leaves a ResolutionRecord behind.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, min_money, fits_currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .installments import InstallmentLedger, Installment
from .loans import LoanManager, Loan, LoanStatus
from .ledger import GeneralLedger, JournalEntryLine, AccountCode
from .locking import LoanLockManager
from .exceptions import InvalidResolution
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class ResolutionType(Enum):
    SETTLEMENT = "settlement"
    WRITE_OFF = "write_off"
    REPOSSESSION = "repossession"


class ResolutionStatus(Enum):
    COMPLETED = "completed"


@dataclass
class ResolutionRecord(StorageRecord):
    """How a loan was closed and what it cost"""
    loan_id: str
    resolution_type: ResolutionType
    amount: Money                 # cash received or net recovery value
    write_off_amount: Money       # capital charged to bad debt
    resolved_on: date
    status: ResolutionStatus = ResolutionStatus.COMPLETED
    recovery_costs: Optional[Money] = None
    reason: str = ""
    created_by: Optional[str] = None
    journal_entry_id: Optional[str] = None


@dataclass
class ResolutionOptions:
    loan_id: str
    outstanding_capital: Money
    outstanding_interest: Money
    outstanding_penalties: Money
    advance_credit: Money
    settlement_minimum: Money
    settlement_recommended: Money
    settlement_maximum: Money
    write_off_amount: Money


class LoanResolutionManager:
    """
    Settles, writes off and repossesses loans
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
        self.table_name = "loan_resolutions"

    def resolution_options(self, loan_id: str) -> ResolutionOptions:
        """Amounts a collector can offer before choosing a resolution"""
        loan = self.loans.require_loan(loan_id)
        installments = self.installments.load(loan_id)
        capital, interest, penalties = self._outstanding(installments)
        held = min_money(loan.advance_credit, capital)
        remaining_capital = capital - held
        return ResolutionOptions(
            loan_id=loan_id,
            outstanding_capital=capital,
            outstanding_interest=interest,
            outstanding_penalties=penalties,
            advance_credit=loan.advance_credit,
            settlement_minimum=Money(self.currency.quantum, self.currency),
            settlement_recommended=remaining_capital,
            settlement_maximum=remaining_capital + interest + penalties,
            write_off_amount=remaining_capital
        )

    def settle(self, loan_id: str, amount: Union[Money, Decimal, str], today: date,
               actor: Optional[str] = None, reason: str = "",
               funding_account: str = AccountCode.CASH) -> ResolutionRecord:
        """
        Close the loan for a negotiated cash amount

        Cash goes to capital first; anything above capital is interest and
        then penalty income, and any capital left uncovered goes to bad debt.

        Raises:
            InvalidResolution: If the amount is not positive or exceeds what is owed
        """
        amount = self._to_money(amount)
        if not amount.is_positive():
            raise InvalidResolution(f"Settlement amount must be positive, got {amount.to_string()}")

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._open_loan(loan_id)
            capital, interest, penalties = self._outstanding(self.installments.load(loan_id))
            held = min_money(loan.advance_credit, capital)
            remaining_capital = capital - held
            maximum = remaining_capital + interest + penalties
            if amount > maximum:
                raise InvalidResolution(
                    f"Settlement {amount.to_string()} exceeds {maximum.to_string()} owed on loan {loan_id}")

            to_capital = min_money(amount, remaining_capital)
            excess = amount - to_capital
            to_interest = min_money(excess, interest)
            to_penalty = excess - to_interest
            shortfall = remaining_capital - to_capital

            lines = [JournalEntryLine.debit_line(funding_account, amount, f"Settlement loan #{loan_id}")]
            lines += self._capital_clearing_lines(loan, capital, held, shortfall)
            if to_interest.is_positive():
                lines.append(JournalEntryLine.credit_line(AccountCode.INTEREST_INCOME, to_interest,
                                                          f"Settlement interest loan #{loan_id}"))
            if to_penalty.is_positive():
                lines.append(JournalEntryLine.credit_line(AccountCode.PENALTY_INCOME, to_penalty,
                                                          f"Settlement penalties loan #{loan_id}"))

            return self._resolve(loan, ResolutionType.SETTLEMENT, LoanStatus.SETTLED, lines,
                                 amount=amount, write_off_amount=shortfall, held=held,
                                 today=today, actor=actor, reason=reason)

    def write_off(self, loan_id: str, today: date, actor: Optional[str] = None,
                  reason: str = "") -> ResolutionRecord:
        """
        Charge the whole outstanding capital to bad debt expense

        Raises:
            InvalidResolution: If no capital is outstanding
        """
        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._open_loan(loan_id)
            capital, _, _ = self._outstanding(self.installments.load(loan_id))
            if not capital.is_positive():
                raise InvalidResolution(f"Loan {loan_id} has no outstanding capital to write off")
            held = min_money(loan.advance_credit, capital)
            shortfall = capital - held

            lines = self._capital_clearing_lines(loan, capital, held, shortfall)
            return self._resolve(loan, ResolutionType.WRITE_OFF, LoanStatus.WRITTEN_OFF, lines,
                                 amount=Money.zero(self.currency), write_off_amount=shortfall,
                                 held=held, today=today, actor=actor, reason=reason)

    def repossess(self, loan_id: str, recovery_value: Union[Money, Decimal, str], today: date,
                  actor: Optional[str] = None, recovery_costs: Union[Money, Decimal, str, None] = None,
                  reason: str = "") -> ResolutionRecord:
        """
        Take the product back into repossessed inventory

        The net recovery (resale value less recovery costs) replaces part of
        the receivable; the rest of the capital is a bad debt loss.

        Raises:
            InvalidResolution: If the net recovery is negative or above the capital owed
        """
        recovery_value = self._to_money(recovery_value)
        costs = self._to_money(recovery_costs) if recovery_costs is not None else Money.zero(self.currency)
        net_recovery = recovery_value - costs
        if net_recovery.is_negative() or costs.is_negative():
            raise InvalidResolution(
                f"Net recovery {net_recovery.to_string()} must not be negative")

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._open_loan(loan_id)
            capital, _, _ = self._outstanding(self.installments.load(loan_id))
            held = min_money(loan.advance_credit, capital)
            remaining_capital = capital - held
            if net_recovery > remaining_capital:
                raise InvalidResolution(
                    f"Net recovery {net_recovery.to_string()} exceeds outstanding capital "
                    f"{remaining_capital.to_string()} on loan {loan_id}")
            loss = remaining_capital - net_recovery

            lines = []
            if net_recovery.is_positive():
                lines.append(JournalEntryLine.debit_line(AccountCode.REPOSSESSED_INVENTORY, net_recovery,
                                                         f"Repossessed product loan #{loan_id}"))
            lines += self._capital_clearing_lines(loan, capital, held, loss)
            if not lines:
                raise InvalidResolution(f"Loan {loan_id} has no outstanding capital to recover")

            return self._resolve(loan, ResolutionType.REPOSSESSION, LoanStatus.REPOSSESSED, lines,
                                 amount=net_recovery, write_off_amount=loss, held=held,
                                 today=today, actor=actor, reason=reason, recovery_costs=costs)

    def get_resolutions(self, loan_id: str) -> List[ResolutionRecord]:
        rows = [self._from_dict(d) for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        rows.sort(key=lambda r: r.created_at)
        return rows

    def _resolve(self, loan: Loan, resolution_type: ResolutionType, target: LoanStatus,
                 lines: List[JournalEntryLine], amount: Money, write_off_amount: Money,
                 held: Money, today: date, actor: Optional[str], reason: str,
                 recovery_costs: Optional[Money] = None) -> ResolutionRecord:
        entry = self.ledger.post_entry(
            entry_date=today,
            source_type=resolution_type.value,
            source_id=loan.id,
            description=f"{resolution_type.value.replace('_', ' ').title()} loan #{loan.id}",
            lines=lines,
            user_id=actor
        )

        loan.advance_credit = loan.advance_credit - held
        self.loans.transition(loan, target, actor=actor, reason=reason or resolution_type.value,
                              today=today)

        now = datetime.now(timezone.utc)
        record = ResolutionRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            resolution_type=resolution_type,
            amount=amount,
            write_off_amount=write_off_amount,
            resolved_on=today,
            recovery_costs=recovery_costs,
            reason=reason,
            created_by=actor,
            journal_entry_id=entry.id
        )
        self.storage.save(self.table_name, record.id, self._to_dict(record))

        self.audit_trail.log_event(
            event_type=AuditEventType.RESOLUTION_RECORDED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor,
            metadata={
                "resolution_id": record.id,
                "type": resolution_type.value,
                "amount": amount.amount,
                "write_off_amount": write_off_amount.amount,
                "reason": reason
            }
        )
        log_action(logger, resolution_type.value, "Loan resolved", actor=actor, loan_id=loan.id,
                   amount=amount.amount, write_off_amount=write_off_amount.amount)
        return record

    def _capital_clearing_lines(self, loan: Loan, capital: Money, held: Money,
                                bad_debt: Money) -> List[JournalEntryLine]:
        """Held advance and bad debt on the debit side, the receivable on the credit side"""
        lines = []
        if held.is_positive():
            lines.append(JournalEntryLine.debit_line(AccountCode.CUSTOMER_ADVANCES, held,
                                                     f"Advance credit loan #{loan.id}"))
        if bad_debt.is_positive():
            lines.append(JournalEntryLine.debit_line(AccountCode.BAD_DEBT_EXPENSE, bad_debt,
                                                     f"Uncollectible capital loan #{loan.id}"))
        if capital.is_positive():
            lines.append(JournalEntryLine.credit_line(AccountCode.CUSTOMER_RECEIVABLE, capital,
                                                      f"Receivable cleared loan #{loan.id}"))
        return lines

    def _open_loan(self, loan_id: str) -> Loan:
        loan = self.loans.require_loan(loan_id)
        if not loan.status.accepts_payments:
            raise InvalidResolution(f"Loan {loan_id} is {loan.status.value} and cannot be resolved")
        return loan

    def _outstanding(self, installments: List[Installment]):
        capital = Money.sum((i.capital_due for i in installments), self.currency)
        interest = Money.sum((i.interest_due for i in installments), self.currency)
        penalties = Money.sum((i.penalty_due for i in installments), self.currency)
        return capital, interest, penalties

    def _to_money(self, value: Union[Money, Decimal, str]) -> Money:
        if isinstance(value, Money):
            return value
        if isinstance(value, float):
            raise InvalidResolution("Amounts must be Decimal or str, never float")
        try:
            amount = Decimal(str(value))
            if not fits_currency(amount, self.currency):
                raise InvalidResolution(
                    f"Amount {amount} has more than {self.currency.precision} decimal places")
            return Money(amount, self.currency)
        except ArithmeticError:
            raise InvalidResolution(f"Invalid amount {value!r}")

    def _to_dict(self, record: ResolutionRecord) -> Dict:
        result = record.to_dict()
        result['amount'] = str(record.amount.amount)
        result['write_off_amount'] = str(record.write_off_amount.amount)
        result['recovery_costs'] = str(record.recovery_costs.amount) if record.recovery_costs else None
        result['currency'] = record.amount.currency.code
        result['resolution_type'] = record.resolution_type.value
        result['status'] = record.status.value
        return result

    def _from_dict(self, data: Dict) -> ResolutionRecord:
        currency = Currency[data['currency']]
        recovery_costs = None
        if data.get('recovery_costs') is not None:
            recovery_costs = Money(Decimal(data['recovery_costs']), currency)
        return ResolutionRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            resolution_type=ResolutionType(data['resolution_type']),
            amount=Money(Decimal(data['amount']), currency),
            write_off_amount=Money(Decimal(data['write_off_amount']), currency),
            resolved_on=date.fromisoformat(data['resolved_on']),
            status=ResolutionStatus(data['status']),
            recovery_costs=recovery_costs,
            reason=data.get('reason', ''),
            created_by=data.get('created_by'),
            journal_entry_id=data.get('journal_entry_id')
        )
