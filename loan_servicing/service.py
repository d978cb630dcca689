"""
Loan Servicing System

Wires storage, ledger, audit trail and the servicing components together from
configuration and exposes the operations collaborators call. "Today" comes
from an injectable clock so tests and batch jobs can pin it.
"""

from decimal import Decimal
from datetime import date
from typing import Callable, List, Optional, Union

from .config import ServicingConfig, get_config
from .currency import Money, Currency
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .ledger import GeneralLedger
from .locking import LoanLockManager
from .amortization import AmortizationCalculator, PaymentFrequency, ScheduleRow
from .installments import InstallmentLedger, PenaltyPolicy
from .loans import LoanManager
from .payments import PaymentAllocator, AllocationLine, AllocationResult, AdvanceApplication
from .collections import OverdueDetector, OverdueReport, PenaltyCharge, LIVE_STATUSES
from .reclassification import ReclassificationEngine, ReclassificationResult
from .reconciliation import LedgerReconciler, ReconciliationReport
from .resolutions import LoanResolutionManager
from .logging_config import get_logger


logger = get_logger(__name__)


def create_storage(config: ServicingConfig) -> StorageInterface:
    """Storage backend named by configuration"""
    if config.storage_backend == "memory":
        return InMemoryStorage()
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path)
    raise ValueError(f"Unknown storage backend {config.storage_backend!r}")


class LoanServicingSystem:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[ServicingConfig] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.clock = clock or date.today
        self.currency = Currency[self.config.currency]
        self.frequency = PaymentFrequency(self.config.payment_frequency)
        self.penalty_policy = PenaltyPolicy.from_config(self.config, self.currency)

        self.audit_trail = AuditTrail(self.storage)
        self.ledger = GeneralLedger(self.storage, self.audit_trail, self.currency)
        self.ledger.ensure_chart_of_accounts()
        self.locks = LoanLockManager(self.config.lock_timeout_seconds)

        self.calculator = AmortizationCalculator(self.currency)
        self.installment_ledger = InstallmentLedger(self.storage, self.currency)
        self.loan_manager = LoanManager(
            self.storage, self.installment_ledger, self.ledger, self.audit_trail, self.calculator
        )
        self.allocator = PaymentAllocator(
            self.storage, self.loan_manager, self.installment_ledger, self.ledger,
            self.audit_trail, self.locks
        )
        self.overdue_detector = OverdueDetector(
            self.storage, self.loan_manager, self.installment_ledger, self.audit_trail, self.locks
        )
        self.reclassifier = ReclassificationEngine(self.storage, self.allocator, self.audit_trail)
        self.reconciler = LedgerReconciler(self.ledger, self.audit_trail)
        self.resolutions = LoanResolutionManager(
            self.storage, self.loan_manager, self.installment_ledger, self.ledger,
            self.audit_trail, self.locks
        )

    def today(self) -> date:
        return self.clock()

    def generate_schedule(self, principal: Union[Money, Decimal, str], annual_rate: Decimal,
                          term_periods: int, start_date: Optional[date] = None,
                          frequency: Optional[PaymentFrequency] = None) -> List[ScheduleRow]:
        return self.calculator.generate_schedule(
            principal, annual_rate, term_periods,
            start_date=start_date, frequency=frequency or self.frequency
        )

    def allocate_payment(self, loan_id: str, amount: Union[Money, Decimal, str],
                         payment_date: Optional[date] = None, **kwargs) -> AllocationResult:
        payment_date = payment_date or self.today()
        return self.allocator.allocate_payment(
            loan_id, amount, payment_date, as_of=max(payment_date, self.today()), **kwargs
        )

    def reclassify_payment(self, payment_id: str, new_date: Optional[date],
                           allocations: List[AllocationLine], note: str,
                           actor: Optional[str] = None) -> ReclassificationResult:
        return self.reclassifier.reclassify_payment(
            payment_id, new_date, allocations, note, actor=actor,
            as_of=max(new_date or self.today(), self.today())
        )

    def detect_overdue(self, as_of: Optional[date] = None) -> OverdueReport:
        return self.overdue_detector.detect_overdue(as_of or self.today())

    def reconcile(self, start_date: Optional[date] = None,
                  end_date: Optional[date] = None) -> ReconciliationReport:
        return self.reconciler.reconcile(start_date, end_date, as_of=self.today())

    def run_daily_cycle(self, today: Optional[date] = None,
                        actor: Optional[str] = None) -> List[PenaltyCharge]:
        """
        End-of-day batch: apply held advance credit to installments that came
        due, then charge penalties on whatever is still overdue
        """
        today = today or self.today()
        applied: List[AdvanceApplication] = []
        for loan in self.loan_manager.list_loans(LIVE_STATUSES):
            if loan.advance_credit.is_positive():
                application = self.allocator.apply_advance_credit(
                    loan.id, today, actor=actor, as_of=max(today, self.today()))
                if application:
                    applied.append(application)

        charges = self.overdue_detector.apply_penalties(today, self.penalty_policy, actor=actor)
        logger.info("Daily cycle %s: %d advance applications, %d penalties",
                    today, len(applied), len(charges))
        return charges
