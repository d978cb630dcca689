"""
Test suite for payment reclassification

A correction replaces a payment's allocation in one step, keeps the old rows
as superseded history and re-posts the journal entry.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.audit import AuditEventType
from loan_servicing.installments import InstallmentStatus, Component
from loan_servicing.ledger import AccountCode
from loan_servicing.payments import AllocationLine
from loan_servicing.exceptions import AllocationMismatch, PaymentNotFound, LoanNotPayable


def mxn(value: str) -> Money:
    return Money(Decimal(value), Currency.MXN)


@pytest.fixture
def payment(system, loan):
    """105.58 paid on 2024-01-05, applied to period 1"""
    return system.allocate_payment(loan.id, "105.58", date(2024, 1, 5), payment_id="PAY001").payment


def snapshot(system, loan_id):
    return [(i.period_index, i.capital_paid, i.interest_paid, i.penalty_paid, i.status)
            for i in system.installment_ledger.load(loan_id)]


class TestReclassifyPayment:
    """Successful corrections"""

    def test_move_to_another_period(self, system, loan, payment):
        lines = [AllocationLine(2, Component.INTEREST, mxn("9.04")),
                 AllocationLine(2, Component.CAPITAL, mxn("96.54"))]

        result = system.reclassify_payment("PAY001", None, lines, "Customer paid week 2",
                                           actor="supervisor1")

        assert result.payment.allocation_version == 2
        assert [(a.period_index, a.component, a.amount) for a in result.allocations] == [
            (2, Component.INTEREST, mxn("9.04")), (2, Component.CAPITAL, mxn("96.54"))]
        assert [i.period_index for i in result.updated_installments] == [1, 2]

        first = system.installment_ledger.get(loan.id, 1)
        second = system.installment_ledger.get(loan.id, 2)
        assert first.total_paid.is_zero()
        assert first.status == InstallmentStatus.PENDING
        assert second.status == InstallmentStatus.PAID

    def test_same_allocation_leaves_balances_unchanged(self, system, loan, payment):
        before = snapshot(system, loan.id)
        lines = [a.to_line() for a in system.allocator.get_allocations("PAY001")]

        system.reclassify_payment("PAY001", None, lines, "No-op correction")

        assert snapshot(system, loan.id) == before

    def test_superseded_rows_are_kept(self, system, loan, payment):
        lines = [AllocationLine(1, Component.INTEREST, mxn("10.00")),
                 AllocationLine(1, Component.CAPITAL, mxn("95.58"))]
        system.reclassify_payment("PAY001", None, lines, "Re-applied")

        current = system.allocator.get_allocations("PAY001")
        history = system.allocator.get_allocations("PAY001", include_superseded=True)
        assert len(current) == 2
        assert all(a.version == 2 for a in current)
        assert len(history) == 4
        assert [a.version for a in history if a.superseded] == [1, 1]

    def test_note_and_new_date(self, system, loan, payment):
        lines = [a.to_line() for a in system.allocator.get_allocations("PAY001")]

        result = system.reclassify_payment("PAY001", date(2024, 1, 6), lines, "Deposit date",
                                           actor="supervisor1")

        assert result.payment.payment_date == date(2024, 1, 6)
        notes = system.reclassifier.get_notes("PAY001")
        assert len(notes) == 1
        assert notes[0].old_date == date(2024, 1, 5)
        assert notes[0].new_date == date(2024, 1, 6)
        assert (notes[0].old_version, notes[0].new_version) == (1, 2)
        assert notes[0].reason == "Deposit date"
        assert notes[0].actor == "supervisor1"

    def test_journal_reversed_and_reposted(self, system, loan, payment):
        old_entry_id = payment.journal_entry_id
        lines = [AllocationLine(1, Component.INTEREST, mxn("10.00")),
                 AllocationLine(1, Component.CAPITAL, mxn("90.58")),
                 AllocationLine(2, Component.ADVANCE, mxn("5.00"))]

        result = system.reclassify_payment("PAY001", None, lines, "Hold 5.00 as advance")

        assert system.ledger.get_entry(old_entry_id).reversed_by is not None
        assert result.payment.journal_entry_id != old_entry_id
        assert system.ledger.account_balance(AccountCode.CASH) == mxn("-894.42")
        assert system.ledger.account_balance(AccountCode.CUSTOMER_ADVANCES) == mxn("5.00")
        assert system.ledger.account_balance(AccountCode.CUSTOMER_RECEIVABLE) == mxn("909.42")
        assert system.loan_manager.get_loan(loan.id).advance_credit == mxn("5.00")

    def test_audit_event(self, system, loan, payment):
        lines = [a.to_line() for a in system.allocator.get_allocations("PAY001")]
        system.reclassify_payment("PAY001", None, lines, "Check", actor="supervisor1")

        events = system.audit_trail.get_events_by_type(AuditEventType.PAYMENT_RECLASSIFIED)
        assert len(events) == 1
        assert events[0].entity_id == "PAY001"
        assert events[0].metadata["reason"] == "Check"
        assert len(events[0].metadata["superseded"]) == 2


class TestReclassificationRejected:
    """Failures leave everything as it was"""

    def test_total_mismatch(self, system, loan, payment):
        before = snapshot(system, loan.id)
        events = system.audit_trail.count_events()

        with pytest.raises(AllocationMismatch, match="add up"):
            system.reclassify_payment(
                "PAY001", None, [AllocationLine(1, Component.CAPITAL, mxn("100.00"))], "Wrong")

        assert snapshot(system, loan.id) == before
        assert system.audit_trail.count_events() == events
        assert system.allocator.require_payment("PAY001").allocation_version == 1

    def test_overflowing_component_rolls_back(self, system, loan, payment):
        before = snapshot(system, loan.id)
        lines = [AllocationLine(1, Component.INTEREST, mxn("50.00")),
                 AllocationLine(1, Component.CAPITAL, mxn("55.58"))]

        with pytest.raises(AllocationMismatch, match="exceeds"):
            system.reclassify_payment("PAY001", None, lines, "Too much interest")

        assert snapshot(system, loan.id) == before
        assert len(system.allocator.get_allocations("PAY001", include_superseded=True)) == 2
        assert system.reclassifier.get_notes("PAY001") == []
        assert system.ledger.get_entry(payment.journal_entry_id).reversed_by is None

    def test_empty_allocation(self, system, loan, payment):
        with pytest.raises(AllocationMismatch):
            system.reclassify_payment("PAY001", None, [], "Nothing")

    def test_unknown_period(self, system, loan, payment):
        with pytest.raises(AllocationMismatch, match="no period"):
            system.reclassify_payment(
                "PAY001", None, [AllocationLine(11, Component.CAPITAL, mxn("105.58"))], "Typo")

    def test_unknown_payment(self, system, loan):
        with pytest.raises(PaymentNotFound):
            system.reclassify_payment("NOPE", None, [], "Missing")

    def test_applied_advance_cannot_be_undone(self, system, loan):
        system.allocate_payment(loan.id, "200.00", date(2024, 1, 5), payment_id="PAY002")
        system.allocator.apply_advance_credit(loan.id, date(2024, 1, 15))

        lines = [AllocationLine(1, Component.INTEREST, mxn("10.00")),
                 AllocationLine(1, Component.CAPITAL, mxn("95.58")),
                 AllocationLine(2, Component.INTEREST, mxn("9.04")),
                 AllocationLine(2, Component.CAPITAL, mxn("85.38"))]
        with pytest.raises(AllocationMismatch, match="advance credit"):
            system.reclassify_payment("PAY002", None, lines, "Spell out the advance")

    def test_closed_loan(self, system, loan, payment):
        system.resolutions.write_off(loan.id, date(2024, 2, 1))
        lines = [a.to_line() for a in system.allocator.get_allocations("PAY001")]

        with pytest.raises(LoanNotPayable):
            system.reclassify_payment("PAY001", None, lines, "Too late")
