"""
Test suite for collections module

Overdue detection, priority buckets, recommended actions and penalty accrual.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.audit import AuditEventType
from loan_servicing.installments import InstallmentStatus, PenaltyPolicy, PenaltyKind
from loan_servicing.loans import LoanStatus
from loan_servicing.collections import (
    CollectionPriority, RecommendedAction, ContactMethod,
    classify_priority, recommend_action
)
from loan_servicing.exceptions import LoanNotFound


def mxn(value: str) -> Money:
    return Money(Decimal(value), Currency.MXN)


FLAT_50 = PenaltyPolicy(PenaltyKind.FLAT, flat_fee=Money(Decimal('50.00'), Currency.MXN))


class TestPriorityBuckets:
    """Days overdue to priority and suggested action"""

    @pytest.mark.parametrize("days,priority", [
        (1, CollectionPriority.LOW),
        (7, CollectionPriority.LOW),
        (8, CollectionPriority.MEDIUM),
        (14, CollectionPriority.MEDIUM),
        (15, CollectionPriority.HIGH),
        (30, CollectionPriority.HIGH),
        (31, CollectionPriority.CRITICAL),
        (400, CollectionPriority.CRITICAL),
    ])
    def test_priority(self, days, priority):
        assert classify_priority(days) == priority

    @pytest.mark.parametrize("days,action", [
        (1, RecommendedAction.SOFT_REMINDER),
        (3, RecommendedAction.SOFT_REMINDER),
        (4, RecommendedAction.PAYMENT_PLAN_OFFER),
        (7, RecommendedAction.PAYMENT_PLAN_OFFER),
        (8, RecommendedAction.PHONE_CALL),
        (14, RecommendedAction.PHONE_CALL),
        (15, RecommendedAction.SCHEDULED_VISIT),
        (30, RecommendedAction.SCHEDULED_VISIT),
        (31, RecommendedAction.LEGAL_NOTICE),
    ])
    def test_recommended_action(self, days, action):
        assert recommend_action(days) == action


class TestDetectOverdue:
    """Read-only overdue scan"""

    def test_nothing_overdue_on_due_date(self, system, loan):
        report = system.detect_overdue(date(2024, 1, 8))
        assert report.items == []
        assert report.summary.total_items == 0
        assert report.summary.average_days_overdue == Decimal('0')

    def test_items_sorted_most_overdue_first(self, system, loan):
        report = system.detect_overdue(date(2024, 1, 16))

        assert [(i.period_index, i.days_overdue) for i in report.items] == [(1, 8), (2, 1)]
        first = report.items[0]
        assert first.loan_id == loan.id
        assert first.customer_id == "CUST001"
        assert first.amount_overdue == mxn("105.58")
        assert first.priority == CollectionPriority.MEDIUM
        assert first.recommended_action == RecommendedAction.PHONE_CALL

    def test_summary(self, system, loan):
        summary = system.detect_overdue(date(2024, 1, 16)).summary

        assert summary.total_items == 2
        assert summary.total_amount_overdue == mxn("211.16")
        assert summary.total_penalties.is_zero()
        assert summary.distinct_loans == 1
        assert summary.distinct_customers == 1
        assert summary.average_days_overdue == Decimal('4.5')
        assert summary.by_priority == {"low": 1, "medium": 1, "high": 0, "critical": 0}

    def test_paid_installments_excluded(self, system, loan):
        system.allocate_payment(loan.id, "105.58", date(2024, 1, 8))

        report = system.detect_overdue(date(2024, 1, 16))
        assert [i.period_index for i in report.items] == [2]

    def test_partially_paid_amount(self, system, loan):
        system.allocate_payment(loan.id, "50.00", date(2024, 1, 8))

        item = system.detect_overdue(date(2024, 1, 10)).items[0]
        assert item.amount_overdue == mxn("55.58")

    def test_undisbursed_loans_ignored(self, system):
        system.loan_manager.create_loan(
            "CUST002", Decimal('500.00'), Decimal('0.52'), 5, date(2024, 1, 1))
        assert system.detect_overdue(date(2024, 3, 1)).items == []

    def test_scan_writes_nothing(self, system, loan):
        events = system.audit_trail.count_events()

        system.detect_overdue(date(2024, 2, 1))

        assert system.audit_trail.count_events() == events
        assert system.installment_ledger.get(loan.id, 1).status == InstallmentStatus.PENDING
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.DELIVERED

    def test_penalty_outstanding_reported(self, system, loan):
        system.overdue_detector.apply_penalties(date(2024, 1, 10), FLAT_50)

        report = system.detect_overdue(date(2024, 1, 10))
        assert report.items[0].penalty_outstanding == mxn("50.00")
        assert report.summary.total_penalties == mxn("50.00")


class TestApplyPenalties:
    """Mutating companion of the scan"""

    def test_charges_overdue_installments(self, system, loan):
        charges = system.overdue_detector.apply_penalties(date(2024, 1, 16), FLAT_50)

        assert [(c.period_index, c.amount) for c in charges] == [(1, mxn("50.00")), (2, mxn("50.00"))]
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.OVERDUE
        assert len(system.audit_trail.get_events_by_type(AuditEventType.PENALTY_APPLIED)) == 2

    def test_rerun_charges_nothing(self, system, loan):
        system.overdue_detector.apply_penalties(date(2024, 1, 10), FLAT_50)
        again = system.overdue_detector.apply_penalties(date(2024, 1, 11), FLAT_50)

        assert again == []
        assert system.installment_ledger.get(loan.id, 1).penalty_applied == mxn("50.00")

    def test_configured_policy_in_daily_cycle(self, system, loan):
        # Default configuration is tiered: 50.00 flat below 500.00
        charges = system.run_daily_cycle(date(2024, 1, 10))
        assert [c.amount for c in charges] == [mxn("50.00")]

    def test_overdue_loan_back_to_active_when_caught_up(self, system, loan):
        system.overdue_detector.apply_penalties(date(2024, 1, 10), FLAT_50)
        result = system.allocate_payment(loan.id, "105.58", date(2024, 1, 10))

        # Penalty first, so capital is still short and the loan stays overdue
        assert result.loan_status == LoanStatus.OVERDUE

        result = system.allocate_payment(loan.id, "50.00", date(2024, 1, 10))
        assert result.loan_status == LoanStatus.ACTIVE


class TestCollectionActions:
    """Contact log"""

    def test_record_action(self, system, loan):
        action = system.overdue_detector.record_collection_action(
            loan.id, "payment_reminder", contact_method=ContactMethod.WHATSAPP,
            notes="Promised to pay Friday", actor="collector1")

        rows = system.overdue_detector.sink.list_for_loan(loan.id)
        assert len(rows) == 1
        assert rows[0]["id"] == action.id
        assert rows[0]["contact_method"] == "whatsapp"

        events = system.audit_trail.get_events_by_type(AuditEventType.COLLECTION_ACTION_RECORDED)
        assert events[-1].entity_id == loan.id
        assert events[-1].user_id == "collector1"

    def test_contact_method_from_string(self, system, loan):
        action = system.overdue_detector.record_collection_action(loan.id, "visit", contact_method="visit")
        assert action.contact_method == ContactMethod.VISIT

    def test_unknown_contact_method(self, system, loan):
        with pytest.raises(ValueError):
            system.overdue_detector.record_collection_action(loan.id, "call", contact_method="pigeon")

    def test_unknown_loan(self, system):
        with pytest.raises(LoanNotFound):
            system.overdue_detector.record_collection_action("NOPE", "call")
