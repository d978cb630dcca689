"""
Reporting endpoints: overdue portfolio, reconciliation, audit integrity
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import LoanServicingSystem, get_servicing_system
from .schemas import money
from ..reconciliation import BalanceSheetSection


router = APIRouter()


@router.get("/overdue")
async def overdue_report(
    as_of: Optional[date] = None,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Overdue installments with priority and recommended action"""
    report = system.detect_overdue(as_of)
    summary = report.summary
    return {
        "as_of": report.as_of.isoformat(),
        "items": [
            {
                "loan_id": item.loan_id,
                "customer_id": item.customer_id,
                "period_index": item.period_index,
                "due_date": item.due_date.isoformat(),
                "days_overdue": item.days_overdue,
                "amount_overdue": money(item.amount_overdue),
                "penalty_outstanding": money(item.penalty_outstanding),
                "priority": item.priority.value,
                "recommended_action": item.recommended_action.value
            }
            for item in report.items
        ],
        "summary": {
            "total_items": summary.total_items,
            "total_amount_overdue": money(summary.total_amount_overdue),
            "total_penalties": money(summary.total_penalties),
            "distinct_loans": summary.distinct_loans,
            "distinct_customers": summary.distinct_customers,
            "average_days_overdue": str(summary.average_days_overdue),
            "by_priority": summary.by_priority
        }
    }


@router.get("/reconciliation")
async def reconciliation_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    system: LoanServicingSystem = Depends(get_servicing_system)
):
    """Balance sheet, income statement and control value"""
    report = system.reconcile(start_date, end_date)
    sheet = report.balance_sheet
    statement = report.income_statement
    return {
        "balance_sheet": {
            "as_of": sheet.as_of.isoformat() if sheet.as_of else None,
            "assets": _section(sheet.assets),
            "liabilities": _section(sheet.liabilities),
            "capital": _section(sheet.capital),
            "provisional_net_income": money(sheet.provisional_net_income)
        },
        "income_statement": {
            "start_date": statement.start_date.isoformat() if statement.start_date else None,
            "end_date": statement.end_date.isoformat() if statement.end_date else None,
            "buckets": {name: money(value) for name, value in statement.buckets.items()},
            "total_revenue": money(statement.total_revenue),
            "total_expenses": money(statement.total_expenses),
            "net_income": money(statement.net_income),
            "provisional": statement.provisional
        },
        "control": money(report.control),
        "is_balanced": report.is_balanced,
        "warnings": report.warnings
    }


@router.get("/audit/verify")
async def verify_audit_trail(system: LoanServicingSystem = Depends(get_servicing_system)):
    """Check the audit hash chain"""
    return system.audit_trail.verify_integrity()


def _section(section: BalanceSheetSection) -> dict:
    return {
        "total": money(section.total),
        "accounts": [
            {"code": row.code, "name": row.name, "balance": money(row.balance)}
            for row in section.accounts
        ]
    }
