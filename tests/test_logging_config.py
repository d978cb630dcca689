"""
Tests for structured JSON logging
"""

import json
import logging
from decimal import Decimal
from datetime import date

import pytest

from loan_servicing.logging_config import JSONFormatter, log_action


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.lines = []
        self.setFormatter(JSONFormatter())

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


@pytest.fixture
def recorded():
    logger = logging.getLogger("servicing_log_test")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = RecordingHandler()
    logger.addHandler(handler)
    yield logger, handler.lines
    logger.removeHandler(handler)


class TestJSONFormatter:

    def test_servicing_fields_are_top_level(self, recorded):
        logger, lines = recorded
        log_action(logger, "allocate_payment", "Payment allocated", actor="cashier1",
                   loan_id="LOAN001", payment_id="PAY001", amount=Decimal('105.58'), rows=2)

        line = lines[0]
        assert line["message"] == "Payment allocated"
        assert line["level"] == "INFO"
        assert line["operation"] == "allocate_payment"
        assert line["actor"] == "cashier1"
        assert line["loan_id"] == "LOAN001"
        assert line["payment_id"] == "PAY001"
        assert line["details"] == {"amount": "105.58", "rows": 2}

    def test_missing_fields_are_omitted(self, recorded):
        logger, lines = recorded
        log_action(logger, "apply_penalties", "Penalties applied", as_of=date(2024, 1, 16))

        line = lines[0]
        assert "loan_id" not in line
        assert "actor" not in line
        assert line["details"] == {"as_of": "2024-01-16"}

    def test_plain_records_with_loan_id(self, recorded):
        logger, lines = recorded
        logger.warning("Lock timeout on loan %s", "LOAN001", extra={"loan_id": "LOAN001"})

        assert lines[0]["message"] == "Lock timeout on loan LOAN001"
        assert lines[0]["loan_id"] == "LOAN001"
        assert "details" not in lines[0]

    def test_level_and_exception(self, recorded):
        logger, lines = recorded
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            logger.exception("Posting failed")
        log_action(logger, "write_off", "Loan resolved", level=logging.DEBUG, loan_id="LOAN001")

        assert lines[0]["level"] == "ERROR"
        assert "ledger unavailable" in lines[0]["exception"]
        assert lines[1]["level"] == "DEBUG"
