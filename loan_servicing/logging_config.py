"""
Structured Logging Configuration Module

Every record is written as one JSON object. The servicing identifiers (loan,
payment, period) and the acting user are top-level keys so log search can
filter on them; anything else an operation records goes under "details".
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


ROOT_LOGGER = "loan_servicing"

# Record attributes promoted to top-level JSON keys, in output order
SERVICING_FIELDS = ("operation", "actor", "loan_id", "payment_id", "period_index")


class JSONFormatter(logging.Formatter):
    """JSON formatter with servicing fields lifted out of the record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in SERVICING_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        details = getattr(record, "details", None)
        if details:
            log_entry["details"] = details

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Decimal amounts and dates in details render as strings
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Route the package's records to stderr as JSON

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        The package root logger
    """
    logger = logging.getLogger(ROOT_LOGGER)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, operation: str, message: str,
               actor: Optional[str] = None, loan_id: Optional[str] = None,
               payment_id: Optional[str] = None, period_index: Optional[int] = None,
               level: int = logging.INFO, **details):
    """
    Log a completed servicing operation

    Args:
        logger: Module logger
        operation: Operation name (allocate_payment, write_off, ...)
        message: Human readable message
        actor: User recorded in the audit trail for the same operation
        loan_id, payment_id, period_index: What the operation touched
        **details: Amounts, counts and dates worth keeping with the line
    """
    logger.log(level, message, extra={
        "operation": operation,
        "actor": actor,
        "loan_id": loan_id,
        "payment_id": payment_id,
        "period_index": period_index,
        "details": details or None,
    })
