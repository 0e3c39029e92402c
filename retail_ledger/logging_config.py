"""
Structured Logging Configuration Module

JSON-formatted structured logging for ledger operations. Every money movement
is logged with the action, the resource it touched, its transaction id and
the amount moved, as top-level fields a log pipeline can index.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional, Union

from .currency import Money


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Record attributes lifted into the JSON document when present
LEDGER_FIELDS = (
    "correlation_id",
    "user_id",
    "action",
    "resource",
    "transaction_id",
    "account_id",
    "amount",
    "currency",
    "extra",
)


class JSONFormatter(logging.Formatter):
    """One JSON document per record, carrying whichever ledger fields were set"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in LEDGER_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "retail_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root ledger logger
        log_format: "json" or "text"
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "retail_ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               transaction_id: Optional[str] = None, account_id: Optional[str] = None,
               amount: Optional[Union[Money, str]] = None, extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the owner performing the action
        action: Action being performed, e.g. "transaction.complete"
        resource: Resource being acted upon
        correlation_id: Correlation ID for request tracing
        transaction_id: External transaction id
        account_id: Account the action is about
        amount: Money moved; logged as a plain decimal plus its currency code
        extra: Additional structured data
    """
    level_no = getattr(logging, level.upper())
    if not logger.isEnabledFor(level_no):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "transaction_id": transaction_id,
        "account_id": account_id,
        "extra": extra or None,
    }
    if isinstance(amount, Money):
        fields["amount"] = str(amount.amount)
        fields["currency"] = amount.currency.code
    elif amount is not None:
        fields["amount"] = str(amount)

    logger.log(level_no, message, extra={k: v for k, v in fields.items() if v is not None})
