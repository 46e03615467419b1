"""
Structured Logging Configuration Module

JSON log lines for loan engine operations. Loan context (loan, employee,
payment reference, payroll run) travels as top-level fields so log search
can filter on them directly.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes promoted to top-level JSON fields, in output order
CONTEXT_FIELDS = (
    "correlation_id",
    "user_id",
    "action",
    "loan_id",
    "employee_id",
    "payment_reference",
    "payroll_run_id",
    "amount",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        details = getattr(record, 'details', None)
        if details:
            log_entry['details'] = details

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    logger_name: str = "payroll_loans",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output, "text" for plain lines
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Engine loggers are children of this one; stop at it
    logger.propagate = False

    return logger


def get_logger(name: str = "payroll_loans") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(
    logger: logging.Logger,
    level: str,
    message: str,
    action: str,
    user_id: Optional[str] = None,
    loan_id: Optional[str] = None,
    employee_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    payroll_run_id: Optional[str] = None,
    amount: Optional[Any] = None,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
):
    """
    Log a loan engine action with its context as structured fields.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Engine operation (request_loan, record_payment, ...)
        user_id: Actor performing the action
        loan_id: Loan acted upon
        employee_id: Borrowing employee
        payment_reference: External payment reference
        payroll_run_id: Payroll run that produced a deduction
        amount: Monetary amount, logged as a decimal string
        correlation_id: Correlation ID for request tracing
        details: Any further operation-specific data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    context = {
        "action": action,
        "user_id": user_id,
        "loan_id": loan_id,
        "employee_id": employee_id,
        "payment_reference": payment_reference,
        "payroll_run_id": payroll_run_id,
        "amount": str(amount) if amount is not None else None,
        "correlation_id": correlation_id,
        "details": details,
    }
    logger.log(levelno, message, extra={k: v for k, v in context.items() if v is not None})
