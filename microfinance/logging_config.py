"""
Structured Logging Configuration Module

JSON log lines for loan, ledger and metrics operations. Besides the acting
user and action, every line may carry the loan it concerns (id, category,
branch, currency) and the metric it touched, so a branch's activity can be
filtered straight from the log stream.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes promoted to top-level keys of a JSON log line
CONTEXT_FIELDS = ("loan_id", "loan_category", "branch_code", "currency", "metric")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
        }
        for name in CONTEXT_FIELDS:
            log_entry[name] = getattr(record, name, None)
        log_entry["extra"] = getattr(record, 'extra', None)

        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def loan_context(loan) -> Dict[str, Any]:
    """Log context for a loan: id, category, branch code and currency"""
    return {
        "loan_id": loan.id,
        "loan_category": loan.category.value,
        "branch_code": loan.branch_code,
        "currency": loan.currency.value,
    }


def metric_context(event) -> Dict[str, Any]:
    """Log context for a metric event, including its loan when it has one"""
    return {
        "metric": event.metric.value,
        "loan_id": event.loan_id,
        "branch_code": event.branch_code,
        "currency": event.currency,
    }


def setup_logging(level: str = "INFO", logger_name: str = "microfinance",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional file path; stderr is used when omitted

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
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "microfinance") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, context: Optional[Dict[str, Any]] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: Email or username of the acting user
        action: Action being performed
        resource: Id of the record acted upon
        context: Loan or metric context, see loan_context() and metric_context()
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    for name, value in (context or {}).items():
        if name in CONTEXT_FIELDS and value is not None:
            setattr(record, name, value)
    if extra:
        record.extra = extra

    logger.handle(record)
