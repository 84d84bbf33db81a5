"""Structured JSON logging for transaction processing"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from payment_engine.config import settings

# Extra fields that must never reach a log sink
REDACTED_FIELDS = frozenset({"token", "password", "consumer_secret", "pass_key", "integrity_secret", "authorization"})
REDACTED = "***"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records stamped with UTC time, level and service name; credentials masked"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        for field in REDACTED_FIELDS.intersection(log_record):
            log_record[field] = REDACTED
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Send every logger through one JSON stdout handler"""
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    root.addHandler(handler)

    # httpx logs every request line (including OAuth URLs) at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_transaction(
    transaction_id: str,
    account_key: str,
    kind: str,
    status: str,
    error_kind: Optional[str],
    attempt_count: int,
    gateway_name: Optional[str],
    duration_ms: float,
) -> None:
    """Log structured transaction outcome for analysis"""
    logging.info(
        "Transaction completed",
        extra={
            "transaction_id": transaction_id,
            "account_key": account_key,
            "step": "transaction_complete",
            "kind": kind,
            "status": status,
            "error_kind": error_kind,
            "attempt_count": attempt_count,
            "gateway": gateway_name,
            "duration_ms": duration_ms,
        },
    )
