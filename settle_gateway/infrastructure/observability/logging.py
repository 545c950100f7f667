"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from settle_gateway.config import settings
from settle_gateway.utils.date_utils import utcnow

security_logger = logging.getLogger("settle_gateway.security")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # per-request engine and client chatter stays out of INFO
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_transition(
    entity: str,
    entity_id: Any,
    from_status: Optional[str],
    to_status: str,
    actor: str,
    reason: Optional[str] = None,
) -> None:
    """Log a state machine transition for audit dashboards"""
    logging.getLogger("settle_gateway.transitions").info(
        "Status transition",
        extra={
            "entity": entity,
            "entity_id": str(entity_id),
            "from_status": from_status,
            "to_status": to_status,
            "actor": actor,
            "reason": reason,
        },
    )


def log_security_event(event: str, **fields: Any) -> None:
    """Log a security-relevant event (bad signature, unexpected settlement)"""
    security_logger.warning(event, extra={"security_event": True, **fields})
