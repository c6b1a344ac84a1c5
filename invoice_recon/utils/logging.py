"""
Structured logging for the reconciliation engine.
"""

import logging
import json
from datetime import datetime
from typing import Optional
from invoice_recon.config import get_config


config = get_config()


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra"):
            log_obj.update(record.extra)

        return json.dumps(log_obj, default=str)


def setup_logging(name: str = __name__) -> logging.Logger:
    """Setup and return a configured logger."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.LOG_LEVEL))

    # Loggers are module-level singletons; attach handlers once
    if logger.handlers:
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, config.LOG_LEVEL))
    console_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
    logger.addHandler(console_handler)

    # File handler with structured JSON
    if config.LOG_FILE:
        file_handler = logging.FileHandler(config.LOG_FILE)
        file_handler.setLevel(getattr(logging, config.LOG_LEVEL))
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


def log_stage_action(
    logger: logging.Logger,
    stage_name: str,
    action: str,
    details: Optional[dict] = None,
    confidence: Optional[float] = None,
) -> None:
    """Log a pipeline stage action with context."""
    extra = {
        "stage": stage_name,
        "action": action,
    }
    if confidence is not None:
        extra["confidence"] = confidence
    if details:
        extra.update(details)

    logger.info(
        f"[{stage_name}] {action}",
        extra={"extra": extra}
    )


def log_discrepancy(
    logger: logging.Logger,
    discrepancy_type: str,
    severity: str,
    explanation: str,
    line_item_id: Optional[str] = None,
) -> None:
    """Log a detected discrepancy."""
    extra = {
        "type": "discrepancy",
        "discrepancy_type": discrepancy_type,
        "severity": severity,
        "explanation": explanation,
        "line_item_id": line_item_id,
    }
    logger.warning(
        f"Discrepancy detected: {discrepancy_type} ({severity})",
        extra={"extra": extra}
    )
