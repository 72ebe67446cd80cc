"""
Centralized Logging Setup

- Standardizes logging format for all stages
- Structured for Loki (JSON per line)
- Usage: from bottleneck_tracker.core.logging import get_logger
"""

import logging
import os
import sys
import json
from datetime import datetime, timezone


class LokiJsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineNo": record.lineno,
        }
        # Static labels from get_logger, per-call labels from extra
        if hasattr(record, "labels"):
            log_record["labels"] = record.labels
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def get_logger(name=None, level=None, labels=None):
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(LokiJsonFormatter())
        logger.addHandler(handler)
    logger.propagate = False
    logger.setLevel(level or os.getenv("LOG_LEVEL", "INFO"))
    if labels:
        def _add_labels(record):
            record.labels = {**labels, **getattr(record, "labels", {})}
            return True
        logger.addFilter(_add_labels)
    return logger
