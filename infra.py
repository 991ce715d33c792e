from __future__ import annotations

import logging
import os
import re
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the service logger.
    - JSON lines on stdout via python-json-logger.
    - LOG_LEVEL env supported (an explicit level wins).
    """
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logger = logging.getLogger("copilot")
    logger.setLevel(level)
    logger.propagate = False

    # If handlers already exist (e.g. reloader, repeated create_app), don't double-add
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(path)s %(method)s %(status)s %(latency_ms)s",
        )
    )
    logger.addHandler(handler)
    return logger


def safe_error(msg: str) -> str:
    """Best-effort redaction for user-facing errors."""
    msg = msg or "Request failed"
    msg = re.sub(r"(postgres(?:ql)?(?:\+\w+)?://)([^:@\s]+):([^@\s]+)@", r"\1***:***@", msg, flags=re.IGNORECASE)
    msg = re.sub(r"AIza[0-9A-Za-z\-_]{20,}", "AIza***REDACTED***", msg)
    return msg
