"""
Logging configuration

Stages, the orchestrator and the API attach structured failure details as
`extra={"error_context": ...}`; the formatter appends them to the line so a
failed page or batch can be traced back to its stage, resource and cursor.
"""

import json
import logging
import sys
from typing import Optional
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "apscheduler")


class ErrorContextFormatter(logging.Formatter):
    """Appends `error_context` (when present) as compact JSON"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            line = f"{line} | context={json.dumps(context, default=str, sort_keys=True)}"
        return line


def setup_logging(level: Optional[str] = None):
    """Configure application logging (idempotent: replaces our own handler on re-entry)"""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.set_name("sync")

    root = logging.getLogger()
    root.setLevel(log_level)
    for existing in list(root.handlers):
        if existing.get_name() == "sync":
            root.removeHandler(existing)
    root.addHandler(handler)

    # Per-request SQL and HTTP lines drown out page-level progress
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at {logging.getLevelName(log_level)} level")
