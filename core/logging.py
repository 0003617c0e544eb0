"""
Logging configuration
"""

import logging
import sys
from typing import Optional
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Chatty third-party loggers held at WARNING
QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "apscheduler",
    "aiosqlite",
    "uvicorn.access",  # replaced by the dataflow.access lines of RequestContextMiddleware
)


def setup_logging(level: Optional[str] = None):
    """
    Configure application logging.

    The audit trail (dataflow.audit) always logs at INFO or below, whatever
    the application level, so terminal job transitions are never dropped.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("dataflow.audit").setLevel(min(log_level, logging.INFO))

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
