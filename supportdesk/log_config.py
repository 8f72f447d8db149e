"""structlog setup shared by the web app and the command-line scripts."""
import logging
from typing import Optional

import structlog

from supportdesk import config


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured JSON logging at ``level`` (default ``LOG_LEVEL``)."""
    logging.basicConfig(format="%(message)s", level=(level or config.LOG_LEVEL).upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
