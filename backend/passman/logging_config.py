"""
Logging setup for hosts embedding the PassMan core.
"""

import logging
from typing import List, Optional

from .config import Settings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
AUDIT_LOGGER_NAME = "passman.audit"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the service-wide log format and level.

    When ``log_file`` is configured the security audit logger also writes
    to that file so authentication events survive log rotation of stdout.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
