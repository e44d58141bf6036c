import logging
import sys

from serviceai.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger("serviceai")


def setup_logging(level: str = None) -> None:
    """Configure the service logger once at startup"""
    log_level = (level or settings.log_level or "INFO").upper()

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logger.setLevel(log_level)
    logger.propagate = True

    # Quiet noisy vendor loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
