import logging
import sys

from pythonjsonlogger import jsonlogger

from .config import Settings
from .execution.redaction import RedactingFilter


def setup_logging(settings: Settings):
    """
    Configures structured logging for the application.
    Uses JSON formatting in production, standard formatting in development.
    Every record passes through the redacting filter before it is emitted.
    """
    logger = logging.getLogger()

    # clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())

    if settings.ENVIRONMENT == "production":
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            json_ensure_ascii=False
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(settings.LOG_LEVEL)

    # Reduce noise from libraries
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger
