import logging

from retail_core.core.config import Settings

LOGGER_NAME = "retail_core"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> logging.Logger:
    """Attach one stream handler to the package logger. Safe to call twice."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.LOG_LEVEL.upper())
    if not any(getattr(h, "_retail_core", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._retail_core = True
        logger.addHandler(handler)
    return logger
