"""Diagnostics logging. Stdout belongs to the host, so everything goes to a file."""

import logging
from logging.handlers import RotatingFileHandler

ROOT = "session_health"
LOG_MAX_BYTES = 100_000
FORMAT = "%(asctime)s %(process)d %(levelname)s %(name)s: %(message)s"


def setup_logging(settings):
    """Attach a rotating file handler under the base dir. Idempotent."""
    logger = logging.getLogger(ROOT)
    logger.setLevel(getattr(logging, settings.log_level, logging.WARNING))
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    try:
        settings.base_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            settings.log_path, maxBytes=LOG_MAX_BYTES, backupCount=1, delay=True)
        handler.setFormatter(logging.Formatter(FORMAT))
    except OSError:
        handler = logging.NullHandler()
    logger.addHandler(handler)
    return logger
