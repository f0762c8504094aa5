import logging
import os

log_levels = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# every module logs through `logging.getLogger(__name__)`, so configuring the
# package logger covers webhook handlers and billing services alike
PACKAGE_LOGGER = "rebound_relay"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Configure the named logger with a single console handler at `LOGGING_LEVEL`."""
    logging_level: str = os.environ.get("LOGGING_LEVEL", "INFO")
    level = log_levels.get(logging_level.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # reloads in dev would otherwise stack handlers
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(handler)

    return logger


setup_logger()

# application-level messages (startup, middleware)
logger = logging.getLogger(f"{PACKAGE_LOGGER}.app")
