# services/logger_config.py
import logging
import os
from logging.handlers import RotatingFileHandler

from config import settings

# Libraries that log every request or batch at INFO
NOISY_LOGGERS = ("sentence_transformers", "urllib3", "sqlalchemy.engine", "httpx", "fitz")


def setup_logging() -> logging.Logger:
    """
    Configure the indexing service logger.

    Everything from DEBUG up goes to a rotating file under log/; the console
    only shows LOG_LEVEL and above, which by default means stage transitions
    and failures.
    """
    logger = logging.getLogger(settings.LOGGER_NAME)

    # Calling twice (tests, reload) must not duplicate output
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )

    try:
        log_dir = os.path.dirname(settings.LOG_FILE_PATH)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.LOG_FILE_PATH,
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Error setting up file logger: {e}")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.getLevelName(settings.LOG_LEVEL.upper()))
    logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("[INDEX] Logging configured (console level %s)", settings.LOG_LEVEL.upper())
    return logger
