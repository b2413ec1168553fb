"""Logging setup: console, rotating file and Better Stack."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from logtail import LogtailHandler

from media_extractor import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Third-party loggers that drown the worker output at INFO
QUIET_LOGGERS = ("urllib3", "pdfminer", "google.auth", "google.cloud", "uvicorn.access")


def _betterstack_handler() -> Optional[logging.Handler]:
    if not settings.BETTERSTACK_SOURCE_TOKEN:
        return None
    kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    handler = LogtailHandler(**kwargs)
    handler.setLevel(logging.DEBUG)
    return handler


def setup_logging(level_name: Optional[str] = None) -> logging.Logger:
    """Configure the root logger once and return the package logger."""
    level = getattr(logging, (level_name or settings.LOG_LEVEL).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    log_file = RotatingFileHandler(settings.LOGS_DIR / "app.log", maxBytes=LOG_FILE_MAX_BYTES,
                                   backupCount=LOG_FILE_BACKUPS, encoding="utf-8")
    log_file.setLevel(logging.INFO)
    handlers = [console, log_file]

    betterstack_error = None
    try:
        betterstack = _betterstack_handler()
        if betterstack:
            handlers.append(betterstack)
    except Exception as e:
        betterstack_error = e

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("media_extractor")
    if betterstack_error:
        logger.warning(f"Failed to initialize BetterStack logging: {betterstack_error}")
    elif settings.BETTERSTACK_SOURCE_TOKEN:
        host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
        logger.info(f"BetterStack logging enabled (host: {host_info})")
    return logger


logger = setup_logging()
