"""
Logging configuration.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from cloudaudit.core.config import settings

LOG_FILE = Path("logs") / "cloudaudit.log"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(threadName)s %(funcName)s:%(lineno)d - %(message)s"

# AWS SDK and HTTP internals log every request at DEBUG/INFO
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")

_configured = False


def setup_logging():
    """Configure application logging once per process."""
    global _configured
    if _configured:
        return

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    LOG_FILE.parent.mkdir(exist_ok=True)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    _configured = True
