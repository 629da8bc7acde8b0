"""
Logging setup shared by the API process and the Celery workers.

Console always; in DEBUG also a rotating file at backend/logs/queueflow.log
(skipped when the filesystem is read-only).

Billing modules log event-prefixed lines (``subscription_transition_skipped: ...``,
``entitlement_denied: ...``) so they can be grepped or routed by prefix.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from app.core.config import settings

LOG_FILE = Path(__file__).resolve().parent.parent.parent / "logs" / "queueflow.log"

FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "stripe", "aiosqlite", "kombu")


def _level() -> int:
    return getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)


def _file_handler() -> Optional[logging.Handler]:
    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
    except OSError as exc:
        logging.getLogger(__name__).warning("file_logging_disabled: %s (%s)", LOG_FILE, exc)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(force: bool = False) -> None:
    """
    Configure the root logger.

    No-op when handlers already exist (uvicorn reload), unless ``force``;
    the Celery worker passes ``force`` to replace its own handlers.
    """
    root = logging.getLogger()
    if root.handlers and not force:
        return
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root.setLevel(_level())
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)

    if settings.DEBUG:
        file_handler = _file_handler()
        if file_handler is not None:
            root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
