from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from sitework.infra.request_context import get_organization_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s org=%(org_id)s user=%(user_id)s: %(message)s"
LOG_MAX_BYTES = 10_000_000
LOG_BACKUP_COUNT = 5

_HANDLER_MARK = "_sitework_handler"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.org_id = get_organization_id() or "-"
        record.user_id = get_user_id() or "-"
        return True


def _install(root: logging.Logger, handler: logging.Handler) -> None:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestContextFilter())
    setattr(handler, _HANDLER_MARK, True)
    root.addHandler(handler)


def configure_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel((level or LOG_LEVEL).upper())
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    _install(root, logging.StreamHandler())
    target = log_file or LOG_FILE
    if target:
        Path(target).parent.mkdir(exist_ok=True, parents=True)
        _install(
            root,
            RotatingFileHandler(target, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"),
        )
    return root
