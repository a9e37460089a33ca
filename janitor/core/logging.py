from __future__ import annotations

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

task_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("task_id", default=None)

_RESERVED_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "message",
    "module",
    "msecs",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "task_id": getattr(record, "task_id", None),
            "thread": record.threadName,
        }

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        payload.update(extras)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    base_factory = logging.getLogRecordFactory()
    if not getattr(base_factory, "_janitor_task_factory", False):

        def record_factory(*args, **kwargs):
            record = base_factory(*args, **kwargs)
            record.task_id = task_id_ctx.get()
            return record

        record_factory._janitor_task_factory = True  # type: ignore[attr-defined]
        logging.setLogRecordFactory(record_factory)

    logger = logging.getLogger()
    if logger.handlers:
        logger.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def task_context(task_id: str) -> Iterator[None]:
    """Stamp ``task_id`` on every record logged from the current context."""
    token = task_id_ctx.set(task_id)
    try:
        yield
    finally:
        task_id_ctx.reset(token)
