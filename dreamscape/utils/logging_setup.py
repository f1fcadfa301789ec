from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(session_id)s | %(store_id)s | %(operation)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_SESSION_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_session_id", default=None)
LOG_STORE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_store_id", default=None)
LOG_OPERATION: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_operation", default=None)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = LOG_SESSION_ID.get() or "-"
        record.store_id = LOG_STORE_ID.get() or "-"
        record.operation = LOG_OPERATION.get() or "-"
        return True


@contextmanager
def log_context(
    session_id: Optional[str] = None,
    store_id: Optional[str] = None,
    operation: Optional[str] = None,
) -> Iterator[None]:
    tokens = []
    if session_id is not None:
        tokens.append((LOG_SESSION_ID, LOG_SESSION_ID.set(session_id)))
    if store_id is not None:
        tokens.append((LOG_STORE_ID, LOG_STORE_ID.set(store_id)))
    if operation is not None:
        tokens.append((LOG_OPERATION, LOG_OPERATION.set(operation)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def configure_logging(
    log_file: str = "logs/dreamscape.log",
    level: Union[int, str] = logging.INFO,
    enable_console: bool = False,
    force: bool = False,
) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, "_dreamscape_logging_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for log_filter in list(root.filters):
            root.removeFilter(log_filter)

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    context_filter = ContextFilter()

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    # Handler-level filter so records from child loggers carry the context fields too.
    file_handler.addFilter(context_filter)
    root.addHandler(file_handler)

    if enable_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(context_filter)
        root.addHandler(stream_handler)

    root.addFilter(context_filter)
    root.setLevel(_resolve_level(level))
    logging.captureWarnings(True)
    root._dreamscape_logging_configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
