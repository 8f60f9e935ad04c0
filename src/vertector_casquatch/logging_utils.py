"""
Structured logging for the driver.

Provides:
- A JSON formatter that includes the active log context and ``extra=`` fields
- ``log_context`` for attaching routing key, table or operation to every
  record logged inside a block
- ``PerformanceLogger`` for timing blocks in sync and async code
"""

import json
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Optional

_log_context: ContextVar[Optional[dict[str, Any]]] = ContextVar("casquatch_log_context", default=None)

# Attributes every LogRecord carries; anything else arrived through ``extra=``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get() or {})


@contextmanager
def log_context(**fields: Any):
    """
    Attach ``fields`` to every record formatted by ``StructuredFormatter`` inside the block.

    Nested blocks add to the outer context; inner values win.

    Example:
        with log_context(operation="save", table="orders"):
            logger.info("dispatching")
    """
    token = _log_context.set({**current_log_context(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp, level, logger, message, the active log context, every
    ``extra=`` field, and exception when the record carries one.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(current_log_context())

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class PerformanceLogger:
    """
    Times a block and logs its outcome.

    Start is logged at DEBUG, completion at INFO and failure at ERROR, each
    with ``duration_ms`` and the given context fields. The operation name is
    in the log context for the duration of the block.

    Example:
        with PerformanceLogger("open_transport", logger=logger, routing_key="east"):
            handle = provider.open("east", config)
    """

    def __init__(self, operation: str, logger: logging.Logger, **context: Any):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None
        self._scope = None

    def __enter__(self):
        self._scope = log_context(operation=self.operation)
        self._scope.__enter__()
        self.start_time = time.perf_counter()
        self.logger.debug(f"Starting {self.operation}", extra={"event": "operation_start", **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        fields = {"duration_ms": round(self.duration_ms, 2), **self.context}

        if exc_type:
            self.logger.error(
                f"{self.operation} failed after {fields['duration_ms']}ms",
                extra={"event": "operation_failed", "error_type": exc_type.__name__, "error": str(exc_val), **fields},
            )
        else:
            self.logger.info(
                f"{self.operation} completed in {fields['duration_ms']}ms",
                extra={"event": "operation_completed", **fields},
            )

        self._scope.__exit__(None, None, None)
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)


def setup_production_logging(level: str = "INFO", format: str = "json") -> None:
    """
    Replace the root logger's handlers with a single stream handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for ``StructuredFormatter``, "text" for plain lines
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root_logger.addHandler(handler)
