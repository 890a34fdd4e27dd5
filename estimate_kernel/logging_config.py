"""
Structured JSON logging for the estimate kernel.

Every record under the ``estimate_kernel`` logger becomes one JSON line:
timestamp, level, logger and message, then the bound LogContext fields
(correlation_id, actor, formula_key, line_item_id, estimate_id, trace_id),
then the record's ``extra`` fields.  Kernel errors logged with
``exc_info`` contribute ``exc_code`` and one ``exc_<attr>`` field per
public attribute (e.g. ``exc_variables`` of MissingInputError).

Decimals are written as strings so amounts keep their exact digits.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

from estimate_kernel.exceptions import EstimateKernelError

_LOGGER_PREFIX = "estimate_kernel"

# Name given to the handler configure_logging installs; other handlers on
# the logger (pytest capture, captured_logs) are left alone.
_HANDLER_NAME = "estimate_kernel.structured"


_CONTEXT_FIELDS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"estimate_kernel_log_{name}", default=None)
    for name in (
        "correlation_id",
        "actor",
        "formula_key",
        "line_item_id",
        "estimate_id",
        "trace_id",
    )
}


class LogContext:
    """Request-scoped log fields carried in context variables.

    Unknown field names raise TypeError so a misspelled key never
    disappears from the logs silently.
    """

    FIELD_NAMES = tuple(_CONTEXT_FIELDS)

    @staticmethod
    def _var(name: str) -> ContextVar[str | None]:
        try:
            return _CONTEXT_FIELDS[name]
        except KeyError:
            raise TypeError(f"Unknown log context field: {name!r}") from None

    @classmethod
    def set(cls, **fields: object) -> None:
        """Set context fields.  None values leave the field unchanged."""
        bound = [(cls._var(name), value) for name, value in fields.items()]
        for var, value in bound:
            if value is not None:
                var.set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in _CONTEXT_FIELDS.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in _CONTEXT_FIELDS.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: object) -> Iterator[None]:
        """Set fields for the duration of the block, then restore them."""
        bound = [(cls._var(name), value) for name, value in fields.items()]
        tokens = [(var, var.set(str(value))) for var, value in bound if value is not None]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


_RECORD_ATTRIBUTES: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Mapping):
        return dict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    if isinstance(exc, EstimateKernelError):
        fields["exc_code"] = exc.code
        for name, value in vars(exc).items():
            if not name.startswith("_"):
                fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger under the estimate_kernel namespace, e.g. ``services.auditor``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_lock = threading.Lock()


def _installed_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in logger.handlers if h.get_name() == _HANDLER_NAME]


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> bool:
    """
    Install the structured handler on the estimate_kernel logger.

    Idempotent: returns False and changes nothing when a handler from an
    earlier call is still installed.
    """
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    with _lock:
        if _installed_handlers(kernel_logger):
            return False
        h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        h.set_name(_HANDLER_NAME)
        h.setFormatter(StructuredFormatter())
        kernel_logger.setLevel(level)
        kernel_logger.propagate = False
        kernel_logger.addHandler(h)
    return True


def reset_logging() -> None:
    """Remove the handler configure_logging installed and restore defaults."""
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    with _lock:
        for h in _installed_handlers(kernel_logger):
            kernel_logger.removeHandler(h)
        kernel_logger.setLevel(logging.NOTSET)
        kernel_logger.propagate = True
