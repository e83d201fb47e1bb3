"""
Structured JSON logging for the POS kernel.

Every record leaving the ``pos_kernel`` logger hierarchy is one JSON line:
timestamp, level, logger, message, the request-scoped fields of
LogContext (terminal, actor, transaction) and any ``extra`` fields the
call site passes.  Kernel exceptions are flattened into ``exc_*`` keys so
an operator can filter on ``exc_code`` without parsing tracebacks.

Usage:
    from pos_kernel.logging_config import LogContext, get_logger

    logger = get_logger("services.transaction_ledger")
    with LogContext.bind(actor_id="cashier-7", terminal_id="till-3"):
        logger.info("ledger_transition", extra={"operation": "cancel"})
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

_LOGGER_PREFIX = "pos_kernel"

CONTEXT_FIELDS = ("correlation_id", "terminal_id", "actor_id", "transaction_id")

_context: ContextVar[tuple[tuple[str, str], ...]] = ContextVar("pos_log_context", default=())


class LogContext:
    """Request-scoped fields attached to every record (thread and task local)."""

    @staticmethod
    def _merged(fields: dict[str, Any]) -> tuple[tuple[str, str], ...]:
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
        current = dict(_context.get())
        current.update({k: str(v) for k, v in fields.items() if v is not None})
        return tuple((name, current[name]) for name in CONTEXT_FIELDS if name in current)

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set fields for the rest of the current context; None values are ignored."""
        _context.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set(())

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the duration of a ``with`` block, then restore."""
        token = _context.set(cls._merged(fields))
        try:
            yield cls
        finally:
            _context.reset(token)


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return repr(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(LogContext.get_all())
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in entry
        )

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(self._exception_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # PosKernelError subclasses keep their context as public attributes
        fields.update(
            (f"exc_{name}", value)
            for name, value in vars(exc).items()
            if not name.startswith("_") and name != "code"
        )
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger under the pos_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> bool:
    """
    Attach a JSON handler to the pos_kernel hierarchy.

    Idempotent: only the first call configures; later calls return False.
    ``level`` accepts a logging constant or a name such as ``"DEBUG"``
    (the form used in settings files).
    """
    global _configured
    with _lock:
        if _configured:
            return False
        _configured = True

    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.setLevel(level.upper() if isinstance(level, str) else level)
    kernel_logger.propagate = False

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(target)
    return True


def reset_logging() -> None:
    """Drop handlers and allow configure_logging() again (tests only)."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    for h in list(kernel_logger.handlers):
        kernel_logger.removeHandler(h)
    kernel_logger.setLevel(logging.WARNING)
    kernel_logger.propagate = True
