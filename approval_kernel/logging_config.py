"""
Structured JSON logging for the approval kernel.

Every record is one JSON object per line with a fixed envelope
(``ts``, ``level``, ``logger``, ``message``), followed by the fields bound
in ``LogContext``, the record's ``extra`` fields and, for exceptions, the
structured attributes of the raised error.

The workflow service binds ``actor_id``, ``round_id``, ``entity_type`` and
``entity_id`` itself.  ``correlation_id`` belongs to the caller: a request
handler binds it around its service calls and every kernel record emitted
inside the block carries it::

    with LogContext.bind(correlation_id=request_id):
        service.respond(round_id, user_id, "approved")
"""

from __future__ import annotations

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
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TextIO

_LOGGER_PREFIX = "approval_kernel"

_EMPTY: Mapping[str, str] = {}
_bound: ContextVar[Mapping[str, str]] = ContextVar("approval_log_context", default=_EMPTY)


class LogContext:
    """Request-scoped log fields held in a single ContextVar.

    Values are stored as strings; ``None`` never overwrites a bound value.
    Names outside ``FIELDS`` are ignored.
    """

    FIELDS = ("correlation_id", "actor_id", "round_id", "entity_type", "entity_id")

    @classmethod
    def _merged(cls, values: Mapping[str, Any]) -> dict[str, str]:
        merged = dict(_bound.get())
        for name, value in values.items():
            if name in cls.FIELDS and value is not None:
                merged[name] = str(value)
        return merged

    @classmethod
    def set(cls, **values: Any) -> None:
        _bound.set(cls._merged(values))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_bound.get())

    @classmethod
    def clear(cls) -> None:
        _bound.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **values: Any) -> Iterator[type[LogContext]]:
        """Bind fields for the duration of a ``with`` block."""
        token = _bound.set(cls._merged(values))
        try:
            yield cls
        finally:
            _bound.reset(token)


def _to_json(value: Any) -> Any:
    """``json.dumps`` fallback for the types kernel records carry."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record))
        return json.dumps(payload, default=_to_json)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # ApprovalKernelError subclasses keep their details as attributes.
        for name, value in vars(exc).items():
            if not name.startswith("_") and name != "code":
                fields[f"exc_{name}"] = value
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger named ``approval_kernel.<name>``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configure_lock = threading.Lock()
_configured = False


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``approval_kernel`` logger.

    Only the first call has any effect until ``reset_logging`` runs.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(target)


def reset_logging() -> None:
    """Undo ``configure_logging``.  Test helper."""
    global _configured
    with _configure_lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    root.propagate = True
