"""
Structured JSON logging for the governance pipeline.

Every record is one JSON line.  The envelope always leads with
``ts``, ``level``, ``logger`` and ``message``, followed by whichever
pipeline identifiers are known (``event_id`` ... ``lease_token``, in a
fixed order), then any other ``extra`` fields, then exception detail.

Pipeline identifiers come from two places:
    - LogContext, bound around a unit of work (a submission, a decision,
      one job execution).  Worker pools hand the submitting thread's
      context to the pool thread, so provider-call records carry the job
      that made them.
    - ``extra=`` on the call.  An explicit extra wins over the context.
"""

__all__ = [
    "PIPELINE_FIELDS",
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
from contextlib import contextmanager
from contextvars import ContextVar, copy_context
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, TypeVar
from uuid import UUID

T = TypeVar("T")

# Envelope order for the identifiers a reader correlates on
PIPELINE_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor",
    "event_id",
    "ticket_id",
    "job_id",
    "aggregate_id",
    "operation",
    "attempt",
    "worker_id",
    "lease_token",
)

_EMPTY: Mapping[str, Any] = MappingProxyType({})


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Pipeline identifiers for the current thread or task.

    The fields live in one immutable mapping held by a ContextVar, so a
    bind is a single set/reset and a snapshot is a single read.
    """

    _fields: ContextVar[Mapping[str, Any]] = ContextVar("shepherd_log_fields", default=_EMPTY)

    @staticmethod
    def _checked(values: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(values) - set(PIPELINE_FIELDS)
        if unknown:
            raise TypeError(f"unknown log context fields: {', '.join(sorted(unknown))}")
        return {k: v for k, v in values.items() if v is not None}

    @classmethod
    def set(cls, **values: Any) -> None:
        """Set fields for the rest of the current context.  None leaves a field as is."""
        merged = {**cls._fields.get(), **cls._checked(values)}
        cls._fields.set(MappingProxyType(merged))

    @classmethod
    def get_all(cls) -> dict[str, Any]:
        return dict(cls._fields.get())

    @classmethod
    def clear(cls) -> None:
        cls._fields.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **values: Any) -> Iterator[None]:
        """Set fields for the duration of a ``with`` block."""
        merged = {**cls._fields.get(), **cls._checked(values)}
        token = cls._fields.set(MappingProxyType(merged))
        try:
            yield
        finally:
            cls._fields.reset(token)

    @classmethod
    def bind_job(cls, leased: Any):
        """Bind the identity of one leased job attempt.

        ``leased`` is a LeasedJob; typed loosely so the logging module does
        not import the domain layer.
        """
        return cls.bind(
            job_id=str(leased.job_id),
            event_id=str(leased.event_id),
            aggregate_id=leased.aggregate_id,
            operation=getattr(leased.operation, "value", leased.operation),
            attempt=leased.attempt,
            worker_id=leased.worker_id,
            lease_token=str(leased.lease_token),
        )

    @staticmethod
    def carry(fn: Callable[..., T]) -> Callable[..., T]:
        """Wrap ``fn`` so it runs under a snapshot of the caller's context.

        Used when handing work to another thread; ContextVars do not cross
        thread boundaries on their own.
        """
        snapshot = copy_context()

        def run(*args: Any, **kwargs: Any) -> T:
            return snapshot.run(fn, *args, **kwargs)

        return run


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


class _JSONEncoder(json.JSONEncoder):
    """UUIDs, timestamps, durations, enums and payload bytes."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, timedelta):
            return obj.total_seconds()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            key: val for key, val in vars(record).items() if key not in _STDLIB_KEYS
        }
        context = LogContext.get_all()
        for name in PIPELINE_FIELDS:
            if name in extras:
                payload[name] = extras.pop(name)
            elif name in context:
                payload[name] = context[name]
        payload.update(extras)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_JSONEncoder, default=str)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # ShepherdError subclasses keep their context as public attributes
    for key, val in vars(exc).items():
        if not key.startswith("_") and key != "code":
            fields[f"exc_{key}"] = val
    return fields


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "shepherd"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``shepherd`` namespace, e.g. ``shepherd.worker.executor``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``shepherd`` hierarchy.  Idempotent."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

        root_logger = logging.getLogger(_LOGGER_PREFIX)
        root_logger.setLevel(level)
        root_logger.propagate = False

        h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        h.setFormatter(StructuredFormatter())
        root_logger.addHandler(h)


def reset_logging() -> None:
    """Drop handlers and the configured flag.  Tests only."""
    global _configured
    with _lock:
        _configured = False
        logger = logging.getLogger(_LOGGER_PREFIX)
        logger.handlers.clear()
        logger.setLevel(logging.WARNING)
