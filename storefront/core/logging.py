"""
Webhook-aware structured logging.

Every record carries the request's correlation id plus whatever webhook
identifiers are bound for the current task (``webhook_id``, ``request_id``,
``topic``, ``payment_id``), so one delivery can be followed from the HTTP
layer through its handler without each call site repeating them.
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

# Identifiers lifted to the top level of a record, from the bound context or extra_data
WEBHOOK_FIELDS = ("webhook_id", "request_id", "topic", "payment_id")

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
_webhook_fields: ContextVar[dict[str, Any] | None] = ContextVar("webhook_fields", default=None)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id to the current context, generating one if absent"""
    cid = correlation_id or uuid.uuid4().hex[:8]
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    cid = _correlation_id.get()
    return cid or set_correlation_id()


@contextmanager
def webhook_log_context(**fields: Any) -> Iterator[None]:
    """Attach webhook identifiers to every record logged inside the block"""
    bound = dict(_webhook_fields.get() or {})
    bound.update({key: value for key, value in fields.items() if value is not None})
    token = _webhook_fields.set(bound)
    try:
        yield
    finally:
        _webhook_fields.reset(token)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Correlation id and webhook identifiers that apply to ``record``"""
    context: dict[str, Any] = {}
    cid = _correlation_id.get()
    if cid:
        context["correlation_id"] = cid
    context.update(_webhook_fields.get() or {})

    extra_data = getattr(record, "extra_data", None) or {}
    for key in WEBHOOK_FIELDS:
        if extra_data.get(key) is not None:
            context[key] = extra_data[key]
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line; webhook identifiers sit beside the message"""

    def __init__(self, service: str = "storefront-webhooks") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.funcName}:{record.lineno}",
        }
        entry.update(record_context(record))

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines for local runs"""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(context)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        context = record_context(record)
        record.context = " ".join(f"{key}={value}" for key, value in context.items()) or "-"
        return super().format(record)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept an ``extra_data`` context dict"""

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # Skip this frame so funcName/lineno point at the caller
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "storefront-webhooks"
) -> None:
    """
    Route every logger to stdout.

    Args:
        level: Logging level name
        json_format: JSON lines for deployments, console lines otherwise
        app_name: Service name written into every JSON record
    """
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service=app_name) if json_format else ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Per-request client and SQL chatter
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_async_operation(operation_name: str):
    """Log completion or failure of an async call with its duration"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{operation_name} failed",
                    extra_data={
                        "operation": operation_name,
                        "duration_seconds": round(time.monotonic() - started, 4),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise

            logger.info(
                f"{operation_name} completed",
                extra_data={
                    "operation": operation_name,
                    "duration_seconds": round(time.monotonic() - started, 4),
                },
            )
            return result

        return wrapper
    return decorator
