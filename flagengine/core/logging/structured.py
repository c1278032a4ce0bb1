"""Structured (JSON) logging for the flag engine.

Operator-facing records (mutations, kill switch) carry key/value fields
such as ``flag_key`` and ``actor``. Fields come from two places: a
context bound for the current task with ``log_context`` and fields passed
on the individual call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, TextIO, TypeVar

_context: ContextVar[Mapping[str, Any]] = ContextVar("flagengine_log_context", default={})

F = TypeVar("F", bound=Callable[..., Any])

# LogRecord attribute holding per-call fields
FIELDS_ATTR = "flag_fields"


def bind_log_context(**fields: Any) -> Token:
    """Add fields to every record logged from the current context."""
    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    return _context.set(merged)


def reset_log_context(token: Token) -> None:
    _context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    token = bind_log_context(**fields)
    try:
        yield
    finally:
        reset_log_context(token)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; context and call fields are top-level keys."""

    def __init__(
        self,
        service_name: str = "flag-engine",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            "service": self.service_name,
            "env": self.environment,
        }
        payload.update(_context.get())
        payload.update(getattr(record, FIELDS_ATTR, {}))

        if record.exc_info and record.exc_info[0] is not None:
            payload["error_type"] = record.exc_info[0].__name__
            if self.include_stack_trace:
                payload["stack"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class StructuredLogger:
    """Thin wrapper over a stdlib logger that passes fields as ``extra``."""

    def __init__(self, name: str, fields: Optional[Mapping[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Copy of this logger with extra fields on every record."""
        return StructuredLogger(self.logger.name, {**self._fields, **fields})

    def _emit(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        # Skip _emit and the public method so the record points at the caller
        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={FIELDS_ATTR: {**self._fields, **fields}},
            stacklevel=3,
        )

    def log(self, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
        self._emit(level, message, exc_info, fields)

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, False, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, False, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, False, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, False, fields)


def get_logger(name: str, **fields: Any) -> StructuredLogger:
    return StructuredLogger(name, fields)


def configure_logging(
    level: int = logging.INFO,
    json_output: bool = True,
    service_name: str = "flag-engine",
    environment: str = "production",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """Replace root handlers with a single stream handler. Returns it."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(
            StructuredFormatter(service_name=service_name, environment=environment)
        )
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(handler)
    return handler


def timed_operation(
    operation: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
) -> Callable[[F], F]:
    """Log duration and outcome of a coroutine function."""

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("timed_operation only wraps coroutine functions")
        name = operation or func.__name__
        log = logger or get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log.error(
                    f"{name} failed",
                    operation=name,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    outcome="error",
                    error=str(e),
                )
                raise
            log.info(
                f"{name} finished",
                operation=name,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                outcome="ok",
            )
            return result

        return wrapper  # type: ignore

    return decorator
