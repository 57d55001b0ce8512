"""
Logging - access logging, security events and log configuration.

Features:
- Request logging middleware with status-based level selection
- Slow request warning threshold
- Security event logging with severity mapped to log level
- Structured (JSON via orjson) and colour-coded dev formatters

Follows the Barley async middleware signature:
    async def __call__(self, request, ctx, next) -> Response
"""

from __future__ import annotations

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union, TYPE_CHECKING

import orjson

from barley.faults import Severity
from barley.request import Request
from barley.response import Response

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]

security_logger = logging.getLogger("barley.security")

# ─── ANSI color codes for dev mode ────────────────────────────────────────────

_COLORS = {
    "reset": "\033[0m",
    "dim": "\033[2m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "red": "\033[31m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
}

_LEVEL_COLORS = {
    logging.DEBUG: _COLORS["dim"],
    logging.INFO: _COLORS["green"],
    logging.WARNING: _COLORS["yellow"],
    logging.ERROR: _COLORS["red"],
    logging.CRITICAL: _COLORS["magenta"],
}

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


# ─── Formatters ──────────────────────────────────────────────────────────────

class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_extras(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode("utf-8")


class DevFormatter(logging.Formatter):
    """Colour-coded developer-friendly format."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = record.levelname
        if self.use_colors:
            color = _LEVEL_COLORS.get(record.levelno, "")
            level = f"{color}{level:8}{_COLORS['reset']}"
        else:
            level = f"{level:8}"
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        extras = _record_extras(record)
        if extras:
            pairs = " ".join(f"{k}={v}" for k, v in extras.items())
            line = f"{line} [{pairs}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: Union[str, int] = "INFO", fmt: str = "dev") -> logging.Logger:
    """
    Configure the ``barley`` logger hierarchy.

    Args:
        level: Log level name or number.
        fmt: ``"structured"`` for JSON lines, ``"dev"`` for human-readable output.

    Returns:
        The root ``barley`` logger.
    """
    root = logging.getLogger("barley")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "structured":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(DevFormatter(use_colors=sys.stderr.isatty()))

    for existing in list(root.handlers):
        if getattr(existing, "_barley_handler", False):
            root.removeHandler(existing)
    handler._barley_handler = True
    root.addHandler(handler)
    root.propagate = False
    return root


# ─── Security events ─────────────────────────────────────────────────────────

_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.FATAL: logging.CRITICAL,
}


def log_security_event(
    event: str,
    severity: Union[Severity, str] = Severity.MEDIUM,
    **details: Any,
) -> None:
    """
    Log a security event to ``barley.security``.

    ``severity`` accepts a ``Severity`` or one of ``low``, ``medium``,
    ``high``, ``critical``.
    """
    if isinstance(severity, str) and not isinstance(severity, Severity):
        severity = Severity[severity.upper()]
    level = _SEVERITY_LEVELS.get(severity, logging.WARNING)
    security_logger.log(
        level,
        "Security event: %s",
        event,
        extra={"event": event, "severity": severity.value, "details": details},
    )


# ─── Request logging middleware ──────────────────────────────────────────────

class RequestLoggingMiddleware:
    """
    HTTP access logging middleware.

    Args:
        logger_name: Logger name (default "barley.requests").
        slow_threshold_ms: Warn on requests slower than this (ms).
        skip_paths: Paths to skip logging (e.g. health checks).
    """

    def __init__(
        self,
        logger_name: str = "barley.requests",
        slow_threshold_ms: float = 1000.0,
        skip_paths: Optional[Set[str]] = None,
    ):
        self.logger = logging.getLogger(logger_name)
        self._slow_threshold = slow_threshold_ms
        self._skip_paths = skip_paths or set()

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        if request.path in self._skip_paths:
            return await next_handler(request, ctx)

        start = time.perf_counter()
        try:
            response = await next_handler(request, ctx)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            self.logger.error(
                "%s %s - EXCEPTION (%.1fms)", request.method, request.path, duration_ms,
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        extra = {
            "request_id": request.state.get("request_id", "-"),
            "status": response.status,
            "duration_ms": round(duration_ms, 2),
        }
        message = "%s %s - %s (%.1fms)"
        args = (request.method, request.path, response.status, duration_ms)

        if response.status >= 500:
            self.logger.error(message, *args, extra=extra)
        elif response.status >= 400:
            self.logger.warning(message, *args, extra=extra)
        elif duration_ms > self._slow_threshold:
            self.logger.warning("SLOW " + message, *args, extra=extra)
        else:
            self.logger.info(message, *args, extra=extra)

        return response


__all__ = [
    "RequestLoggingMiddleware",
    "StructuredFormatter",
    "DevFormatter",
    "configure_logging",
    "log_security_event",
]
