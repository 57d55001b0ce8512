"""
Barley - order administration service

- Orders: lifecycle state machine, totals, shipping and a REST API
- Pipeline: rate limiting, sanitization, CSRF, compression, cache headers
  and security headers around every request
- Cache: Redis with in-memory failover and an explicit cache-aside helper
- Faults: structured errors with a single JSON error shape
"""

__version__ = "0.1.0"

from .config import BarleyConfig, ConfigError, ConfigLoader
from .controller import Controller, RequestCtx, GET, POST, PUT, PATCH, DELETE
from .faults import Fault, FaultDomain, Severity
from .request import Request
from .response import Response
from .routing import Router

__all__ = [
    "__version__",
    "BarleyConfig",
    "ConfigError",
    "ConfigLoader",
    "Controller",
    "RequestCtx",
    "GET",
    "POST",
    "PUT",
    "PATCH",
    "DELETE",
    "Fault",
    "FaultDomain",
    "Severity",
    "Request",
    "Response",
    "Router",
    "create_app",
]


def create_app(*args, **kwargs):
    """Build the ASGI application (see ``barley.app.create_app``)."""
    from .app import create_app as _create_app
    return _create_app(*args, **kwargs)
