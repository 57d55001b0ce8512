"""
Fault to HTTP mapping.

Every layer that turns a fault into a response (the exception boundary and
the short-circuiting security stages) goes through ``status_for`` and
``fault_payload`` so clients always see the same error shape::

    {"error": {"code": ..., "message": ..., "domain": ..., "request_id": ...,
               "timestamp": ...}}
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .core import Fault, FaultDomain


STATUS_BY_CODE: Dict[str, int] = {
    "VALIDATION_ERROR": 400,
    "BAD_INPUT": 400,
    "INVALID_TRANSITION": 400,
    "ILLEGAL_CANCELLATION": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "CSRF_VALIDATION_FAILED": 403,
    "NOT_FOUND": 404,
    "ROUTE_NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "DUPLICATE_ENTRY": 409,
    "RATE_LIMITED": 429,
    "INTERNAL_ERROR": 500,
}

STATUS_BY_DOMAIN: Dict[FaultDomain, int] = {
    FaultDomain.VALIDATION: 400,
    FaultDomain.ORDERS: 400,
    FaultDomain.ROUTING: 404,
    FaultDomain.SECURITY: 403,
    FaultDomain.CACHE: 500,
    FaultDomain.CONFIG: 500,
    FaultDomain.SYSTEM: 500,
}


def status_for(fault: Fault) -> int:
    """Resolve the HTTP status for a fault: code first, then domain."""
    status = STATUS_BY_CODE.get(fault.code)
    if status is None:
        status = STATUS_BY_DOMAIN.get(fault.domain, 500)
    return status


def fault_payload(
    fault: Fault,
    *,
    request_id: Optional[str] = None,
    debug: bool = False,
) -> Dict[str, Any]:
    """Build the JSON error body for a fault."""
    exposed = fault.public or debug
    error: Dict[str, Any] = {
        "code": fault.code if exposed else "INTERNAL_ERROR",
        "message": fault.message if exposed else "Internal server error",
        "domain": fault.domain.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if request_id:
        error["request_id"] = request_id
    if exposed and fault.metadata:
        error["details"] = fault.metadata
    return {"error": error}
