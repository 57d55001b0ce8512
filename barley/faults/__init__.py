"""
Barley faults - typed error signals.

Faults are raised by the order engine and the security pipeline and
translated to HTTP responses at the request boundary.

Core exports:
- Fault: Base fault class
- FaultDomain: Domain taxonomy
- Severity: Severity levels
- status_for / fault_payload: HTTP mapping
"""

from .core import Fault, FaultDomain, Severity

from .domains import (
    BadInputFault,
    CSRFValidationFault,
    DuplicateEntryFault,
    ForbiddenFault,
    IllegalCancellationFault,
    InternalFault,
    InvalidTransitionFault,
    MethodNotAllowedFault,
    NotFoundFault,
    RateLimitedFault,
    RouteNotFoundFault,
    SecurityFault,
    UnauthorizedFault,
    ValidationFault,
)

from .mapping import STATUS_BY_CODE, fault_payload, status_for

__all__ = [
    "Fault",
    "FaultDomain",
    "Severity",
    "BadInputFault",
    "CSRFValidationFault",
    "DuplicateEntryFault",
    "ForbiddenFault",
    "IllegalCancellationFault",
    "InternalFault",
    "InvalidTransitionFault",
    "MethodNotAllowedFault",
    "NotFoundFault",
    "RateLimitedFault",
    "RouteNotFoundFault",
    "SecurityFault",
    "UnauthorizedFault",
    "ValidationFault",
    "STATUS_BY_CODE",
    "fault_payload",
    "status_for",
]
