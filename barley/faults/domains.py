"""
Barley faults - domain-specific fault types.

Provides the concrete faults raised by the order engine and the security
pipeline:
- VALIDATION faults (malformed input, injection markers)
- ORDERS faults (illegal transitions and cancellations, missing orders,
  duplicate order numbers)
- SECURITY faults (authentication, authorization, CSRF, rate limiting)
- SYSTEM faults (unexpected internal errors)
"""

from typing import Any, Optional, Sequence

from .core import Fault, FaultDomain, Severity


# ============================================================================
# VALIDATION Faults
# ============================================================================

class ValidationFault(Fault):
    """Malformed or missing required input."""

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        errors: Optional[Sequence[str]] = None,
        field: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        meta = dict(metadata or {})
        if errors:
            meta["errors"] = list(errors)
        if field:
            meta["field"] = field
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            domain=FaultDomain.VALIDATION,
            severity=Severity.WARN,
            public=True,
            metadata=meta,
        )


class BadInputFault(Fault):
    """Request payload carries disallowed content (script markers, operator keys)."""

    def __init__(self, types: Sequence[str], location: str = "body", **kwargs):
        self.types = list(types)
        super().__init__(
            code="BAD_INPUT",
            message="Request contains disallowed content",
            domain=FaultDomain.VALIDATION,
            severity=Severity.WARN,
            public=True,
            metadata={"types": self.types, "location": location, **kwargs.get("metadata", {})},
        )


# ============================================================================
# ORDERS Faults
# ============================================================================

class InvalidTransitionFault(Fault):
    """Requested status is not a legal successor of the current status."""

    def __init__(self, current: str, requested: str, **kwargs):
        self.current = current
        self.requested = requested
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Cannot transition from {current} to {requested}",
            domain=FaultDomain.ORDERS,
            public=True,
            metadata={"current": current, "requested": requested, **kwargs.get("metadata", {})},
        )


class IllegalCancellationFault(Fault):
    """Order is past the point where it can be cancelled."""

    def __init__(self, status: str, **kwargs):
        self.status = status
        super().__init__(
            code="ILLEGAL_CANCELLATION",
            message="Order cannot be cancelled in current status",
            domain=FaultDomain.ORDERS,
            public=True,
            metadata={"status": status, **kwargs.get("metadata", {})},
        )


class NotFoundFault(Fault):
    """Requested entity does not exist."""

    def __init__(self, resource: str = "Resource", identifier: Any = None, **kwargs):
        meta = {"resource": resource, **kwargs.get("metadata", {})}
        if identifier is not None:
            meta["id"] = str(identifier)
        super().__init__(
            code="NOT_FOUND",
            message=f"{resource} not found",
            domain=FaultDomain.ORDERS,
            public=True,
            metadata=meta,
        )


class DuplicateEntryFault(Fault):
    """Unique-constraint violation."""

    def __init__(self, field: str, value: Any, **kwargs):
        super().__init__(
            code="DUPLICATE_ENTRY",
            message=f"Duplicate value for {field}",
            domain=FaultDomain.ORDERS,
            public=True,
            metadata={"field": field, "value": str(value), **kwargs.get("metadata", {})},
        )


# ============================================================================
# ROUTING Faults
# ============================================================================

class RouteNotFoundFault(Fault):
    """No route matches the request path."""

    def __init__(self, path: str, method: str = "GET"):
        super().__init__(
            code="ROUTE_NOT_FOUND",
            message=f"No route for {method} {path}",
            domain=FaultDomain.ROUTING,
            public=True,
            metadata={"path": path, "method": method},
        )


class MethodNotAllowedFault(Fault):
    """Path exists but not for this method."""

    def __init__(self, path: str, method: str, allowed: Sequence[str]):
        self.allowed = sorted(allowed)
        super().__init__(
            code="METHOD_NOT_ALLOWED",
            message=f"Method {method} not allowed for {path}",
            domain=FaultDomain.ROUTING,
            public=True,
            metadata={"path": path, "method": method, "allowed": self.allowed},
        )


# ============================================================================
# SECURITY Faults
# ============================================================================

class SecurityFault(Fault):
    """Base class for security faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        severity: Severity = Severity.ERROR,
        public: bool = True,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.SECURITY,
            severity=severity,
            retryable=False,
            public=public,
            metadata=metadata,
        )


class UnauthorizedFault(SecurityFault):
    """Caller is not authenticated."""

    def __init__(self, reason: str = "Authentication required", **kwargs):
        super().__init__(
            code="UNAUTHORIZED",
            message=reason,
            severity=Severity.WARN,
            metadata=kwargs.get("metadata"),
        )


class ForbiddenFault(SecurityFault):
    """Caller is authenticated but lacks privilege."""

    def __init__(self, reason: str = "Insufficient permissions", **kwargs):
        super().__init__(
            code="FORBIDDEN",
            message=reason,
            severity=Severity.HIGH,
            metadata=kwargs.get("metadata"),
        )


class CSRFValidationFault(SecurityFault):
    """CSRF token missing or mismatched."""

    def __init__(self, reason: str = "Invalid CSRF token", **kwargs):
        self.reason = reason
        super().__init__(
            code="CSRF_VALIDATION_FAILED",
            message=reason,
            severity=Severity.HIGH,
            metadata={"reason": reason, **kwargs.get("metadata", {})},
        )


class RateLimitedFault(SecurityFault):
    """Rate limit exceeded for client."""

    def __init__(self, limit: int, window: float, retry_after: float, **kwargs):
        self.retry_after = retry_after
        super().__init__(
            code="RATE_LIMITED",
            message=f"Too many requests ({limit} per {int(window)}s). Retry after {int(retry_after)}s",
            severity=Severity.MEDIUM,
            metadata={
                "limit": limit,
                "window": window,
                "retry_after": retry_after,
                **kwargs.get("metadata", {}),
            },
        )


# ============================================================================
# SYSTEM Faults
# ============================================================================

class InternalFault(Fault):
    """Unexpected failure. Never exposed to clients."""

    def __init__(self, message: str = "Internal server error", **kwargs):
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            domain=FaultDomain.SYSTEM,
            severity=Severity.ERROR,
            public=False,
            metadata=kwargs.get("metadata"),
        )
