"""
Barley faults - core types and taxonomy.

Defines:
- Severity levels
- FaultDomain (functional area a fault belongs to)
- Fault base class (structured, typed error value)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from .._datastructures import Metadata, coerce_metadata


class Severity(str, Enum):
    """
    Fault severity levels.

    Determines logging level and whether a security event is raised.
    """
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    # Aliases used by security event logging
    LOW = INFO
    MEDIUM = WARN
    HIGH = ERROR
    CRITICAL = FATAL


class FaultDomain:
    """
    Fault domains (taxonomy).

    Identifies the functional area where a fault occurred.
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


# Standard domains
FaultDomain.CONFIG = FaultDomain("config", "Configuration errors")
FaultDomain.ROUTING = FaultDomain("routing", "Route matching errors")
FaultDomain.VALIDATION = FaultDomain("validation", "Malformed or missing input")
FaultDomain.ORDERS = FaultDomain("orders", "Order lifecycle errors")
FaultDomain.SECURITY = FaultDomain("security", "Security and auth")
FaultDomain.CACHE = FaultDomain("cache", "Cache subsystem errors")
FaultDomain.SYSTEM = FaultDomain("system", "System level faults")


DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.ROUTING: {"severity": Severity.WARN, "retryable": False},
    FaultDomain.VALIDATION: {"severity": Severity.WARN, "retryable": False},
    FaultDomain.ORDERS: {"severity": Severity.WARN, "retryable": False},
    FaultDomain.SECURITY: {"severity": Severity.ERROR, "retryable": False},
    FaultDomain.CACHE: {"severity": Severity.WARN, "retryable": True},
    FaultDomain.SYSTEM: {"severity": Severity.FATAL, "retryable": False},
}


class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    A fault is a first-class value with:
    - Stable machine-readable code
    - Human-readable message
    - Severity level
    - Domain classification
    - Public exposure control
    - Restricted-value metadata

    Subclasses usually declare ``code``, ``message`` and ``domain`` as class
    attributes; explicit constructor arguments win over them.

    Example:
        ```python
        raise Fault(
            code="ORDER_LOCKED",
            message="Order SO-123456ABC is locked",
            domain=FaultDomain.ORDERS,
            public=True,
        )
        ```
    """

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        domain: FaultDomain | None = None,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        public: bool | None = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        self.code = code if code is not None else getattr(self, "code", None)
        self.message = message if message is not None else getattr(self, "message", None)
        self.domain = domain if domain is not None else getattr(self, "domain", None)

        if self.code is None or self.message is None or self.domain is None:
            raise TypeError(f"{self.__class__.__name__} missing required code, message, or domain")

        super().__init__(self.message)

        defaults = DOMAIN_DEFAULTS.get(self.domain, {"severity": Severity.ERROR, "retryable": False})
        self.severity = severity or getattr(type(self), "severity", None) or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]

        if public is None:
            public = getattr(type(self), "public", False)
        self.public = public

        self.metadata: Metadata = coerce_metadata(metadata or {})

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"Fault(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value}, public={self.public})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize fault to a dictionary suitable for logging."""
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "public": self.public,
            "metadata": self.metadata,
        }
