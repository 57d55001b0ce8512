"""
Input Sanitization Middleware - payload cleaning and injection detection.

Pattern families:
- XSS markers (script/iframe/object/embed tags, ``javascript:`` URLs, inline
  event handlers) - request rejected
- NoSQL operator keys (``$where``, ``$ne`` ...) - request rejected
- SQL injection, path traversal, command injection - logged and cleaned

Cleaned data is handed downstream through ``request.state``:
- ``sanitized_body``: JSON body with every string cleaned
- ``sanitized_query``: query parameters with every value cleaned

All middleware follow the Barley async signature:
    async def __call__(self, request, ctx, next) -> Response
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from barley.faults import BadInputFault
from barley.request import Request
from barley.response import Response

from .logging import log_security_event

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]


# ─── Patterns ────────────────────────────────────────────────────────────────

XSS = "XSS"
NOSQL_INJECTION = "NoSQL Injection"
SQL_INJECTION = "SQL Injection"
PATH_TRAVERSAL = "Path Traversal"
COMMAND_INJECTION = "Command Injection"

_XSS_PATTERNS = [
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"(?:^|[\s\"'/<])on[a-z]+\s*=", re.IGNORECASE),
    re.compile(r"<\s*iframe", re.IGNORECASE),
    re.compile(r"<\s*object", re.IGNORECASE),
    re.compile(r"<\s*embed", re.IGNORECASE),
]

_SQL_PATTERNS = [
    re.compile(
        r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE|UNION|"
        r"FROM|WHERE|JOIN|ORDER BY|GROUP BY|HAVING)\b",
        re.IGNORECASE,
    ),
    re.compile(r"(--|#|/\*|\*/)"),
    re.compile(r"\bOR\b\s*\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"\bAND\b\s*\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"['\"]\s*;\s*(SELECT|INSERT|UPDATE|DELETE|DROP)", re.IGNORECASE),
]

_NOSQL_OPERATORS = (
    "where", "regex", "ne", "gt", "lt", "gte", "lte", "in", "nin",
    "exists", "type", "mod", "text", "expr", "or", "and", "not", "nor",
)
_NOSQL_PATTERN = re.compile(
    r"\$(?:" + "|".join(sorted(_NOSQL_OPERATORS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_NOSQL_KEY = re.compile(r"^\$[A-Za-z]+$|\[\$[A-Za-z]+\]")

_PATH_TRAVERSAL_PATTERNS = [
    re.compile(r"\.\./"),
    re.compile(r"\.\.\\"),
    re.compile(r"%2e%2e(%2f|/|%5c)", re.IGNORECASE),
    re.compile(r"\.\.%2f", re.IGNORECASE),
]

_COMMAND_PATTERNS = [
    re.compile(r"[;|&`<>\n\r]|\$\("),
    re.compile(
        r"\b(cat|ls|echo|pwd|whoami|id|uname|ps|kill|rm|mv|cp|chmod|chown|"
        r"wget|curl|bash|sh|cmd|powershell)\b",
        re.IGNORECASE,
    ),
]

_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_STYLE_BLOCK = re.compile(r"<style[^>]*>.*?</style\s*>", re.IGNORECASE | re.DOTALL)
_EVENT_HANDLER = re.compile(r"""\s*on\w+\s*=\s*("[^"]*"|'[^']*'|[^\s>]+)""", re.IGNORECASE)
_TAG = re.compile(r"</?[a-zA-Z!][^>]*>")

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_URL_RE = re.compile(
    r"^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"([-a-zA-Z0-9()@:%_+.~#?&/=]*)$"
)
_FILENAME_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")

# Bodies are scanned and cleaned this deep at most
_MAX_DEPTH = 32


@dataclass
class InjectionReport:
    """Result of scanning a string for injection markers."""
    is_suspicious: bool = False
    types: List[str] = field(default_factory=list)


def detect_injection(value: str) -> InjectionReport:
    """Scan a string against every pattern family."""
    types: List[str] = []
    if any(p.search(value) for p in _XSS_PATTERNS):
        types.append(XSS)
    if any(p.search(value) for p in _SQL_PATTERNS):
        types.append(SQL_INJECTION)
    if _NOSQL_PATTERN.search(value):
        types.append(NOSQL_INJECTION)
    if any(p.search(value) for p in _PATH_TRAVERSAL_PATTERNS):
        types.append(PATH_TRAVERSAL)
    if any(p.search(value) for p in _COMMAND_PATTERNS):
        types.append(COMMAND_INJECTION)
    return InjectionReport(is_suspicious=bool(types), types=types)


# ─── Sanitizers ──────────────────────────────────────────────────────────────

def strip_html(value: str) -> str:
    """Remove script/style blocks, inline event handlers and all tags."""
    value = _SCRIPT_BLOCK.sub("", value)
    value = _STYLE_BLOCK.sub("", value)
    value = _EVENT_HANDLER.sub("", value)
    return _TAG.sub("", value)


def sanitize_string(
    value: Any,
    *,
    allow_html: bool = False,
    max_length: Optional[int] = None,
    trim: bool = True,
) -> str:
    """Clean a string; non-strings become ``""``."""
    if not isinstance(value, str):
        return ""
    if trim:
        value = value.strip()
    if max_length and len(value) > max_length:
        value = value[:max_length]
    value = value.replace("\x00", "")
    if not allow_html:
        value = strip_html(value)
    return value


def sanitize_email(value: Any) -> Optional[str]:
    """Lower-cased email, or ``None`` when malformed."""
    cleaned = sanitize_string(value, max_length=254).lower()
    if not _EMAIL_RE.match(cleaned):
        return None
    return cleaned


def sanitize_url(value: Any) -> Optional[str]:
    """http(s) URL, or ``None`` for anything else."""
    cleaned = sanitize_string(value, max_length=2048)
    if not _URL_RE.match(cleaned):
        return None
    return cleaned


def sanitize_number(
    value: Any,
    *,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    integer: bool = False,
) -> Optional[float]:
    """Parse a number within bounds; ``None`` when invalid or out of range."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    if integer:
        if not number.is_integer():
            return None
        number = int(number)
    elif isinstance(value, int):
        number = value
    if min_value is not None and number < min_value:
        return None
    if max_value is not None and number > max_value:
        return None
    return number


def sanitize_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true" or value == "1"
    if isinstance(value, (int, float)):
        return value == 1
    return False


def sanitize_filename(name: str) -> str:
    """Replace everything outside ``[a-zA-Z0-9._-]`` with ``_``."""
    return _FILENAME_UNSAFE.sub("_", name)


def sanitize_payload(value: Any, _depth: int = 0) -> Any:
    """Recursively clean strings in a JSON value, keys included."""
    if _depth > _MAX_DEPTH:
        return None
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, dict):
        return {
            sanitize_string(k): sanitize_payload(v, _depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize_payload(item, _depth + 1) for item in value]
    return value


def scan_payload(value: Any, path: str = "$", _depth: int = 0) -> List[Tuple[str, List[str]]]:
    """
    Collect ``(path, types)`` for every suspicious key or string value.

    Keys shaped like NoSQL operators are reported as ``NoSQL Injection``.
    """
    findings: List[Tuple[str, List[str]]] = []
    if _depth > _MAX_DEPTH:
        return findings
    if isinstance(value, str):
        report = detect_injection(value)
        if report.is_suspicious:
            findings.append((path, report.types))
    elif isinstance(value, dict):
        for key, item in value.items():
            key_path = f"{path}.{key}"
            if isinstance(key, str) and _NOSQL_KEY.search(key):
                findings.append((key_path, [NOSQL_INJECTION]))
            findings.extend(scan_payload(item, key_path, _depth + 1))
    elif isinstance(value, list):
        for i, item in enumerate(value):
            findings.extend(scan_payload(item, f"{path}[{i}]", _depth + 1))
    return findings


# ─── Middleware ──────────────────────────────────────────────────────────────

class SanitizationMiddleware:
    """
    Rejects requests carrying XSS markers or NoSQL operator keys and cleans
    everything else.

    Args:
        blocking_types: Injection families that short-circuit with 400.
        exempt_paths: Path prefixes that skip sanitization.
    """

    BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

    def __init__(
        self,
        blocking_types: Optional[List[str]] = None,
        exempt_paths: Optional[List[str]] = None,
    ):
        self.blocking_types = set(blocking_types or (XSS, NOSQL_INJECTION))
        self.exempt_paths = list(exempt_paths or [])

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        if any(request.path.startswith(p) for p in self.exempt_paths):
            return await next_handler(request, ctx)

        query = request.query_params
        findings = scan_payload(query, "query")
        body = None
        has_body = request.method in self.BODY_METHODS and request.is_json()
        if has_body:
            body = await request.json()
            findings.extend(scan_payload(body, "body"))

        blocked = sorted({t for _, types in findings for t in types if t in self.blocking_types})
        if blocked:
            log_security_event(
                "malicious_input_blocked",
                "high",
                path=request.path,
                method=request.method,
                types=blocked,
                fields=[p for p, _ in findings][:10],
            )
            location = "body" if any(p.startswith("body") for p, _ in findings) else "query"
            return Response.from_fault(
                BadInputFault(blocked, location=location),
                request_id=request.state.get("request_id"),
            )

        if findings:
            log_security_event(
                "suspicious_input_sanitized",
                "medium",
                path=request.path,
                method=request.method,
                types=sorted({t for _, types in findings for t in types}),
                fields=[p for p, _ in findings][:10],
            )

        request.state["sanitized_query"] = {
            key: [sanitize_string(v) for v in values] for key, values in query.items()
        }
        if has_body:
            request.state["sanitized_body"] = sanitize_payload(body)

        return await next_handler(request, ctx)


__all__ = [
    "SanitizationMiddleware",
    "InjectionReport",
    "detect_injection",
    "scan_payload",
    "strip_html",
    "sanitize_string",
    "sanitize_email",
    "sanitize_url",
    "sanitize_number",
    "sanitize_boolean",
    "sanitize_filename",
    "sanitize_payload",
]
