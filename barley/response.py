"""
Response - HTTP response builder.

Provides:
- ASGI 3 response sending
- JSON responses encoded with orjson
- Header helpers with injection checks and multi-value support (Set-Cookie)
- Cookie helpers
- Fault responses with the shared error shape
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import formatdate
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import orjson

from .faults import Fault, fault_payload, status_for

logger = logging.getLogger("barley.response")


def json_default(o):
    """Default JSON serializer for non-standard types."""
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, (set, tuple)):
        return list(o)
    if hasattr(o, "to_dict"):
        return o.to_dict()
    if hasattr(o, "isoformat"):
        return o.isoformat()
    return str(o)


def dumps(obj: Any) -> bytes:
    """Serialize an object to JSON bytes."""
    return orjson.dumps(obj, default=json_default)


class InvalidHeaderError(ValueError):
    """Header name or value contains control characters."""


class Response:
    """
    HTTP response.

    Headers are stored with lower-cased names. A header may hold a list of
    values, each emitted as its own header line.
    """

    def __init__(
        self,
        content: Union[bytes, str, Mapping, Sequence] = b"",
        status: int = 200,
        headers: Optional[Mapping[str, Union[str, Sequence[str]]]] = None,
        media_type: Optional[str] = None,
        *,
        encoding: str = "utf-8",
    ):
        self.status = status
        self.encoding = encoding

        self._headers: Dict[str, Union[str, List[str]]] = {}
        if headers:
            for key, value in headers.items():
                if isinstance(value, (list, tuple)):
                    self._headers[key.lower()] = list(value)
                else:
                    self._headers[key.lower()] = value

        if media_type:
            self._headers["content-type"] = media_type
        elif "content-type" not in self._headers:
            self._headers["content-type"] = self._detect_media_type(content)

        self._body = self._encode_body(content)
        self.fault: Optional[Fault] = None

    @property
    def headers(self) -> Dict[str, Union[str, List[str]]]:
        """Get response headers."""
        return self._headers

    @property
    def body(self) -> bytes:
        """Encoded response body."""
        return self._body

    @body.setter
    def body(self, value: bytes) -> None:
        self._body = value
        if "content-length" in self._headers:
            self._headers["content-length"] = str(len(value))

    @property
    def media_type(self) -> str:
        """Content-Type without parameters."""
        value = self._headers.get("content-type", "")
        if isinstance(value, list):
            value = value[0] if value else ""
        return value.split(";")[0].strip().lower()

    def _detect_media_type(self, content: Any) -> str:
        if isinstance(content, (dict, list)):
            return "application/json"
        if isinstance(content, str):
            return "text/plain; charset=utf-8"
        return "application/octet-stream"

    def _encode_body(self, content: Any) -> bytes:
        if isinstance(content, bytes):
            return content
        if isinstance(content, str):
            return content.encode(self.encoding)
        if isinstance(content, (dict, list)):
            return dumps(content)
        return str(content).encode(self.encoding)

    # ========================================================================
    # Factory Methods
    # ========================================================================

    @classmethod
    def json(
        cls,
        obj: Any,
        status: int = 200,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> "Response":
        """Create JSON response."""
        return cls(
            content=dumps(obj),
            status=status,
            headers=headers,
            media_type="application/json",
        )

    @classmethod
    def from_fault(
        cls,
        fault: Fault,
        *,
        request_id: Optional[str] = None,
        debug: bool = False,
        headers: Optional[Mapping[str, str]] = None,
    ) -> "Response":
        """
        Create a JSON error response for a fault.

        The fault is attached to ``response.fault`` and its code is echoed in
        ``x-fault-code`` for observability.
        """
        all_headers = {"x-fault-code": fault.code}
        if headers:
            all_headers.update(headers)
        response = cls.json(
            fault_payload(fault, request_id=request_id, debug=debug),
            status=status_for(fault),
            headers=all_headers,
        )
        response.fault = fault
        return response

    # ========================================================================
    # Header Helpers
    # ========================================================================

    def set_header(self, name: str, value: str) -> None:
        """Set header (replaces existing)."""
        self._validate_header(name, value)
        self._headers[name.lower()] = value

    def add_header(self, name: str, value: str) -> None:
        """Add header (supports multiple values)."""
        self._validate_header(name, value)
        name_lower = name.lower()
        existing = self._headers.get(name_lower)
        if existing is None:
            self._headers[name_lower] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            self._headers[name_lower] = [existing, value]

    def unset_header(self, name: str) -> None:
        """Remove header."""
        self._headers.pop(name.lower(), None)

    def get_header(self, name: str, default: str = "") -> str:
        """Get a header as a single string."""
        value = self._headers.get(name.lower())
        if value is None:
            return default
        if isinstance(value, list):
            return ", ".join(value)
        return value

    def append_vary(self, *names: str) -> None:
        """Merge field names into ``Vary`` without duplicates."""
        existing = [v.strip() for v in self.get_header("vary").split(",") if v.strip()]
        lowered = {v.lower() for v in existing}
        for name in names:
            if name.lower() not in lowered:
                existing.append(name)
                lowered.add(name.lower())
        self._headers["vary"] = ", ".join(existing)

    def _validate_header(self, name: str, value: str) -> None:
        for char in name:
            if ord(char) < 32 or char in ("\r", "\n"):
                raise InvalidHeaderError(f"Invalid header name: {name!r}")
        if "\r" in value or "\n" in value:
            raise InvalidHeaderError(f"Invalid header value for {name!r}")

    # ========================================================================
    # Cookie Helpers
    # ========================================================================

    def set_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: Optional[int] = None,
        expires: Optional[datetime] = None,
        path: str = "/",
        domain: Optional[str] = None,
        secure: bool = True,
        httponly: bool = True,
        samesite: Optional[str] = "Lax",
    ) -> None:
        """Set a cookie."""
        cookie_parts = [f"{name}={value}"]
        if max_age is not None:
            cookie_parts.append(f"Max-Age={max_age}")
        if expires:
            cookie_parts.append(f"Expires={formatdate(expires.timestamp(), usegmt=True)}")
        cookie_parts.append(f"Path={path}")
        if domain:
            cookie_parts.append(f"Domain={domain}")
        if httponly:
            cookie_parts.append("HttpOnly")
        if samesite:
            cookie_parts.append(f"SameSite={samesite}")
        if secure:
            cookie_parts.append("Secure")
        self.add_header("set-cookie", "; ".join(cookie_parts))

    def delete_cookie(self, name: str, path: str = "/", domain: Optional[str] = None) -> None:
        """Delete a cookie by setting Max-Age=0."""
        self.set_cookie(
            name,
            "",
            max_age=0,
            expires=datetime.fromtimestamp(0, tz=timezone.utc),
            path=path,
            domain=domain,
            secure=False,
            httponly=False,
            samesite=None,
        )

    # ========================================================================
    # ASGI
    # ========================================================================

    def _prepare_headers(self) -> List[tuple]:
        """Prepare headers for ASGI (list of byte tuples)."""
        headers_list = []
        for name, value in self._headers.items():
            name_bytes = name.encode("latin-1")
            if isinstance(value, list):
                for v in value:
                    headers_list.append((name_bytes, v.encode("latin-1")))
            else:
                headers_list.append((name_bytes, value.encode("latin-1")))
        return headers_list

    async def send_asgi(
        self,
        send: Callable[[dict], Awaitable[None]],
        method: str = "GET",
    ) -> None:
        """Send response via ASGI. HEAD requests and 304/204 carry no body."""
        body = self._body
        if self.status in (204, 304):
            body = b""
            self._headers.pop("content-length", None)
        else:
            self._headers["content-length"] = str(len(body))
        if method == "HEAD":
            body = b""

        await send({
            "type": "http.response.start",
            "status": self.status,
            "headers": self._prepare_headers(),
        })
        await send({
            "type": "http.response.body",
            "body": body,
            "more_body": False,
        })


__all__ = [
    "Response",
    "InvalidHeaderError",
    "dumps",
    "json_default",
]
