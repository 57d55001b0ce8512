"""
Request - ASGI request wrapper.

Provides:
- Typed access to method, path, query, headers, cookies and client address
- Idempotent body reading with a size limit
- JSON parsing via orjson
- A per-request ``state`` dict shared by middleware and handlers
"""

from __future__ import annotations

from http.cookies import CookieError, SimpleCookie
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl

import orjson

from .faults import ValidationFault


class Request:
    """
    Request object handed to every middleware and handler.

    Header names are case-insensitive; repeated headers are joined with
    ``", "`` as RFC 9110 allows for list-valued fields.
    """

    def __init__(
        self,
        scope: Mapping[str, Any],
        receive: Callable[..., Awaitable[dict]],
        *,
        max_body_size: int = 1_048_576,
    ):
        self.scope = scope
        self._receive = receive
        self.max_body_size = max_body_size

        self.state: Dict[str, Any] = {}

        self._body: Optional[bytes] = None
        self._json: Any = None
        self._json_loaded = False
        self._headers: Optional[Dict[str, str]] = None
        self._query: Optional[Dict[str, List[str]]] = None
        self._cookies: Optional[Dict[str, str]] = None

    # ========================================================================
    # Basic Properties
    # ========================================================================

    @property
    def method(self) -> str:
        """HTTP method (GET, POST, etc.)."""
        return self.scope.get("method", "GET")

    @property
    def path(self) -> str:
        """Request path (decoded)."""
        return self.scope.get("path", "/")

    @property
    def query_string(self) -> str:
        """Raw query string."""
        return self.scope.get("query_string", b"").decode("latin-1")

    @property
    def client(self) -> Optional[tuple]:
        """Client address (host, port)."""
        return self.scope.get("client")

    # ========================================================================
    # Query Parameters
    # ========================================================================

    @property
    def query_params(self) -> Dict[str, List[str]]:
        """Parsed query parameters; every name maps to all of its values."""
        if self._query is None:
            parsed: Dict[str, List[str]] = {}
            for key, value in parse_qsl(self.query_string, keep_blank_values=True):
                parsed.setdefault(key, []).append(value)
            self._query = parsed
        return self._query

    def query_param(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get the first value of a query parameter."""
        values = self.query_params.get(name)
        if not values:
            return default
        return values[0]

    # ========================================================================
    # Headers & Cookies
    # ========================================================================

    @property
    def headers(self) -> Dict[str, str]:
        """Headers keyed by lower-cased name."""
        if self._headers is None:
            headers: Dict[str, str] = {}
            for raw_name, raw_value in self.scope.get("headers", []):
                name = raw_name.decode("latin-1").lower()
                value = raw_value.decode("latin-1")
                if name in headers:
                    headers[name] = f"{headers[name]}, {value}"
                else:
                    headers[name] = value
            self._headers = headers
        return self._headers

    def header(self, name: str, default: str = "") -> str:
        """Get single header (case-insensitive)."""
        return self.headers.get(name.lower(), default)

    @property
    def cookies(self) -> Dict[str, str]:
        """Get parsed cookies."""
        if self._cookies is None:
            cookie_header = self.header("cookie")
            cookies: Dict[str, str] = {}
            if cookie_header:
                jar = SimpleCookie()
                try:
                    jar.load(cookie_header)
                except CookieError:
                    jar = SimpleCookie()
                cookies = {key: morsel.value for key, morsel in jar.items()}
            self._cookies = cookies
        return self._cookies

    def cookie(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get single cookie value."""
        return self.cookies.get(name, default)

    # ========================================================================
    # Body
    # ========================================================================

    async def body(self) -> bytes:
        """
        Read full request body (idempotent).

        Raises:
            ValidationFault: If the body exceeds ``max_body_size``
        """
        if self._body is not None:
            return self._body

        chunks = []
        total = 0
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            if chunk:
                total += len(chunk)
                if total > self.max_body_size:
                    raise ValidationFault(
                        "Request body exceeds maximum size",
                        metadata={"max_allowed": self.max_body_size},
                    )
                chunks.append(chunk)
            if not message.get("more_body", False):
                break

        self._body = b"".join(chunks)
        return self._body

    async def json(self) -> Any:
        """
        Parse request body as JSON.

        An empty body parses to ``None``.

        Raises:
            ValidationFault: If JSON is malformed
        """
        if self._json_loaded:
            return self._json

        raw = await self.body()
        if not raw.strip():
            self._json = None
        else:
            try:
                self._json = orjson.loads(raw)
            except orjson.JSONDecodeError as e:
                raise ValidationFault(f"Invalid JSON: {e}")
        self._json_loaded = True
        return self._json

    def is_json(self) -> bool:
        """Check whether the request declares a JSON body."""
        content_type = self.header("content-type").split(";")[0].strip().lower()
        return content_type == "application/json" or content_type.endswith("+json")
