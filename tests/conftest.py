"""
Shared test fixtures and helpers for the barley test suite.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import orjson
import pytest

from barley.controller import RequestCtx
from barley.request import Request
from barley.response import Response


# ============================================================================
# Request Helpers
# ============================================================================


def make_scope(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    scheme: str = "http",
    client: Optional[tuple] = None,
) -> dict:
    """Build a minimal ASGI HTTP scope."""
    raw_headers = []
    if headers:
        for name, value in headers:
            raw_headers.append(
                (name.encode("latin-1") if isinstance(name, str) else name,
                 value.encode("latin-1") if isinstance(value, str) else value)
            )
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": query_string.encode("utf-8") if isinstance(query_string, str) else query_string,
        "headers": raw_headers,
        "scheme": scheme,
        "server": ("127.0.0.1", 8000),
        "client": client or ("127.0.0.1", 12345),
        "root_path": "",
    }


def make_receive(body: bytes = b"", *, chunks: Optional[List[bytes]] = None):
    """Create an ASGI receive callable from body bytes or chunked list."""
    if chunks:
        messages = []
        for i, chunk in enumerate(chunks):
            messages.append({
                "type": "http.request",
                "body": chunk,
                "more_body": i < len(chunks) - 1,
            })
    else:
        messages = [{"type": "http.request", "body": body, "more_body": False}]

    idx = 0

    async def receive():
        nonlocal idx
        if idx < len(messages):
            msg = messages[idx]
            idx += 1
            return msg
        return {"type": "http.disconnect"}

    return receive


class FakeRequest(Request):
    """
    Request built from keyword arguments instead of a raw scope.

    ``json`` is encoded and sent with ``content-type: application/json``;
    ``cookies`` become a ``Cookie`` header.
    """

    def __init__(
        self,
        method: str = "GET",
        path: str = "/",
        *,
        headers: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, Any]] = None,
        cookies: Optional[Dict[str, str]] = None,
        json: Any = None,
        body: bytes = b"",
        client: Optional[tuple] = None,
    ):
        header_map = {k.lower(): v for k, v in (headers or {}).items()}
        if json is not None:
            body = orjson.dumps(json)
            header_map.setdefault("content-type", "application/json")
        if cookies:
            header_map["cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
        scope = make_scope(
            method=method,
            path=path,
            query_string=urlencode(query or {}, doseq=True),
            headers=list(header_map.items()),
            client=client,
        )
        super().__init__(scope, make_receive(body))


class FakeCtx(RequestCtx):
    """RequestCtx with only the request required."""

    def __init__(self, request: Request, **kwargs):
        super().__init__(request=request, **kwargs)


def make_handler(
    status: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    media_type: Optional[str] = None,
):
    """
    Final handler returning a fixed response.

    ``handler.calls`` counts invocations; ``handler.requests`` keeps the
    requests it saw.
    """

    async def handler(request: Request, ctx: RequestCtx) -> Response:
        handler.calls += 1
        handler.requests.append(request)
        content = {"ok": True} if body is None else body
        return Response(content, status=status, headers=dict(headers or {}), media_type=media_type)

    handler.calls = 0
    handler.requests = []
    return handler


async def run(middleware, request: Request, handler=None) -> Response:
    """Run a single middleware around ``handler``."""
    handler = handler or make_handler()
    return await middleware(request, FakeCtx(request), handler)


# ============================================================================
# Order payloads
# ============================================================================


def address(**overrides) -> Dict[str, Any]:
    data = {
        "firstName": "Ana",
        "lastName": "Reyes",
        "street": "12 Mabini St",
        "city": "Makati",
        "state": "Metro Manila",
        "zipCode": "1200",
        "phone": "+639170000000",
    }
    data.update(overrides)
    return data


def order_payload(**overrides) -> Dict[str, Any]:
    """A valid create-order body."""
    data = {
        "customerId": "cust-1",
        "customerEmail": "Ana@Example.com",
        "items": [
            {
                "productId": "prod-1",
                "productName": "Rice Bag",
                "variantSku": "RICE-5KG",
                "variantName": "5 kg",
                "quantity": 2,
                "unitPrice": 250.0,
                "weight": 5.0,
            },
            {
                "productId": "prod-2",
                "productName": "Soy Sauce",
                "variantSku": "SOY-1L",
                "quantity": 1,
                "unitPrice": 80.5,
                "weight": 1.0,
            },
        ],
        "shippingAddress": address(),
        "billingAddress": address(),
        "paymentInfo": {"method": "gcash", "amount": 580.5},
    }
    data.update(overrides)
    return data


@pytest.fixture
def payload() -> Dict[str, Any]:
    return order_payload()
