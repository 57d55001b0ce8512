"""
End-to-end tests for the assembled service.

Every request goes through the full pipeline (security headers, rate
limiting, sanitization, CSRF, cache headers, compression) via
``httpx.ASGITransport``. Lifespan does not run under the transport, so the
fixtures use in-memory backends which work without initialization.
"""

import gzip

import httpx
import pytest
import pytest_asyncio

from barley.app import create_app
from barley.config import BarleyConfig
from barley.orders import OrderRepository
from tests.conftest import order_payload


def make_config(**sections) -> BarleyConfig:
    return BarleyConfig.from_dict(sections).validate()


def make_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def csrf_headers(client: httpx.AsyncClient) -> dict:
    """Fetch a token and return headers that pass double-submit validation."""
    resp = await client.get("/api/csrf-token")
    token = resp.json()["csrfToken"]
    return {"x-csrf-token": token, "cookie": f"csrf-token={token}"}


async def create_order(client: httpx.AsyncClient, headers: dict, **overrides) -> dict:
    resp = await client.post("/api/orders", json=order_payload(**overrides), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["order"]


def assert_security_headers(resp: httpx.Response):
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["referrer-policy"] == "strict-origin-when-cross-origin"
    assert "server" not in resp.headers


@pytest.fixture
def app():
    return create_app(make_config())


@pytest_asyncio.fixture
async def client(app):
    async with make_client(app) as c:
        yield c


@pytest_asyncio.fixture
async def headers(client):
    return await csrf_headers(client)


class BrokenRepository(OrderRepository):
    async def count(self) -> int:
        raise ConnectionError("storage offline")


class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["services"] == {
            "api": "operational",
            "repository": "connected",
            "cache": "connected",
        }
        assert body["api"]["environment"] == "development"
        assert "no-cache" in resp.headers["cache-control"]
        assert resp.headers["x-request-id"].startswith("req_")
        assert_security_headers(resp)

    @pytest.mark.asyncio
    async def test_unhealthy_repository(self):
        app = create_app(make_config(), repository=BrokenRepository())
        async with make_client(app) as client:
            resp = await client.get("/api/health")
        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "unhealthy"
        assert body["services"]["repository"] == "disconnected"
        assert body["error"] == "Service connectivity issues"


class TestCsrf:

    @pytest.mark.asyncio
    async def test_token_endpoint(self, client):
        resp = await client.get("/api/csrf-token")
        assert resp.status_code == 200
        token = resp.json()["csrfToken"]
        assert resp.headers["x-csrf-token"] == token
        assert resp.cookies["csrf-token"] == token
        assert resp.cookies["session-id"]

    @pytest.mark.asyncio
    async def test_post_without_token(self, client):
        resp = await client.post("/api/orders", json=order_payload())
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "CSRF_VALIDATION_FAILED"
        assert resp.headers["x-fault-code"] == "CSRF_VALIDATION_FAILED"
        assert_security_headers(resp)

    @pytest.mark.asyncio
    async def test_post_with_mismatched_token(self, client, headers):
        bad = dict(headers, **{"x-csrf-token": "not-the-token"})
        resp = await client.post("/api/orders", json=order_payload(), headers=bad)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_synchronizer_mode(self):
        app = create_app(make_config(csrf={"mode": "synchronizer"}))
        async with make_client(app) as client:
            issued = await client.get("/api/csrf-token")
            token = issued.json()["csrfToken"]
            session_id = issued.cookies["session-id"]
            resp = await client.post(
                "/api/orders",
                json=order_payload(),
                headers={"x-csrf-token": token, "cookie": f"session-id={session_id}"},
            )
            assert resp.status_code == 201

            other = await client.post(
                "/api/orders",
                json=order_payload(),
                headers={"x-csrf-token": token, "cookie": "session-id=someone-else"},
            )
            assert other.status_code == 403


class TestOrderLifecycle:

    @pytest.mark.asyncio
    async def test_create_and_get(self, client, headers):
        resp = await client.post("/api/orders", json=order_payload(), headers=headers)
        assert resp.status_code == 201
        body = resp.json()
        assert body["message"] == "Order created successfully"
        order = body["order"]
        assert order["status"] == "pending"
        assert order["totals"]["shippingTotal"] == 105.0
        assert order["totals"]["total"] == 685.5

        fetched = await client.get(f"/api/orders/{order['orderNumber']}?includeTimeline=true")
        assert fetched.status_code == 200
        data = fetched.json()
        assert data["order"]["orderNumber"] == order["orderNumber"]
        assert data["timeline"][0]["status"] == "pending"
        assert data["timeline"][0]["updatedBy"] == "system"

    @pytest.mark.asyncio
    async def test_status_tracking_and_cancel(self, client, headers):
        order = await create_order(client, headers)
        number = order["orderNumber"]

        resp = await client.put(
            f"/api/orders/{number}/status",
            json={"status": "confirmed", "note": "Payment verified"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Order status updated to confirmed"

        resp = await client.put(
            f"/api/orders/{number}/status", json={"status": "processing"}, headers=headers,
        )
        assert resp.status_code == 200

        resp = await client.put(
            f"/api/orders/{number}/tracking",
            json={"trackingNumber": "LBC-123", "carrier": "LBC"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Tracking information updated successfully. Order status updated."
        assert resp.json()["trackingInfo"]["trackingNumber"] == "LBC-123"

        tracking = (await client.get(f"/api/orders/{number}/tracking")).json()
        assert tracking["carrier"] == "LBC"
        assert tracking["status"] == "shipped"

        resp = await client.delete(f"/api/orders/{number}", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "ILLEGAL_CANCELLATION"

    @pytest.mark.asyncio
    async def test_cancel_pending(self, client, headers):
        order = await create_order(client, headers)
        resp = await client.delete(f"/api/orders/{order['orderNumber']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["order"]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, client, headers):
        order = await create_order(client, headers)
        resp = await client.put(
            f"/api/orders/{order['orderNumber']}/status",
            json={"status": "delivered"},
            headers=headers,
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"] == {"current": "pending", "requested": "delivered"}

    @pytest.mark.asyncio
    async def test_list_reflects_new_orders(self, client, headers):
        first = (await client.get("/api/orders")).json()
        assert first["pagination"]["total"] == 0
        await create_order(client, headers)
        second = (await client.get("/api/orders")).json()
        assert second["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_stats(self, client, headers):
        await create_order(client, headers)
        resp = await client.get("/api/orders/stats")
        assert resp.status_code == 200
        assert resp.json()["summary"]["totalOrders"] == 1

    @pytest.mark.asyncio
    async def test_validation_error(self, client, headers):
        resp = await client.post("/api/orders", json=order_payload(items=[]), headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


class TestIdentity:

    @pytest.mark.asyncio
    async def test_unidentified_mutation_is_rejected(self):
        app = create_app(make_config(), identity_resolver=lambda request: request.header("x-user-id") or None)
        async with make_client(app) as client:
            headers = await csrf_headers(client)
            resp = await client.post("/api/orders", json=order_payload(), headers=headers)
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "UNAUTHORIZED"

            resp = await client.post(
                "/api/orders", json=order_payload(), headers=dict(headers, **{"x-user-id": "staff-7"}),
            )
            assert resp.status_code == 201
            number = resp.json()["order"]["orderNumber"]
            data = (await client.get(f"/api/orders/{number}?includeTimeline=true")).json()
            assert data["timeline"][0]["updatedBy"] == "staff-7"


class TestErrors:

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        resp = await client.get("/api/orders/SO-DOES-NOT-EXIST")
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["request_id"] == resp.headers["x-request-id"]
        assert_security_headers(resp)

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        resp = await client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "ROUTE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client):
        resp = await client.get("/api/orders/SO-1/status")
        assert resp.status_code == 405
        assert resp.json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_xss_body_is_blocked(self, client, headers):
        resp = await client.post(
            "/api/orders",
            json=order_payload(notes="<script>alert(1)</script>"),
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "BAD_INPUT"
        assert_security_headers(resp)

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        app = create_app(make_config(rate_limit={"max_requests": 2}))
        async with make_client(app) as client:
            for _ in range(2):
                assert (await client.get("/api/orders")).status_code == 200
            resp = await client.get("/api/orders")
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "RATE_LIMITED"
            assert int(resp.headers["retry-after"]) > 0
            assert_security_headers(resp)

            # health stays reachable
            assert (await client.get("/api/health")).status_code == 200


class TestCachingAndCompression:

    @pytest.mark.asyncio
    async def test_etag_round_trip(self, client, headers):
        order = await create_order(client, headers)
        url = f"/api/orders/{order['orderNumber']}"
        first = await client.get(url)
        etag = first.headers["etag"]
        assert "max-age" in first.headers["cache-control"]

        second = await client.get(url, headers={"if-none-match": etag})
        assert second.status_code == 304
        assert second.content == b""
        assert second.headers["etag"] == etag
        assert_security_headers(second)

    @pytest.mark.asyncio
    async def test_mutation_is_not_cached(self, client, headers):
        resp = await client.post("/api/orders", json=order_payload(), headers=headers)
        assert "no-store" in resp.headers["cache-control"]

    @pytest.mark.asyncio
    async def test_large_list_is_gzipped(self, app, client, headers):
        for _ in range(3):
            await create_order(client, headers)
        resp = await client.get("/api/orders", headers={"accept-encoding": "gzip"})
        assert resp.status_code == 200
        assert resp.headers["content-encoding"] == "gzip"
        assert "accept-encoding" in resp.headers["vary"].lower()
        assert len(resp.json()["orders"]) == 3
        assert app.compression_stats.encoding_usage["gzip"] >= 1

    @pytest.mark.asyncio
    async def test_raw_body_is_valid_gzip(self, client, headers):
        for _ in range(3):
            await create_order(client, headers)
        async with client.stream("GET", "/api/orders", headers={"accept-encoding": "gzip"}) as resp:
            raw = b"".join([chunk async for chunk in resp.aiter_raw()])
        assert gzip.decompress(raw).startswith(b"{")

    @pytest.mark.asyncio
    async def test_small_response_not_compressed(self, client):
        resp = await client.get("/api/health", headers={"accept-encoding": "gzip"})
        assert "content-encoding" not in resp.headers


class TestLifespan:

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, app):
        messages = [{"type": "lifespan.startup"}, {"type": "lifespan.shutdown"}]
        sent = []

        async def receive():
            return messages.pop(0)

        async def send(message):
            sent.append(message["type"])

        await app({"type": "lifespan"}, receive, send)
        assert sent == ["lifespan.startup.complete", "lifespan.shutdown.complete"]
