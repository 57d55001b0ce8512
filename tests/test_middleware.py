"""
Tests for the request pipeline stages: request ids, the exception
boundary, rate limiting, sanitization, CSRF, compression, security headers
and logging.
"""

import gzip
import json
import logging
import os
import re

import brotli
import orjson
import pytest

from barley.faults import NotFoundFault, ValidationFault
from barley.middleware import ExceptionMiddleware, MiddlewareStack, RequestIdMiddleware
from barley.middleware_ext.compression import (
    CompressionMiddleware,
    CompressionStats,
    is_compressible,
    parse_accept_encoding,
    select_encoding,
)
from barley.middleware_ext.csrf import (
    CSRFMiddleware,
    MemoryCSRFTokenStore,
    RedisCSRFTokenStore,
    csrf_exempt,
    generate_csrf_token,
    get_csrf_token,
    invalidate_csrf_token,
    issue_csrf_token,
    verify_csrf_token,
)
from barley.middleware_ext.logging import (
    RequestLoggingMiddleware,
    StructuredFormatter,
    log_security_event,
)
from barley.middleware_ext import rate_limit as rate_limit_module
from barley.middleware_ext.rate_limit import RateLimitMiddleware, RateLimitRule, client_ip, preset_rule
from barley.middleware_ext.sanitization import (
    COMMAND_INJECTION,
    NOSQL_INJECTION,
    PATH_TRAVERSAL,
    SQL_INJECTION,
    XSS,
    SanitizationMiddleware,
    detect_injection,
    sanitize_email,
    sanitize_filename,
    sanitize_number,
    sanitize_payload,
    sanitize_string,
    sanitize_url,
)
from barley.middleware_ext.security import SECURITY_HEADERS, SecurityHeadersMiddleware
from barley.response import Response

from tests.conftest import FakeCtx, FakeRequest, make_handler, run

SECRET = "test-secret"


def error_of(response):
    return orjson.loads(response.body)["error"]


# ============================================================================
# Stack and core middleware
# ============================================================================


class TestMiddlewareStack:

    @pytest.mark.asyncio
    async def test_lower_priority_is_outermost(self):
        order = []

        def tracer(name):
            async def mw(request, ctx, next_handler):
                order.append(f"{name}:in")
                response = await next_handler(request, ctx)
                order.append(f"{name}:out")
                return response
            return mw

        stack = MiddlewareStack()
        stack.add(tracer("inner"), priority=50, name="inner")
        stack.add(tracer("outer"), priority=10, name="outer")
        assert stack.names == ["outer", "inner"]

        handler = stack.build_handler(make_handler())
        request = FakeRequest()
        await handler(request, FakeCtx(request))
        assert order == ["outer:in", "inner:in", "inner:out", "outer:out"]


class TestRequestId:

    @pytest.mark.asyncio
    async def test_generates_id(self):
        request = FakeRequest()
        response = await run(RequestIdMiddleware(), request)
        request_id = response.headers["x-request-id"]
        assert re.match(r"^req_\d+_[0-9a-z]{9}$", request_id)
        assert request.state["request_id"] == request_id

    @pytest.mark.asyncio
    async def test_echoes_incoming_id(self):
        request = FakeRequest(headers={"X-Request-ID": "abc-123"})
        response = await run(RequestIdMiddleware(), request)
        assert response.headers["x-request-id"] == "abc-123"


class TestExceptionMiddleware:

    @pytest.mark.asyncio
    async def test_fault_maps_to_status(self):
        async def handler(request, ctx):
            raise NotFoundFault("Order", "SO-1")

        request = FakeRequest()
        request.state["request_id"] = "req-1"
        response = await run(ExceptionMiddleware(), request, handler)
        assert response.status == 404
        error = error_of(response)
        assert error["code"] == "NOT_FOUND"
        assert error["message"] == "Order not found"
        assert error["request_id"] == "req-1"
        assert response.headers["x-fault-code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_validation_details(self):
        async def handler(request, ctx):
            raise ValidationFault("Validation failed", errors=["items required"])

        response = await run(ExceptionMiddleware(), FakeRequest(), handler)
        assert response.status == 400
        assert error_of(response)["details"] == {"errors": ["items required"]}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_masked(self):
        async def handler(request, ctx):
            raise RuntimeError("database password is hunter2")

        response = await run(ExceptionMiddleware(), FakeRequest(), handler)
        assert response.status == 500
        error = error_of(response)
        assert error["code"] == "INTERNAL_ERROR"
        assert "hunter2" not in response.body.decode()

    @pytest.mark.asyncio
    async def test_debug_includes_detail(self):
        async def handler(request, ctx):
            raise RuntimeError("boom")

        response = await run(ExceptionMiddleware(debug=True), FakeRequest(), handler)
        error = error_of(response)
        assert error["detail"] == "boom"
        assert "RuntimeError" in error["traceback"]


# ============================================================================
# Rate limiting
# ============================================================================


class FakeClock:
    """Stands in for the ``time`` module; both clocks move together."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.wall = start
        self.mono = 1000.0

    def time(self) -> float:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.wall += seconds
        self.mono += seconds


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_blocks_after_limit(self):
        mw = RateLimitMiddleware(default_limit=2, default_window=60)
        handler = make_handler()
        for _ in range(2):
            response = await run(mw, FakeRequest(), handler)
            assert response.status == 200

        response = await run(mw, FakeRequest(), handler)
        assert response.status == 429
        assert handler.calls == 2
        assert error_of(response)["code"] == "RATE_LIMITED"
        assert int(response.headers["retry-after"]) >= 1
        assert response.headers["x-ratelimit-remaining"] == "0"

    @pytest.mark.asyncio
    async def test_headers_on_passing_response(self):
        mw = RateLimitMiddleware(default_limit=5, default_window=60)
        response = await run(mw, FakeRequest())
        assert response.headers["x-ratelimit-limit"] == "5"
        assert response.headers["x-ratelimit-remaining"] == "4"

    @pytest.mark.asyncio
    async def test_clients_are_counted_separately(self):
        mw = RateLimitMiddleware(default_limit=1, default_window=60)
        a = await run(mw, FakeRequest(client=("10.0.0.1", 1)))
        b = await run(mw, FakeRequest(client=("10.0.0.2", 1)))
        assert a.status == b.status == 200

    @pytest.mark.asyncio
    async def test_exempt_path_and_skip_keys(self):
        mw = RateLimitMiddleware(
            default_limit=1, default_window=60,
            exempt_paths=["/api/health"], skip_keys=["10.9.9.9"],
        )
        for _ in range(3):
            assert (await run(mw, FakeRequest(path="/api/health"))).status == 200
            trusted = FakeRequest(client=("10.9.9.9", 1))
            assert (await run(mw, trusted)).status == 200

    @pytest.mark.asyncio
    async def test_sliding_window(self):
        mw = RateLimitMiddleware(default_limit=1, default_window=60, algorithm="sliding_window")
        assert (await run(mw, FakeRequest())).status == 200
        assert (await run(mw, FakeRequest())).status == 429

    @pytest.mark.asyncio
    async def test_scoped_rule(self):
        mw = RateLimitMiddleware(rules=[RateLimitRule(limit=1, window=60, scope="/api/orders", methods=["POST"])])
        assert (await run(mw, FakeRequest("POST", "/api/orders"))).status == 200
        assert (await run(mw, FakeRequest("POST", "/api/orders"))).status == 429
        assert (await run(mw, FakeRequest("GET", "/api/orders"))).status == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", ["fixed_window", "sliding_window"])
    async def test_idle_client_keeps_count_until_window_ends(self, monkeypatch, algorithm):
        clock = FakeClock()
        monkeypatch.setattr(rate_limit_module, "time", clock)
        mw = RateLimitMiddleware(default_limit=3, default_window=900, algorithm=algorithm)
        client = ("1.1.1.1", 1)

        statuses = [(await run(mw, FakeRequest(client=client))).status for _ in range(4)]
        assert statuses == [200, 200, 200, 429]

        # Idle past the store's cleanup age, still inside the window.
        clock.advance(301)
        assert (await run(mw, FakeRequest(client=("2.2.2.2", 1)))).status == 200
        statuses = [(await run(mw, FakeRequest(client=client))).status for _ in range(3)]
        assert 200 not in statuses

    @pytest.mark.asyncio
    async def test_idle_bucket_evicted_after_window(self, monkeypatch):
        clock = FakeClock()
        monkeypatch.setattr(rate_limit_module, "time", clock)
        mw = RateLimitMiddleware(default_limit=1, default_window=900)
        client = ("1.1.1.1", 1)
        await run(mw, FakeRequest(client=client))
        assert (await run(mw, FakeRequest(client=client))).status == 429

        clock.advance(901)
        await run(mw, FakeRequest(client=("2.2.2.2", 1)))
        assert len(mw._store) == 1
        assert (await run(mw, FakeRequest(client=client))).status == 200


    def test_client_ip_prefers_forwarded(self):
        request = FakeRequest(headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})
        assert client_ip(request) == "1.2.3.4"
        assert client_ip(FakeRequest(headers={"X-Real-IP": "5.6.7.8"})) == "5.6.7.8"

    def test_presets(self):
        rule = preset_rule("auth", scope="/api/auth")
        assert (rule.limit, rule.window) == (5, 900)
        with pytest.raises(ValueError):
            preset_rule("nope")

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            RateLimitRule(algorithm="leaky")


# ============================================================================
# Sanitization
# ============================================================================


class TestDetection:

    @pytest.mark.parametrize("value,family", [
        ("<script>alert(1)</script>", XSS),
        ("javascript:alert(1)", XSS),
        ('<img src=x onerror="x()">', XSS),
        ("1 OR 1=1", SQL_INJECTION),
        ("{'$where': 'sleep(1)'}", NOSQL_INJECTION),
        ("../../etc/passwd", PATH_TRAVERSAL),
        ("x; rm -rf /", COMMAND_INJECTION),
    ])
    def test_families(self, value, family):
        assert family in detect_injection(value).types

    def test_clean_value(self):
        assert not detect_injection("Brown rice 5kg").is_suspicious


class TestSanitizers:

    def test_strips_markup(self):
        assert sanitize_string("  <b>hi</b><script>x()</script> ") == "hi"
        assert sanitize_string('<a href="/" onclick="x()">go</a>') == "go"
        assert sanitize_string(42) == ""

    def test_max_length_and_null_bytes(self):
        assert sanitize_string("ab\x00cdef", max_length=4) == "abc"

    def test_payload_recurses(self):
        cleaned = sanitize_payload({"note": "<i>ok</i>", "items": [{"name": "<b>x</b>"}], "qty": 2})
        assert cleaned == {"note": "ok", "items": [{"name": "x"}], "qty": 2}

    def test_email(self):
        assert sanitize_email(" Ana@Example.COM ") == "ana@example.com"
        assert sanitize_email("nope") is None

    def test_url(self):
        assert sanitize_url("https://example.com/a?b=1") == "https://example.com/a?b=1"
        assert sanitize_url("javascript:alert(1)") is None

    def test_number(self):
        assert sanitize_number("12.5") == 12.5
        assert sanitize_number("3", integer=True) == 3
        assert sanitize_number("3.5", integer=True) is None
        assert sanitize_number(5, min_value=10) is None
        assert sanitize_number(True) is None
        assert sanitize_number("abc") is None

    def test_filename(self):
        assert sanitize_filename("my file (1).png") == "my_file__1_.png"


class TestSanitizationMiddleware:

    @pytest.mark.asyncio
    async def test_blocks_xss_in_body(self):
        handler = make_handler()
        request = FakeRequest("POST", "/api/orders", json={"notes": "<script>alert(1)</script>"})
        response = await run(SanitizationMiddleware(), request, handler)
        assert response.status == 400
        error = error_of(response)
        assert error["code"] == "BAD_INPUT"
        assert error["details"]["types"] == [XSS]
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_blocks_nosql_operator_keys(self):
        request = FakeRequest("POST", "/api/orders", json={"customerId": {"$ne": None}})
        response = await run(SanitizationMiddleware(), request)
        assert response.status == 400
        assert error_of(response)["details"]["types"] == [NOSQL_INJECTION]

    @pytest.mark.asyncio
    async def test_blocks_xss_in_query(self):
        request = FakeRequest("GET", "/api/orders", query={"search": "<script>x</script>"})
        response = await run(SanitizationMiddleware(), request)
        assert response.status == 400
        assert error_of(response)["details"]["location"] == "query"

    @pytest.mark.asyncio
    async def test_cleans_non_blocking_input(self):
        handler = make_handler()
        request = FakeRequest("POST", "/api/orders", json={"notes": "  <b>leave</b> at door  "},
                              query={"q": " <i>rice</i> "})
        response = await run(SanitizationMiddleware(), request, handler)
        assert response.status == 200
        assert request.state["sanitized_body"] == {"notes": "leave at door"}
        assert request.state["sanitized_query"] == {"q": ["rice"]}

    @pytest.mark.asyncio
    async def test_sql_markers_are_logged_not_blocked(self, caplog):
        request = FakeRequest("POST", "/api/orders", json={"notes": "1 OR 1=1"})
        with caplog.at_level(logging.WARNING, logger="barley.security"):
            response = await run(SanitizationMiddleware(), request)
        assert response.status == 200
        assert any(getattr(r, "event", None) == "suspicious_input_sanitized" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_exempt_paths(self):
        request = FakeRequest("POST", "/webhooks/x", json={"html": "<script>x</script>"})
        response = await run(SanitizationMiddleware(exempt_paths=["/webhooks"]), request)
        assert response.status == 200


# ============================================================================
# CSRF
# ============================================================================


class TestTokens:

    def test_generate_and_verify(self):
        token = generate_csrf_token("sess-1", SECRET)
        assert verify_csrf_token(token, "sess-1", SECRET)
        assert not verify_csrf_token(token, "sess-2", SECRET)
        assert not verify_csrf_token(token, "sess-1", "other")
        assert not verify_csrf_token("garbage", "sess-1", SECRET)
        assert not verify_csrf_token(None, "sess-1", SECRET)

    def test_tokens_are_salted(self):
        assert generate_csrf_token("s", SECRET) != generate_csrf_token("s", SECRET)


class TestMemoryTokenStore:

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        store = MemoryCSRFTokenStore()
        await store.set("s", "t")
        assert await store.get("s") == "t"
        await store.delete("s")
        assert await store.get("s") is None

    @pytest.mark.asyncio
    async def test_expiry_and_sweep(self):
        store = MemoryCSRFTokenStore()
        await store.set("old", "t", ttl=-1)
        await store.set("new", "t")
        assert await store.sweep() == 1
        assert len(store) == 1
        await store.set("gone", "t", ttl=-1)
        assert await store.get("gone") is None

    @pytest.mark.asyncio
    async def test_bounded(self):
        store = MemoryCSRFTokenStore(max_entries=2)
        for sid in ("a", "b", "c"):
            await store.set(sid, "t")
        assert await store.get("a") is None
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_start_stop(self):
        store = MemoryCSRFTokenStore(sweep_interval=60)
        await store.start()
        assert store._task is not None
        await store.stop()
        assert store._task is None

    @pytest.mark.asyncio
    async def test_helpers(self):
        store = MemoryCSRFTokenStore()
        token = await get_csrf_token(store, "s", SECRET)
        assert await get_csrf_token(store, "s", SECRET) == token
        await invalidate_csrf_token(store, "s")
        assert await store.get("s") is None


class TestRedisTokenStore:

    @pytest.mark.asyncio
    async def test_uses_prefixed_keys_with_ttl(self):
        calls = []

        class Client:
            async def setex(self, key, ttl, value):
                calls.append(("setex", key, ttl, value))

            async def get(self, key):
                calls.append(("get", key))
                return b"tok"

            async def delete(self, key):
                calls.append(("delete", key))

            async def aclose(self):
                calls.append(("aclose",))

        store = RedisCSRFTokenStore(client=Client(), default_ttl=120)
        await store.set("s", "tok")
        assert await store.get("s") == "tok"
        await store.delete("s")
        await store.stop()
        assert calls == [
            ("setex", "slv-barley:csrf:s", 120, "tok"),
            ("get", "slv-barley:csrf:s"),
            ("delete", "slv-barley:csrf:s"),
            ("aclose",),
        ]


class TestIssueToken:

    @pytest.mark.asyncio
    async def test_sets_header_cookie_and_store(self):
        store = MemoryCSRFTokenStore()
        response = Response({"ok": True})
        token = await issue_csrf_token(response, "sess", store, SECRET, secure=True)
        assert response.headers["x-csrf-token"] == token
        cookie = response.get_header("set-cookie")
        assert f"csrf-token={token}" in cookie
        assert "HttpOnly" in cookie
        assert "SameSite=Strict" in cookie
        assert "Secure" in cookie
        assert await store.get("sess") == token


class TestDoubleSubmit:

    def mw(self, **kw):
        return CSRFMiddleware(SECRET, **kw)

    @pytest.mark.asyncio
    async def test_safe_methods_pass(self):
        assert (await run(self.mw(), FakeRequest("GET", "/api/orders"))).status == 200

    @pytest.mark.asyncio
    async def test_missing_token(self):
        handler = make_handler()
        response = await run(self.mw(), FakeRequest("POST", "/api/orders"), handler)
        assert response.status == 403
        error = error_of(response)
        assert error["code"] == "CSRF_VALIDATION_FAILED"
        assert error["message"] == "Missing CSRF token"
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_matching_header_and_cookie(self):
        request = FakeRequest(
            "POST", "/api/orders",
            headers={"X-CSRF-Token": "abc.def"}, cookies={"csrf-token": "abc.def"},
        )
        assert (await run(self.mw(), request)).status == 200

    @pytest.mark.asyncio
    async def test_token_in_body_field(self):
        request = FakeRequest(
            "POST", "/api/orders", json={"csrfToken": "abc.def"}, cookies={"csrf-token": "abc.def"},
        )
        assert (await run(self.mw(), request)).status == 200

    @pytest.mark.asyncio
    async def test_mismatch(self):
        request = FakeRequest(
            "POST", "/api/orders",
            headers={"X-CSRF-Token": "abc.def"}, cookies={"csrf-token": "abc.xyz"},
        )
        response = await run(self.mw(), request)
        assert error_of(response)["message"] == "Invalid CSRF token"

    @pytest.mark.asyncio
    async def test_ignored_routes_and_exempt_marker(self):
        assert (await run(self.mw(), FakeRequest("POST", "/api/health"))).status == 200

        async def exempting(request, ctx, next_handler):
            csrf_exempt(request)
            return await next_handler(request, ctx)

        stack = MiddlewareStack()
        stack.add(exempting, priority=1)
        stack.add(self.mw(), priority=2)
        handler = stack.build_handler(make_handler())
        request = FakeRequest("POST", "/api/orders")
        assert (await handler(request, FakeCtx(request))).status == 200

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            CSRFMiddleware(SECRET, mode="magic")

    def test_synchronizer_needs_store(self):
        with pytest.raises(ValueError):
            CSRFMiddleware(SECRET, mode="synchronizer")


class TestSynchronizer:

    @pytest.fixture
    def store(self):
        return MemoryCSRFTokenStore()

    def mw(self, store):
        return CSRFMiddleware(SECRET, store, mode="synchronizer")

    @pytest.mark.asyncio
    async def test_no_session(self, store):
        response = await run(self.mw(store), FakeRequest("PUT", "/api/orders/1"))
        assert response.status == 403
        assert error_of(response)["message"] == "Missing CSRF token"

    @pytest.mark.asyncio
    async def test_no_stored_token_hands_out_fresh_one(self, store):
        request = FakeRequest("PUT", "/api/orders/1", cookies={"session-id": "sess"})
        response = await run(self.mw(store), request)
        assert response.status == 403
        error = error_of(response)
        assert error["message"] == "No CSRF token found for session"
        fresh = response.headers["x-csrf-token"]
        assert error["details"]["csrf_token"] == fresh
        assert await store.get("sess") == fresh
        assert verify_csrf_token(fresh, "sess", SECRET)

    @pytest.mark.asyncio
    async def test_valid_token(self, store):
        token = generate_csrf_token("sess", SECRET)
        await store.set("sess", token)
        request = FakeRequest(
            "PUT", "/api/orders/1", cookies={"session-id": "sess"}, headers={"X-CSRF-Token": token},
        )
        assert (await run(self.mw(store), request)).status == 200

    @pytest.mark.asyncio
    async def test_missing_submitted_token(self, store):
        await store.set("sess", generate_csrf_token("sess", SECRET))
        request = FakeRequest("PUT", "/api/orders/1", cookies={"session-id": "sess"})
        response = await run(self.mw(store), request)
        assert error_of(response)["message"] == "Missing CSRF token"

    @pytest.mark.asyncio
    async def test_wrong_token(self, store):
        await store.set("sess", generate_csrf_token("sess", SECRET))
        request = FakeRequest(
            "PUT", "/api/orders/1", cookies={"session-id": "sess"},
            headers={"X-CSRF-Token": generate_csrf_token("sess", SECRET)},
        )
        response = await run(self.mw(store), request)
        assert error_of(response)["message"] == "Invalid CSRF token"

    @pytest.mark.asyncio
    async def test_token_signed_with_other_secret(self, store):
        token = generate_csrf_token("sess", "another-secret")
        await store.set("sess", token)
        request = FakeRequest(
            "PUT", "/api/orders/1", cookies={"session-id": "sess"}, headers={"X-CSRF-Token": token},
        )
        response = await run(self.mw(store), request)
        assert response.status == 403


# ============================================================================
# Compression
# ============================================================================


BIG = {"orders": [{"orderNumber": f"SO-{i:06d}", "status": "pending"} for i in range(200)]}


class TestNegotiation:

    def test_parse_accept_encoding(self):
        assert parse_accept_encoding("gzip;q=0.5, br, deflate;q=0") == [("br", 1.0), ("gzip", 0.5)]
        assert parse_accept_encoding(None) == []

    def test_select_prefers_server_order(self):
        assert select_encoding([("gzip", 1.0), ("br", 0.9)]) == "br"
        assert select_encoding([("*", 1.0)]) == "br"
        assert select_encoding([("identity", 1.0)]) is None

    def test_compressible(self):
        assert is_compressible("application/json; charset=utf-8")
        assert is_compressible("text/html")
        assert not is_compressible("image/png")
        assert not is_compressible("application/octet-stream")


class TestCompressionMiddleware:

    @pytest.mark.asyncio
    async def test_brotli(self):
        stats = CompressionStats()
        request = FakeRequest(headers={"Accept-Encoding": "gzip, br"})
        response = await run(CompressionMiddleware(stats=stats), request, make_handler(body=BIG))
        assert response.headers["content-encoding"] == "br"
        assert orjson.loads(brotli.decompress(response.body)) == BIG
        assert response.headers["x-original-size"] == str(len(orjson.dumps(BIG)))
        assert response.headers["x-compression-ratio"].endswith("%")
        assert "Accept-Encoding" in response.headers["vary"]
        assert stats.requests_processed == 1
        assert stats.encoding_usage == {"br": 1}

    @pytest.mark.asyncio
    async def test_gzip(self):
        request = FakeRequest(headers={"Accept-Encoding": "gzip"})
        response = await run(CompressionMiddleware(), request, make_handler(body=BIG))
        assert response.headers["content-encoding"] == "gzip"
        assert orjson.loads(gzip.decompress(response.body)) == BIG

    @pytest.mark.asyncio
    async def test_below_threshold(self):
        request = FakeRequest(headers={"Accept-Encoding": "gzip"})
        response = await run(CompressionMiddleware(), request, make_handler(body={"ok": True}))
        assert "content-encoding" not in response.headers

    @pytest.mark.asyncio
    async def test_mutations_not_compressed(self):
        request = FakeRequest("POST", "/", headers={"Accept-Encoding": "gzip"})
        response = await run(CompressionMiddleware(), request, make_handler(body=BIG))
        assert "content-encoding" not in response.headers

    @pytest.mark.asyncio
    async def test_binary_not_compressed(self):
        request = FakeRequest(headers={"Accept-Encoding": "gzip"})
        handler = make_handler(body=b"\x00" * 4096, media_type="image/png")
        response = await run(CompressionMiddleware(), request, handler)
        assert "content-encoding" not in response.headers

    @pytest.mark.asyncio
    async def test_no_acceptable_encoding(self):
        response = await run(CompressionMiddleware(), FakeRequest(), make_handler(body=BIG))
        assert "content-encoding" not in response.headers

    @pytest.mark.asyncio
    async def test_incompressible_body_returned_unchanged(self):
        payload = os.urandom(4096)
        request = FakeRequest(headers={"Accept-Encoding": "br, gzip"})
        handler = make_handler(body=payload, media_type="text/plain")
        stats = CompressionStats()
        response = await run(CompressionMiddleware(stats=stats), request, handler)
        assert response.body == payload
        assert "content-encoding" not in response.headers
        assert stats.requests_processed == 0

    def test_stats_ratio(self):
        stats = CompressionStats()
        stats.add(1000, 250, "gzip")
        assert stats.to_dict()["average_ratio"] == 75.0
        stats.reset()
        assert stats.requests_processed == 0


# ============================================================================
# Security headers
# ============================================================================


class TestSecurityHeaders:

    @pytest.mark.asyncio
    async def test_applied_and_fingerprints_removed(self):
        handler = make_handler(headers={"Server": "uvicorn", "X-Powered-By": "Express"})
        response = await run(SecurityHeadersMiddleware(), FakeRequest(), handler)
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert "server" not in response.headers
        assert "x-powered-by" not in response.headers

    @pytest.mark.asyncio
    async def test_applied_to_short_circuit(self):
        stack = MiddlewareStack()
        stack.add(SecurityHeadersMiddleware(), priority=0)
        stack.add(RateLimitMiddleware(default_limit=1, default_window=60), priority=40)
        handler = stack.build_handler(make_handler())
        for _ in range(2):
            request = FakeRequest()
            response = await handler(request, FakeCtx(request))
        assert response.status == 429
        assert response.headers["x-frame-options"] == "DENY"

    @pytest.mark.asyncio
    async def test_applied_on_escaped_exception(self):
        async def handler(request, ctx):
            raise RuntimeError("boom")

        response = await run(SecurityHeadersMiddleware(), FakeRequest(), handler)
        assert response.status == 500
        assert response.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_extra_headers(self):
        mw = SecurityHeadersMiddleware(extra_headers={"Strict-Transport-Security": "max-age=31536000"})
        response = await run(mw, FakeRequest())
        assert response.headers["strict-transport-security"] == "max-age=31536000"


# ============================================================================
# Logging
# ============================================================================


class TestLogging:

    def test_security_event_level(self, caplog):
        with caplog.at_level(logging.INFO, logger="barley.security"):
            log_security_event("csrf_validation_failed", "high", path="/x")
        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.event == "csrf_validation_failed"
        assert record.severity == "error"
        assert record.details == {"path": "/x"}

    def test_structured_formatter(self):
        record = logging.LogRecord("barley.test", logging.WARNING, __file__, 1, "hello %s", ("there",), None)
        record.request_id = "req-1"
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["level"] == "warning"
        assert entry["message"] == "hello there"
        assert entry["request_id"] == "req-1"

    @pytest.mark.asyncio
    async def test_request_logging_levels(self, caplog):
        mw = RequestLoggingMiddleware()
        with caplog.at_level(logging.INFO, logger="barley.requests"):
            await run(mw, FakeRequest(path="/ok"))
            await run(mw, FakeRequest(path="/missing"), make_handler(status=404))
        levels = [(r.levelno, r.status) for r in caplog.records if r.name == "barley.requests"]
        assert levels == [(logging.INFO, 200), (logging.WARNING, 404)]

    @pytest.mark.asyncio
    async def test_request_logging_reraises(self, caplog):
        async def handler(request, ctx):
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="barley.requests"):
            with pytest.raises(RuntimeError):
                await run(RequestLoggingMiddleware(), FakeRequest(), handler)
        assert "EXCEPTION" in caplog.records[-1].getMessage()
