"""
Service controllers - health check and CSRF token issuance.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional

from . import __version__
from .controller import GET, Controller, RequestCtx
from .middleware_ext.csrf import (
    DEFAULT_COOKIE_NAME,
    DEFAULT_SESSION_COOKIE,
    CSRFTokenStore,
    issue_csrf_token,
    new_session_id,
)
from .response import Response, dumps

logger = logging.getLogger("barley.health")

HealthCheck = Callable[[], Awaitable[bool]]


class HealthController(Controller):
    """
    ``GET /api/health``.

    Every named check reports ``connected`` or ``disconnected``. A failing
    check listed in ``critical`` turns the response into a 503; other
    failures only mark the service as degraded.
    """

    prefix = "/api/health"
    tags = ["health"]

    def __init__(
        self,
        checks: Optional[Dict[str, HealthCheck]] = None,
        critical: Iterable[str] = (),
        environment: str = "development",
    ):
        self.checks = dict(checks or {})
        self.critical = set(critical)
        self.environment = environment
        self.started_at = time.monotonic()

    @GET("/", cache="no-cache")
    async def check(self, ctx: RequestCtx) -> Response:
        services = {"api": "operational"}
        failed = []
        for name, probe in self.checks.items():
            try:
                ok = await probe()
            except Exception as e:
                logger.warning("Health check %s raised: %s", name, e)
                ok = False
            services[name] = "connected" if ok else "disconnected"
            if not ok:
                failed.append(name)

        unhealthy = any(name in self.critical for name in failed)
        if unhealthy:
            status = "unhealthy"
        elif failed:
            status = "degraded"
        else:
            status = "healthy"

        body = {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "api": {"version": __version__, "environment": self.environment},
            "services": services,
            "uptime": round(time.monotonic() - self.started_at, 3),
        }
        if unhealthy:
            body["error"] = "Service connectivity issues"
        return Response.json(body, status=503 if unhealthy else 200)


class CsrfTokenController(Controller):
    """
    ``GET /api/csrf-token``.

    Issues a token for the caller's ``session-id`` cookie, starting a new
    session when the request has none.
    """

    prefix = "/api/csrf-token"
    tags = ["security"]

    def __init__(
        self,
        store: CSRFTokenStore,
        secret: str,
        *,
        secure: bool = False,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        session_cookie: str = DEFAULT_SESSION_COOKIE,
        ttl: Optional[float] = None,
    ):
        self.store = store
        self.secret = secret
        self.secure = secure
        self.cookie_name = cookie_name
        self.session_cookie = session_cookie
        self.ttl = ttl

    @GET("/", cache="no-cache")
    async def issue(self, ctx: RequestCtx) -> Response:
        session_id = ctx.request.cookie(self.session_cookie)
        response = Response.json({})
        if not session_id:
            session_id = new_session_id()
            response.set_cookie(
                self.session_cookie,
                session_id,
                path="/",
                httponly=True,
                samesite="Strict",
                secure=self.secure,
            )
        token = await issue_csrf_token(
            response,
            session_id,
            self.store,
            self.secret,
            secure=self.secure,
            cookie_name=self.cookie_name,
            ttl=self.ttl,
        )
        response.body = dumps({"csrfToken": token})
        return response


__all__ = ["HealthController", "CsrfTokenController", "HealthCheck"]
