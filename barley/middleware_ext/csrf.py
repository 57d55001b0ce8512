"""
CSRF Protection - token generation, token stores and validation middleware.

Token format::

    {salt}.{sha256_hex(f"{salt}-{session_id}-{secret}")}

where ``salt`` is 8 random bytes in hex. Tokens are bound to a session id and
a server secret, so a token for one session never verifies for another.

Two validation modes:
- ``double_submit``: the ``csrf-token`` cookie must equal the token sent in
  the ``x-csrf-token`` header (or ``csrfToken`` JSON body field)
- ``synchronizer``: the submitted token must equal the token stored for the
  ``session-id`` cookie and verify against the secret

Token stores are injected; nothing here keeps module-level state.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import logging
import secrets
import threading
import time
from collections import OrderedDict
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Optional,
    Tuple,
    TYPE_CHECKING,
)

from barley.faults import CSRFValidationFault
from barley.request import Request
from barley.response import Response

from .logging import log_security_event

if TYPE_CHECKING:
    from barley.controller import RequestCtx

Handler = Callable[[Request, "RequestCtx"], Awaitable[Response]]

logger = logging.getLogger("barley.security.csrf")

DEFAULT_COOKIE_NAME = "csrf-token"
DEFAULT_HEADER_NAME = "x-csrf-token"
DEFAULT_FIELD_NAME = "csrfToken"
DEFAULT_SESSION_COOKIE = "session-id"
DEFAULT_TOKEN_TTL = 3600
DEFAULT_SWEEP_INTERVAL = 300

MISSING_TOKEN = "Missing CSRF token"
INVALID_TOKEN = "Invalid CSRF token"
NO_SESSION_TOKEN = "No CSRF token found for session"


# ─── Token primitives ────────────────────────────────────────────────────────

def _token_hash(salt: str, session_id: str, secret: str) -> str:
    return hashlib.sha256(f"{salt}-{session_id}-{secret}".encode("utf-8")).hexdigest()


def generate_csrf_token(session_id: str, secret: str) -> str:
    """Generate a token bound to ``session_id`` and ``secret``."""
    salt = secrets.token_hex(8)
    return f"{salt}.{_token_hash(salt, session_id, secret)}"


def verify_csrf_token(token: Optional[str], session_id: str, secret: str) -> bool:
    """Check that ``token`` was generated for ``session_id`` with ``secret``."""
    if not token or not isinstance(token, str):
        return False
    parts = token.split(".")
    if len(parts) != 2:
        return False
    salt, digest = parts
    expected = _token_hash(salt, session_id, secret)
    return hmac.compare_digest(digest.encode("utf-8"), expected.encode("utf-8"))


def new_session_id() -> str:
    return secrets.token_hex(16)


# ─── Token stores ────────────────────────────────────────────────────────────

class CSRFTokenStore(abc.ABC):
    """Session id to token mapping with expiry."""

    @abc.abstractmethod
    async def get(self, session_id: str) -> Optional[str]:
        """Token for the session, or ``None`` if absent or expired."""

    @abc.abstractmethod
    async def set(self, session_id: str, token: str, ttl: Optional[float] = None) -> None:
        """Store a token for ``ttl`` seconds."""

    @abc.abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the session's token."""

    @abc.abstractmethod
    async def sweep(self) -> int:
        """Drop expired tokens; returns how many were removed."""

    async def start(self) -> None:
        """Start background maintenance, if any."""

    async def stop(self) -> None:
        """Stop background maintenance, if any."""


class MemoryCSRFTokenStore(CSRFTokenStore):
    """
    In-process token store for single-instance deployments.

    Bounded to ``max_entries``; the oldest entries are evicted first. A
    background task started with ``start()`` sweeps expired tokens every
    ``sweep_interval`` seconds. A token swept while a request is validating
    it simply fails validation and the client fetches a new one.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TOKEN_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        max_entries: int = 10_000,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    async def get(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            token, expires_at = entry
            if expires_at < time.time():
                del self._entries[session_id]
                return None
            return token

    async def set(self, session_id: str, token: str, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + (ttl if ttl is not None else self.default_ttl)
        with self._lock:
            self._entries.pop(session_id, None)
            self._entries[session_id] = (token, expires_at)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    async def sweep(self) -> int:
        now = time.time()
        with self._lock:
            expired = [sid for sid, (_, exp) in self._entries.items() if exp < now]
            for sid in expired:
                del self._entries[sid]
        if expired:
            logger.debug("Swept %d expired CSRF tokens", len(expired))
        return len(expired)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCSRFTokenStore(CSRFTokenStore):
    """
    Redis-backed token store for multi-instance deployments.

    Expiry is delegated to Redis key TTLs, so ``sweep`` has nothing to do.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "slv-barley:csrf:",
        default_ttl: float = DEFAULT_TOKEN_TTL,
        client: Any = None,
    ):
        self.url = url
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._client = client

    async def _redis(self) -> Any:
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    async def get(self, session_id: str) -> Optional[str]:
        client = await self._redis()
        value = await client.get(f"{self.prefix}{session_id}")
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, session_id: str, token: str, ttl: Optional[float] = None) -> None:
        client = await self._redis()
        seconds = max(1, int(ttl if ttl is not None else self.default_ttl))
        await client.setex(f"{self.prefix}{session_id}", seconds, token)

    async def delete(self, session_id: str) -> None:
        client = await self._redis()
        await client.delete(f"{self.prefix}{session_id}")

    async def sweep(self) -> int:
        return 0

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ─── Helpers ─────────────────────────────────────────────────────────────────

async def issue_csrf_token(
    response: Response,
    session_id: str,
    store: CSRFTokenStore,
    secret: str,
    *,
    secure: bool = False,
    cookie_name: str = DEFAULT_COOKIE_NAME,
    ttl: Optional[float] = None,
) -> str:
    """
    Generate a token, store it for the session and attach it to the response
    as an ``X-CSRF-Token`` header and a ``Path=/; HttpOnly; SameSite=Strict``
    cookie (``Secure`` when ``secure``).
    """
    token = generate_csrf_token(session_id, secret)
    await store.set(session_id, token, ttl)
    response.set_header("X-CSRF-Token", token)
    response.set_cookie(
        cookie_name,
        token,
        path="/",
        httponly=True,
        samesite="Strict",
        secure=secure,
    )
    return token


async def get_csrf_token(store: CSRFTokenStore, session_id: str, secret: str) -> str:
    """Return the session's token, creating one if none is stored."""
    token = await store.get(session_id)
    if token is None:
        token = generate_csrf_token(session_id, secret)
        await store.set(session_id, token)
    return token


async def invalidate_csrf_token(store: CSRFTokenStore, session_id: str) -> None:
    """Forget the session's token (logout)."""
    await store.delete(session_id)


def csrf_exempt(request: Request) -> None:
    """Mark the request as exempt from CSRF validation."""
    request.state["csrf_exempt"] = True


# ─── Middleware ──────────────────────────────────────────────────────────────

class CSRFMiddleware:
    """
    CSRF validation for state-changing requests.

    Safe methods and ignored route prefixes pass through. Failures
    short-circuit with 403 ``CSRF_VALIDATION_FAILED`` and are logged as a
    ``csrf_validation_failed`` security event with severity high.

    Args:
        secret: Server secret the token hash is bound to.
        store: Token store (required for synchronizer mode).
        mode: ``"double_submit"`` or ``"synchronizer"``.
        cookie_name: Cookie carrying the token in double-submit mode.
        header_name: Header carrying the submitted token.
        field_name: JSON body field carrying the submitted token.
        session_cookie: Cookie carrying the session id.
        ignore_routes: Path prefixes that skip validation.
    """

    _SAFE_METHODS: FrozenSet[str] = frozenset({"GET", "HEAD", "OPTIONS"})

    def __init__(
        self,
        secret: str,
        store: Optional[CSRFTokenStore] = None,
        *,
        mode: str = "double_submit",
        cookie_name: str = DEFAULT_COOKIE_NAME,
        header_name: str = DEFAULT_HEADER_NAME,
        field_name: str = DEFAULT_FIELD_NAME,
        session_cookie: str = DEFAULT_SESSION_COOKIE,
        ignore_routes: Optional[Iterable[str]] = None,
        safe_methods: Optional[FrozenSet[str]] = None,
    ):
        if mode not in ("double_submit", "synchronizer"):
            raise ValueError(f"Unknown CSRF mode: {mode!r}")
        if mode == "synchronizer" and store is None:
            raise ValueError("Synchronizer CSRF mode requires a token store")
        self.secret = secret
        self.store = store
        self.mode = mode
        self.cookie_name = cookie_name
        self.header_name = header_name.lower()
        self.field_name = field_name
        self.session_cookie = session_cookie
        self.ignore_routes = list(ignore_routes if ignore_routes is not None else
                                  ("/api/health", "/api/auth/refresh"))
        self.safe_methods = safe_methods or self._SAFE_METHODS

    async def __call__(
        self,
        request: Request,
        ctx: "RequestCtx",
        next_handler: Handler,
    ) -> Response:
        if self._should_skip(request):
            return await next_handler(request, ctx)

        if self.mode == "synchronizer":
            failure = await self._check_synchronizer(request)
        else:
            failure = await self._check_double_submit(request)

        if failure is not None:
            reason, extra = failure
            return self._reject(request, reason, extra)

        return await next_handler(request, ctx)

    def _should_skip(self, request: Request) -> bool:
        if request.method in self.safe_methods:
            return True
        if request.state.get("csrf_exempt"):
            return True
        return any(request.path.startswith(route) for route in self.ignore_routes)

    async def _submitted_token(self, request: Request) -> Optional[str]:
        token = request.header(self.header_name)
        if token:
            return token
        if request.is_json():
            body = request.state.get("sanitized_body")
            if body is None:
                body = await request.json()
            if isinstance(body, dict):
                value = body.get(self.field_name)
                if isinstance(value, str) and value:
                    return value
        return None

    async def _check_double_submit(self, request: Request) -> Optional[Tuple[str, Dict[str, Any]]]:
        cookie_token = request.cookie(self.cookie_name)
        submitted = await self._submitted_token(request)
        if not cookie_token or not submitted:
            return MISSING_TOKEN, {}
        if not hmac.compare_digest(cookie_token.encode("utf-8"), submitted.encode("utf-8")):
            return INVALID_TOKEN, {}
        return None

    async def _check_synchronizer(self, request: Request) -> Optional[Tuple[str, Dict[str, Any]]]:
        session_id = request.cookie(self.session_cookie)
        if not session_id:
            return MISSING_TOKEN, {}

        stored = await self.store.get(session_id)
        if stored is None:
            # Hand the client a fresh token so it can retry.
            fresh = generate_csrf_token(session_id, self.secret)
            await self.store.set(session_id, fresh)
            return NO_SESSION_TOKEN, {"csrf_token": fresh}

        submitted = await self._submitted_token(request)
        if not submitted:
            return MISSING_TOKEN, {}
        if not hmac.compare_digest(stored.encode("utf-8"), submitted.encode("utf-8")):
            return INVALID_TOKEN, {}
        if not verify_csrf_token(submitted, session_id, self.secret):
            return INVALID_TOKEN, {}
        return None

    def _reject(self, request: Request, reason: str, extra: Dict[str, Any]) -> Response:
        log_security_event(
            "csrf_validation_failed",
            "high",
            path=request.path,
            method=request.method,
            reason=reason,
        )
        fault = CSRFValidationFault(reason, metadata=extra)
        headers = {"x-csrf-token": extra["csrf_token"]} if "csrf_token" in extra else None
        return Response.from_fault(
            fault,
            request_id=request.state.get("request_id"),
            headers=headers,
        )


__all__ = [
    "CSRFMiddleware",
    "CSRFTokenStore",
    "MemoryCSRFTokenStore",
    "RedisCSRFTokenStore",
    "generate_csrf_token",
    "verify_csrf_token",
    "issue_csrf_token",
    "get_csrf_token",
    "invalidate_csrf_token",
    "csrf_exempt",
    "new_session_id",
]
