"""
Application factory.

``create_app`` wires configuration, stores, cache, the order repository and
service, the controllers and the request pipeline into one ASGI callable::

    app = create_app()                      # config from barley.yaml / env
    app = create_app(ConfigLoader.load(overrides={"cache": {"backend": "redis"}}))
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .asgi import ASGIAdapter
from .cache import CacheBackend, CacheService, FailoverBackend, MemoryBackend, RedisBackend
from .config import BarleyConfig, ConfigLoader
from .controllers import CsrfTokenController, HealthController
from .middleware_ext.compression import CompressionStats
from .middleware_ext.csrf import CSRFTokenStore, MemoryCSRFTokenStore, RedisCSRFTokenStore
from .middleware_ext.logging import configure_logging
from .orders import OrderController, OrderRepository, OrderService
from .orders.controllers import IdentityResolver
from .pipeline import build_pipeline
from .routing import Router

logger = logging.getLogger("barley.app")


class BarleyApp:
    """
    The assembled service.

    Exposes its collaborators as attributes so tests and the CLI can reach
    them (``app.router``, ``app.service``, ``app.cache``...).
    """

    def __init__(
        self,
        config: BarleyConfig,
        *,
        repository: OrderRepository,
        cache: CacheService,
        csrf_store: CSRFTokenStore,
        identity_resolver: Optional[IdentityResolver] = None,
    ):
        self.config = config
        self.repository = repository
        self.cache = cache
        self.csrf_store = csrf_store
        self.compression_stats = CompressionStats()
        self.service = OrderService(repository, cache, cache_ttl=config.cache.default_ttl)

        self.router = Router()
        self.router.add_controller(
            HealthController(
                checks={"repository": self._repository_ok, "cache": cache.health_check},
                critical=("repository",),
                environment=config.env,
            )
        )
        self.router.add_controller(
            CsrfTokenController(
                csrf_store,
                config.csrf.secret,
                secure=config.is_production,
                cookie_name=config.csrf.cookie_name,
                session_cookie=config.csrf.session_cookie,
                ttl=config.csrf.token_ttl,
            )
        )
        self.router.add_controller(OrderController(self.service, identity_resolver))

        self.asgi = ASGIAdapter(
            self._build_chain,
            on_startup=[self.cache.initialize, self.csrf_store.start],
            on_shutdown=[self.cache.shutdown, self.csrf_store.stop],
        )

    def _build_chain(self):
        return build_pipeline(
            self.router.dispatch,
            self.config,
            csrf_store=self.csrf_store,
            compression_stats=self.compression_stats,
        )

    async def _repository_ok(self) -> bool:
        await self.repository.count()
        return True

    async def __call__(self, scope: dict, receive: Any, send: Any) -> None:
        await self.asgi(scope, receive, send)


def build_cache_backend(config: BarleyConfig) -> CacheBackend:
    """Memory backend, or Redis with an in-memory fallback."""
    cache = config.cache
    if cache.backend == "redis":
        return FailoverBackend(
            RedisBackend(cache.redis_url, raise_errors=True),
            MemoryBackend(max_size=cache.max_size),
        )
    return MemoryBackend(max_size=cache.max_size)


def build_csrf_store(config: BarleyConfig) -> CSRFTokenStore:
    csrf = config.csrf
    if csrf.store == "redis":
        return RedisCSRFTokenStore(config.cache.redis_url, default_ttl=csrf.token_ttl)
    return MemoryCSRFTokenStore(default_ttl=csrf.token_ttl, sweep_interval=csrf.sweep_interval)


def create_app(
    config: Optional[BarleyConfig] = None,
    *,
    identity_resolver: Optional[IdentityResolver] = None,
    csrf_store: Optional[CSRFTokenStore] = None,
    cache_backend: Optional[CacheBackend] = None,
    repository: Optional[OrderRepository] = None,
    setup_logging: bool = False,
) -> BarleyApp:
    """
    Build the application.

    Args:
        config: Resolved configuration; loaded with ``ConfigLoader`` if omitted
        identity_resolver: Resolves the acting user for order mutations
        csrf_store: Token store; built from ``config.csrf.store`` if omitted
        cache_backend: Cache backend; built from ``config.cache`` if omitted
        repository: Order storage
        setup_logging: Install the configured log handler on ``barley``
    """
    config = config or ConfigLoader.load()
    if setup_logging:
        configure_logging(config.logging.level, config.logging.format)

    cache = CacheService(
        cache_backend or build_cache_backend(config),
        key_prefix=config.cache.key_prefix,
        default_ttl=config.cache.default_ttl,
    )
    app = BarleyApp(
        config,
        repository=repository or OrderRepository(),
        cache=cache,
        csrf_store=csrf_store or build_csrf_store(config),
        identity_resolver=identity_resolver,
    )
    logger.info(
        "Barley app created (env=%s, cache=%s, csrf=%s)",
        config.env, config.cache.backend, config.csrf.mode,
    )
    return app


__all__: List[str] = ["BarleyApp", "create_app", "build_cache_backend", "build_csrf_store"]
