"""
Config system - layered configuration for the barley service.

Merge precedence (later overrides earlier)::

    defaults < barley.yaml < .env < environment < overrides

Environment variables use the ``BARLEY_`` prefix with ``__`` separating
nested keys (``BARLEY_CACHE__BACKEND=redis``). The unprefixed names used by
the original deployment (``RATE_LIMIT_WINDOW_MS``, ``REDIS_URL``...) are
still honoured.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values

from .faults import Fault, FaultDomain, Severity

DEFAULT_CONFIG_FILE = "barley.yaml"
DEFAULT_ENV_PREFIX = "BARLEY_"


class ConfigError(Fault):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, **metadata: Any):
        super().__init__(
            code="CONFIG_INVALID",
            message=message,
            domain=FaultDomain.CONFIG,
            severity=Severity.FATAL,
            public=False,
            metadata=metadata or None,
        )


@dataclass
class RateLimitConfig:
    window: float = 900.0
    max_requests: int = 100
    algorithm: str = "fixed_window"
    skip: List[str] = field(default_factory=list)
    exempt_paths: List[str] = field(default_factory=lambda: ["/api/health"])


@dataclass
class CSRFConfig:
    secret: str = "change-me-in-production"
    mode: str = "double_submit"
    cookie_name: str = "csrf-token"
    header_name: str = "x-csrf-token"
    field_name: str = "csrfToken"
    session_cookie: str = "session-id"
    ignore_routes: List[str] = field(
        default_factory=lambda: ["/api/health", "/api/auth/refresh"]
    )
    token_ttl: float = 3600.0
    sweep_interval: float = 300.0
    store: str = "memory"


@dataclass
class CompressionConfig:
    threshold: int = 1024
    level: int = 6
    encodings: List[str] = field(default_factory=lambda: ["br", "gzip", "deflate"])


@dataclass
class CacheConfig:
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "slv-barley:"
    default_ttl: int = 300
    max_size: int = 10000


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "dev"


@dataclass
class BarleyConfig:
    """Resolved service configuration."""

    env: str = "development"
    debug: bool = True
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    csrf: CSRFConfig = field(default_factory=CSRFConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BarleyConfig":
        return _build(cls, data, "")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> "BarleyConfig":
        if self.rate_limit.algorithm not in ("fixed_window", "sliding_window"):
            raise ConfigError(
                f"Unknown rate limit algorithm: {self.rate_limit.algorithm}",
                key="rate_limit.algorithm",
            )
        if self.rate_limit.window <= 0 or self.rate_limit.max_requests < 1:
            raise ConfigError("Rate limit window and max_requests must be positive", key="rate_limit")
        if self.csrf.mode not in ("double_submit", "synchronizer"):
            raise ConfigError(f"Unknown CSRF mode: {self.csrf.mode}", key="csrf.mode")
        if self.cache.backend not in ("memory", "redis"):
            raise ConfigError(f"Unknown cache backend: {self.cache.backend}", key="cache.backend")
        if self.csrf.store not in ("memory", "redis"):
            raise ConfigError(f"Unknown CSRF store: {self.csrf.store}", key="csrf.store")
        if not 1 <= self.compression.level <= 9:
            raise ConfigError("Compression level must be between 1 and 9", key="compression.level")
        if self.is_production and self.csrf.secret == CSRFConfig.secret:
            raise ConfigError("CSRF_SECRET must be set in production", key="csrf.secret")
        return self


def _build(cls, data: Mapping[str, Any], path: str):
    if not isinstance(data, Mapping):
        raise ConfigError(f"Section '{path}' must be a mapping", key=path)
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(path + k for k in unknown)}")
    kwargs = {}
    for name, value in data.items():
        default = known[name].default_factory() if callable(known[name].default_factory) else None
        if is_dataclass(default):
            kwargs[name] = _build(type(default), value, f"{path}{name}.")
        else:
            kwargs[name] = value
    return cls(**kwargs)


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Usage::

        config = ConfigLoader.load()
        config = ConfigLoader.load(overrides={"cache": {"backend": "redis"}})
    """

    # Unprefixed variable -> (dotted key, converter)
    LEGACY_ENV = {
        "RATE_LIMIT_WINDOW_MS": ("rate_limit.window", lambda v: int(v) / 1000.0),
        "RATE_LIMIT_MAX_REQUESTS": ("rate_limit.max_requests", int),
        "COMPRESSION_THRESHOLD": ("compression.threshold", int),
        "CSRF_SECRET": ("csrf.secret", str),
        "REDIS_URL": ("cache.redis_url", str),
        "LOG_LEVEL": ("logging.level", str),
        "NODE_ENV": ("env", str),
    }

    def __init__(self, env_prefix: str = DEFAULT_ENV_PREFIX):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        env_file: Optional[str] = ".env",
        env_prefix: str = DEFAULT_ENV_PREFIX,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> BarleyConfig:
        """
        Resolve the configuration.

        Args:
            path: YAML config file (defaults to ``barley.yaml`` when present)
            env_file: ``.env`` file read with python-dotenv; ``None`` skips it
            env_prefix: Prefix for environment variables
            overrides: Highest-precedence values, nested like the YAML file
            environ: Environment mapping (defaults to ``os.environ``)
        """
        loader = cls(env_prefix=env_prefix)

        yaml_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
        if path and not yaml_path.exists():
            raise ConfigError(f"Config file not found: {path}", path=path)
        if yaml_path.exists():
            loader._load_yaml_file(yaml_path)

        if env_file:
            loader._load_env_mapping(loader._read_env_file(env_file))

        loader._load_env_mapping(os.environ if environ is None else environ)

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        loader._apply_env_defaults()
        return BarleyConfig.from_dict(loader.config_data).validate()

    def _load_yaml_file(self, path: Path) -> None:
        """Load config from YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}", path=str(path)) from exc
        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"{path} must contain a mapping", path=str(path))
            self._merge_dict(self.config_data, data)

    def _read_env_file(self, path: str) -> Dict[str, str]:
        if not Path(path).exists():
            return {}
        return {k: v for k, v in dotenv_values(path).items() if v is not None}

    def _load_env_mapping(self, env: Mapping[str, str]) -> None:
        for key, value in env.items():
            if key.startswith(self.env_prefix):
                if key == f"{self.env_prefix}ENV":
                    self._set_path("env", value)
                else:
                    self._set_nested(key, value)
            elif key in self.LEGACY_ENV:
                dotted, convert = self.LEGACY_ENV[key]
                try:
                    self._set_path(dotted, convert(value))
                except ValueError:
                    raise ConfigError(f"Invalid value for {key}: {value!r}", key=key) from None

    def _set_nested(self, key: str, value: str) -> None:
        """Convert BARLEY_CACHE__DEFAULT_TTL to a nested dict entry."""
        parts = key[len(self.env_prefix):].lower().split("__")
        self._set_path(".".join(parts), self._parse_value(value))

    def _set_path(self, dotted: str, value: Any) -> None:
        parts = dotted.split(".")
        current = self.config_data
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    def _apply_env_defaults(self) -> None:
        # debug follows env unless given explicitly
        env = self.config_data.get("env", BarleyConfig.env)
        self.config_data.setdefault("debug", env != "production")

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        lowered = value.lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: Mapping[str, Any]) -> None:
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, Mapping):
                self._merge_dict(target[key], value)
            else:
                target[key] = dict(value) if isinstance(value, Mapping) else value


__all__ = [
    "BarleyConfig",
    "CacheConfig",
    "CompressionConfig",
    "ConfigError",
    "ConfigLoader",
    "CSRFConfig",
    "LoggingConfig",
    "RateLimitConfig",
]
