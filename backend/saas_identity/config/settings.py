"""
Environment-driven settings for the gateway and backend applications.

Each application reads its configuration once at startup via from_env().
Missing required values raise ConfigurationError so misconfigured deploys
fail fast instead of rejecting every request.

Gateway:
    CLERK_ISSUER_URL          (required) exact expected "iss" claim
    CLERK_JWKS_URL            default: <issuer>/.well-known/jwks.json
    JWKS_CACHE_TTL_SECONDS    default: 3600
    JWKS_FETCH_TIMEOUT_SECONDS default: 5
    BACKEND_URL               (required) upstream the gateway forwards to
    GATEWAY_SHARED_SECRET     optional, sent as X-Gateway-Secret
    PROXY_TIMEOUT_SECONDS     default: 30

Backend:
    DATABASE_URL              (required)
    CLERK_WEBHOOK_SECRET      whsec_<base64> secret from the Clerk dashboard
    CLERK_WEBHOOK_ALLOW_UNSIGNED  default: false (development only)
    WEBHOOK_TOLERANCE_SECONDS default: 300
    GATEWAY_SHARED_SECRET     optional, required on X-Gateway-Secret if set
    CORS_ORIGINS              comma-separated origins
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from saas_identity.database.session import normalize_database_url

logger = logging.getLogger(__name__)

DEFAULT_JWKS_CACHE_TTL_SECONDS = 3600
DEFAULT_JWKS_FETCH_TIMEOUT_SECONDS = 5.0
DEFAULT_JWKS_MIN_REFETCH_SECONDS = 10.0
DEFAULT_PROXY_TIMEOUT_SECONDS = 30.0
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_required(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} environment variable is not set")
    return value


def _get_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _get_number(name: str, default, cast=int):
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _get_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class GatewaySettings:
    """Configuration for the JWT-verifying edge gateway."""

    issuer: str
    jwks_url: str
    backend_url: str
    jwks_cache_ttl_seconds: int = DEFAULT_JWKS_CACHE_TTL_SECONDS
    jwks_fetch_timeout_seconds: float = DEFAULT_JWKS_FETCH_TIMEOUT_SECONDS
    jwks_min_refetch_seconds: float = DEFAULT_JWKS_MIN_REFETCH_SECONDS
    proxy_timeout_seconds: float = DEFAULT_PROXY_TIMEOUT_SECONDS
    gateway_shared_secret: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        issuer = _get_required("CLERK_ISSUER_URL").rstrip("/")
        jwks_url = _get_optional("CLERK_JWKS_URL") or f"{issuer}/.well-known/jwks.json"
        return cls(
            issuer=issuer,
            jwks_url=jwks_url,
            backend_url=_get_required("BACKEND_URL").rstrip("/"),
            jwks_cache_ttl_seconds=_get_number(
                "JWKS_CACHE_TTL_SECONDS", DEFAULT_JWKS_CACHE_TTL_SECONDS
            ),
            jwks_fetch_timeout_seconds=_get_number(
                "JWKS_FETCH_TIMEOUT_SECONDS", DEFAULT_JWKS_FETCH_TIMEOUT_SECONDS, float
            ),
            jwks_min_refetch_seconds=_get_number(
                "JWKS_MIN_REFETCH_SECONDS", DEFAULT_JWKS_MIN_REFETCH_SECONDS, float
            ),
            proxy_timeout_seconds=_get_number(
                "PROXY_TIMEOUT_SECONDS", DEFAULT_PROXY_TIMEOUT_SECONDS, float
            ),
            gateway_shared_secret=_get_optional("GATEWAY_SHARED_SECRET"),
        )


@dataclass(frozen=True)
class BackendSettings:
    """Configuration for the header-trusting identity backend."""

    database_url: str
    webhook_secret: Optional[str] = field(default=None, repr=False)
    webhook_allow_unsigned: bool = False
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    gateway_shared_secret: Optional[str] = field(default=None, repr=False)
    cors_origins: Tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "BackendSettings":
        settings = cls(
            database_url=normalize_database_url(_get_required("DATABASE_URL")),
            webhook_secret=_get_optional("CLERK_WEBHOOK_SECRET"),
            webhook_allow_unsigned=_get_bool("CLERK_WEBHOOK_ALLOW_UNSIGNED"),
            webhook_tolerance_seconds=_get_number(
                "WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS
            ),
            gateway_shared_secret=_get_optional("GATEWAY_SHARED_SECRET"),
            cors_origins=_get_list("CORS_ORIGINS"),
        )
        if not settings.webhook_secret and not settings.webhook_allow_unsigned:
            logger.warning(
                "CLERK_WEBHOOK_SECRET not set - all webhook deliveries will be rejected"
            )
        return settings


def get_log_level() -> str:
    """Log level name from LOG_LEVEL (default INFO)."""
    return os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
