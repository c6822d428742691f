"""
Trusted-header authentication for the backend.

The gateway validates Clerk JWTs and forwards the caller identity in
X-User-Id / X-Org-Id. This module turns those headers into a
GatewayPrincipal on request.state.

Request Flow:
1. Middleware reads X-User-Id / X-Org-Id
2. If a gateway shared secret is configured, X-Gateway-Secret must match
3. GatewayPrincipal (or ANONYMOUS_PRINCIPAL) attached to request.state
4. Route handlers require a principal via dependency injection

SECURITY:
- No cryptographic JWT check happens here; the backend must only be
  reachable through the gateway (or protected by GATEWAY_SHARED_SECRET)

Usage:

    app.add_middleware(GatewayHeaderAuthMiddleware, shared_secret=secret)

    @router.get("/me")
    async def me(principal: GatewayPrincipal = Depends(require_principal)):
        return {"user_id": principal.user_id}
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from fastapi import HTTPException, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
ORG_ID_HEADER = "X-Org-Id"
GATEWAY_SECRET_HEADER = "X-Gateway-Secret"

DEFAULT_ROLES: Tuple[str, ...] = ("ROLE_USER",)

# Paths that don't require a principal
PUBLIC_PATHS = {
    "/api/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}

PUBLIC_PREFIXES = [
    "/api/webhooks/",
]


def is_public_path(path: str) -> bool:
    """Check if path is reachable without a gateway identity."""
    if path in PUBLIC_PATHS:
        return True

    for prefix in PUBLIC_PREFIXES:
        if path.startswith(prefix):
            return True

    return False


@dataclass(frozen=True)
class GatewayPrincipal:
    """Identity asserted by the gateway for the current request."""

    user_id: Optional[str]
    org_id: Optional[str] = None
    roles: Tuple[str, ...] = ()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


ANONYMOUS_PRINCIPAL = GatewayPrincipal(user_id=None)


def principal_from_headers(
    request: Request,
    shared_secret: Optional[str] = None,
) -> GatewayPrincipal:
    """
    Build the principal for a request from its gateway headers.

    Returns ANONYMOUS_PRINCIPAL when X-User-Id is absent or empty, or when a
    shared secret is configured and the request does not carry it.
    """
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        return ANONYMOUS_PRINCIPAL

    if shared_secret:
        presented = request.headers.get(GATEWAY_SECRET_HEADER) or ""
        if not hmac.compare_digest(presented.encode("utf-8"), shared_secret.encode("utf-8")):
            logger.warning(
                "Rejected identity headers without valid gateway secret",
                extra={"path": request.url.path},
            )
            return ANONYMOUS_PRINCIPAL

    org_id = (request.headers.get(ORG_ID_HEADER) or "").strip() or None
    return GatewayPrincipal(user_id=user_id, org_id=org_id, roles=DEFAULT_ROLES)


class GatewayHeaderAuthMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware that trusts gateway identity headers.

    Never rejects a request itself; protected routes enforce authentication
    through require_principal.
    """

    def __init__(self, app, shared_secret: Optional[str] = None):
        super().__init__(app)
        self._shared_secret = shared_secret

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        principal = principal_from_headers(request, self._shared_secret)
        request.state.principal = principal

        if principal.is_authenticated:
            logger.debug(
                "Authenticated request from gateway",
                extra={"user_id": principal.user_id, "org_id": principal.org_id},
            )
        elif not is_public_path(request.url.path):
            logger.info(
                "No gateway identity on request",
                extra={"path": request.url.path},
            )

        return await call_next(request)


def get_principal(request: Request) -> GatewayPrincipal:
    """FastAPI dependency returning the current principal (possibly anonymous)."""
    return getattr(request.state, "principal", ANONYMOUS_PRINCIPAL)


def require_principal(request: Request) -> GatewayPrincipal:
    """
    FastAPI dependency that requires an authenticated principal.

    Raises:
        HTTPException 401: If no gateway identity is present on a protected path
    """
    principal = get_principal(request)
    if principal.is_authenticated or is_public_path(request.url.path):
        return principal
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
    )
