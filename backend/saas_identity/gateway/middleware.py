"""
Gateway JWT middleware.

Per-request gate at the edge:
1. Allow-listed paths (health, webhooks, payments) pass through unauthenticated
2. Bearer token extracted from the Authorization header
3. Token verified with ClerkJWTVerifier (signing key via JWKS cache)
4. X-User-Id / X-Org-Id replaced with the verified identity

Client-supplied X-User-Id / X-Org-Id are ALWAYS stripped, including on
allow-listed paths, so the backend only ever sees identity set here.
"""

import logging
from typing import Callable, Iterable, Optional

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from saas_identity.auth.clerk_verifier import ClerkJWTVerifier, ClerkVerificationError

logger = logging.getLogger(__name__)

# Fixed rejection body; callers never learn which check failed
UNAUTHORIZED_BODY = {"error": "Unauthorized", "message": "Invalid or missing JWT token"}

# Paths forwarded without authentication
ALLOWED_PATHS = {
    "/api/health",
}

ALLOWED_PREFIXES = [
    "/api/webhooks",
    "/api/payments",
]

IDENTITY_HEADERS = (b"x-user-id", b"x-org-id")


def is_allowed_path(path: str, prefixes: Iterable[str] = ALLOWED_PREFIXES) -> bool:
    """Check if path may be forwarded without a token."""
    if path in ALLOWED_PATHS:
        return True

    for prefix in prefixes:
        if path == prefix or path.startswith(prefix + "/"):
            return True

    return False


def _extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def _rewrite_identity_headers(
    request: Request,
    user_id: Optional[str] = None,
    org_id: Optional[str] = None,
) -> None:
    """Drop inbound identity headers and, when user_id is set, add the verified ones."""
    headers = [
        (name, value)
        for name, value in request.scope["headers"]
        if name.lower() not in IDENTITY_HEADERS
    ]
    if user_id is not None:
        headers.append((b"x-user-id", user_id.encode("latin-1")))
        headers.append((b"x-org-id", (org_id or "").encode("latin-1")))
    request.scope["headers"] = headers


def _is_header_safe(value: str) -> bool:
    """True if value can be sent as an HTTP header value (latin-1, no control chars)."""
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return not any(ord(c) < 0x20 or ord(c) == 0x7F for c in value)


def unauthorized_response() -> JSONResponse:
    return JSONResponse(status_code=401, content=UNAUTHORIZED_BODY)


class ClerkGatewayAuthMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware that authenticates requests at the gateway.

    Verification (including any JWKS fetch) runs in the threadpool so a slow
    key endpoint does not block the event loop.
    """

    def __init__(
        self,
        app,
        verifier: ClerkJWTVerifier,
        allowed_prefixes: Optional[list] = None,
    ):
        """
        Initialize middleware.

        Args:
            app: ASGI application
            verifier: ClerkJWTVerifier used for every protected request
            allowed_prefixes: Path prefixes forwarded without authentication
        """
        super().__init__(app)
        self._verifier = verifier
        self._allowed_prefixes = allowed_prefixes or ALLOWED_PREFIXES

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        if is_allowed_path(path, self._allowed_prefixes):
            _rewrite_identity_headers(request)
            logger.debug("Forwarding allow-listed path without authentication", extra={"path": path})
            return await call_next(request)

        token = _extract_bearer_token(request)
        if token is None:
            logger.warning("Missing or invalid Authorization header", extra={"path": path})
            return unauthorized_response()

        try:
            identity = await run_in_threadpool(self._verifier.verify_token, token)
        except ClerkVerificationError as e:
            logger.warning(
                "JWT validation failed",
                extra={"path": path, "error_code": e.error_code},
            )
            return unauthorized_response()

        if not (
            _is_header_safe(identity.subject)
            and _is_header_safe(identity.organization_id or "")
        ):
            logger.warning(
                "Verified identity is not a valid header value",
                extra={"path": path},
            )
            return unauthorized_response()

        _rewrite_identity_headers(request, identity.subject, identity.organization_id)
        request.state.identity = identity

        logger.debug(
            "JWT validated",
            extra={"user_id": identity.subject, "org_id": identity.organization_id},
        )
        return await call_next(request)
