"""
Authentication module for Clerk-based authentication.

This module provides:
- JWKS signing key cache
- JWT verification for the gateway
- Trusted gateway header handling for the backend
- Svix webhook signature verification

SECURITY NOTES:
- Clerk is the ONLY authentication authority
- Only the gateway verifies JWTs; the backend trusts X-User-Id / X-Org-Id
- Webhooks must carry a valid Svix signature
"""

from saas_identity.auth.jwks_cache import (
    JWKSKeyCache,
    SigningKey,
    KeyResolutionError,
    JWKSFetchError,
    SigningKeyNotFoundError,
)
from saas_identity.auth.clerk_verifier import (
    ClerkJWTVerifier,
    ClerkVerificationError,
    IdentityClaims,
)
from saas_identity.auth.gateway_headers import (
    GatewayPrincipal,
    GatewayHeaderAuthMiddleware,
    ANONYMOUS_PRINCIPAL,
    get_principal,
    require_principal,
)
from saas_identity.auth.webhook_signature import WebhookSignatureVerifier

__all__ = [
    # Key cache
    "JWKSKeyCache",
    "SigningKey",
    "KeyResolutionError",
    "JWKSFetchError",
    "SigningKeyNotFoundError",
    # Verifier
    "ClerkJWTVerifier",
    "ClerkVerificationError",
    "IdentityClaims",
    # Backend headers
    "GatewayPrincipal",
    "GatewayHeaderAuthMiddleware",
    "ANONYMOUS_PRINCIPAL",
    "get_principal",
    "require_principal",
    # Webhooks
    "WebhookSignatureVerifier",
]
