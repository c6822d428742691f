"""
Clerk JWT Verifier for authenticating Clerk-issued JWTs.

This module handles:
- Structural checks (three dot-separated segments, kid in header)
- Signing key resolution through the JWKS key cache
- RS256 signature, issuer and expiry validation
- Extraction of the caller identity (sub, org_id)

SECURITY:
- Clerk is the ONLY authentication authority
- Only the gateway verifies JWTs; the backend trusts gateway headers
- Raw tokens are never logged

Documentation: https://clerk.com/docs/backend-requests/handling/manual-jwt
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidIssuerError,
    InvalidTokenError,
    MissingRequiredClaimError,
)

from saas_identity.auth.jwks_cache import JWKSKeyCache, KeyResolutionError

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ["RS256"]


class ClerkVerificationError(Exception):
    """Exception raised when Clerk JWT verification fails."""

    def __init__(self, message: str, error_code: str = "verification_failed"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


@dataclass(frozen=True)
class IdentityClaims:
    """Verified caller identity extracted from a Clerk JWT."""

    subject: str
    organization_id: Optional[str]
    expires_at: datetime
    issuer: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class ClerkJWTVerifier:
    """
    Verifies Clerk-issued JWTs against a JWKS key cache.

    Clerk JWT structure:
    - Header: alg (RS256), typ (JWT), kid (key ID)
    - Payload:
        - sub: clerk_user_id (e.g., "user_2abc123")
        - iss: Clerk frontend API URL
        - exp: Expiration timestamp
        - org_id: Organization ID (if in org context)

    Usage:
        verifier = ClerkJWTVerifier(issuer, JWKSKeyCache(jwks_url))
        identity = verifier.verify_token(token)
        user_id = identity.subject
    """

    def __init__(
        self,
        issuer: str,
        key_cache: JWKSKeyCache,
        audience: Optional[str] = None,
        leeway_seconds: int = 0,
    ):
        """
        Initialize the Clerk JWT verifier.

        Args:
            issuer: Exact expected "iss" claim
            key_cache: JWKS key cache used to resolve signing keys by kid
            audience: Expected audience claim (optional, unchecked when None)
            leeway_seconds: Clock skew tolerance applied to exp
        """
        if not issuer:
            raise ClerkVerificationError(
                "CLERK_ISSUER_URL is required", error_code="config_error"
            )
        self._issuer = issuer
        self._key_cache = key_cache
        self._audience = audience
        self._leeway_seconds = leeway_seconds

        logger.info(
            "Initialized ClerkJWTVerifier",
            extra={"issuer": issuer, "jwks_url": key_cache.jwks_url},
        )

    @classmethod
    def from_settings(cls, settings, http_client=None) -> "ClerkJWTVerifier":
        """Build a verifier and its key cache from GatewaySettings."""
        key_cache = JWKSKeyCache(
            settings.jwks_url,
            ttl_seconds=settings.jwks_cache_ttl_seconds,
            timeout_seconds=settings.jwks_fetch_timeout_seconds,
            min_refetch_interval_seconds=settings.jwks_min_refetch_seconds,
            http_client=http_client,
        )
        return cls(settings.issuer, key_cache)

    @property
    def key_cache(self) -> JWKSKeyCache:
        return self._key_cache

    def _read_key_id(self, token: str) -> str:
        if token.count(".") != 2 or not all(token.split(".")):
            raise ClerkVerificationError(
                "Token must have three segments", error_code="malformed_token"
            )
        try:
            header = jwt.get_unverified_header(token)
        except DecodeError:
            raise ClerkVerificationError(
                "Token header could not be decoded", error_code="malformed_token"
            )
        key_id = header.get("kid")
        if not key_id or not isinstance(key_id, str):
            raise ClerkVerificationError(
                "Token header has no kid", error_code="malformed_token"
            )
        return key_id

    def verify_token(self, token: str) -> IdentityClaims:
        """
        Verify a Clerk JWT and return the caller identity.

        Args:
            token: The JWT to verify (a "Bearer " prefix is tolerated)

        Returns:
            IdentityClaims for the verified token

        Raises:
            ClerkVerificationError: If verification fails
        """
        if token and token.startswith("Bearer "):
            token = token[7:]
        if not token:
            raise ClerkVerificationError("Token is required", error_code="missing_token")

        key_id = self._read_key_id(token)

        try:
            signing_key = self._key_cache.get_key(key_id)
        except KeyResolutionError as e:
            logger.warning(
                "Signing key resolution failed",
                extra={"kid": key_id, "error": e.message},
            )
            raise ClerkVerificationError(
                "Unable to resolve signing key", error_code="key_resolution_failed"
            )

        options = {
            "verify_signature": True,
            "verify_exp": True,
            "verify_aud": self._audience is not None,
            "require": ["exp", "iss"],
        }

        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                issuer=self._issuer,
                audience=self._audience,
                options=options,
                leeway=self._leeway_seconds,
            )
        except ExpiredSignatureError:
            logger.warning("Token has expired", extra={"kid": key_id})
            raise ClerkVerificationError("Token has expired", error_code="token_expired")
        except InvalidIssuerError:
            logger.warning("Invalid token issuer", extra={"kid": key_id})
            raise ClerkVerificationError("Invalid token issuer", error_code="invalid_issuer")
        except MissingRequiredClaimError as e:
            logger.warning("Token missing required claim", extra={"claim": e.claim})
            raise ClerkVerificationError(
                f"Token missing required claim: {e.claim}", error_code="invalid_token"
            )
        except InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            raise ClerkVerificationError(f"Invalid token: {e}", error_code="invalid_token")

        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            raise ClerkVerificationError("Token has no subject", error_code="missing_subject")

        org_id = claims.get("org_id")
        if not isinstance(org_id, str) or not org_id:
            org_id = None

        logger.debug(
            "Token verified successfully",
            extra={"sub": subject, "org_id": org_id},
        )

        return IdentityClaims(
            subject=subject,
            organization_id=org_id,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            issuer=claims["iss"],
            raw=claims,
        )
