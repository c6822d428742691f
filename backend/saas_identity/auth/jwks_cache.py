"""
JWKS signing key cache for Clerk-issued JWTs.

This module handles:
- Fetching the JSON Web Key Set from Clerk's JWKS endpoint
- Parsing each JWK into a usable public key (via PyJWT's PyJWK)
- Caching keys per key id with a TTL
- Explicit invalidation / refresh for key rotation

Concurrency:
- Cache reads and writes are guarded by a lock
- Concurrent misses are coalesced behind a separate fetch lock, so a burst
  of requests with an unknown kid triggers a single JWKS request
- A kid missing from a key set fetched in the last few seconds fails
  without another fetch, so random kids cannot drive one JWKS request each
"""

import time
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional

import httpx
from jwt import PyJWK
from jwt.exceptions import InvalidKeyError, PyJWKError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_FETCH_TIMEOUT_SECONDS = 5.0
DEFAULT_MIN_REFETCH_INTERVAL_SECONDS = 10.0


class KeyResolutionError(Exception):
    """Base error for failures resolving a signing key by kid."""

    def __init__(self, message: str, key_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key_id = key_id


class JWKSFetchError(KeyResolutionError):
    """JWKS endpoint unreachable or returned an unusable document."""
    pass


class SigningKeyNotFoundError(KeyResolutionError):
    """The freshly fetched key set does not contain the requested kid."""
    pass


@dataclass(frozen=True)
class SigningKey:
    """A parsed public key from the JWKS document."""

    key_id: str
    algorithm: str
    key: Any
    fetched_at: float


class JWKSKeyCache:
    """
    Thread-safe TTL cache of JWKS signing keys.

    Usage:
        cache = JWKSKeyCache("https://clerk.example.com/.well-known/jwks.json")
        signing_key = cache.get_key(header["kid"])
        jwt.decode(token, signing_key.key, algorithms=["RS256"], ...)
    """

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        min_refetch_interval_seconds: float = DEFAULT_MIN_REFETCH_INTERVAL_SECONDS,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the key cache.

        Args:
            jwks_url: Full URL of the JWKS endpoint
            ttl_seconds: How long a fetched key is considered fresh
            timeout_seconds: Timeout for the JWKS HTTP request
            min_refetch_interval_seconds: Unknown kids do not trigger another
                fetch until this long after the last successful one
            http_client: Optional pre-configured httpx.Client (tests inject
                one backed by httpx.MockTransport)
            clock: Monotonic time source
        """
        self._jwks_url = jwks_url
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds
        self._min_refetch_interval_seconds = min_refetch_interval_seconds
        self._http_client = http_client
        self._clock = clock

        self._keys: Dict[str, SigningKey] = {}
        self._lock = Lock()
        self._fetch_lock = Lock()
        self._last_fetch_at: Optional[float] = None

    @property
    def jwks_url(self) -> str:
        return self._jwks_url

    def _is_fresh(self, signing_key: SigningKey) -> bool:
        return self._clock() - signing_key.fetched_at < self._ttl_seconds

    def _lookup(self, key_id: str) -> Optional[SigningKey]:
        with self._lock:
            signing_key = self._keys.get(key_id)
        if signing_key is not None and self._is_fresh(signing_key):
            return signing_key
        return None

    def _refetch_throttled(self, key_id: str) -> bool:
        """True for a kid absent from a key set fetched within the minimum interval."""
        if self._last_fetch_at is None:
            return False
        with self._lock:
            if key_id in self._keys:
                # Known but expired
                return False
        return self._clock() - self._last_fetch_at < self._min_refetch_interval_seconds

    def get_key(self, key_id: str) -> SigningKey:
        """
        Resolve the signing key for a kid.

        Serves from cache when fresh; otherwise fetches the whole key set,
        replaces the cache and returns the requested key.

        Raises:
            JWKSFetchError: If the key set cannot be fetched or parsed
            SigningKeyNotFoundError: If the key set does not contain key_id
        """
        if not key_id:
            raise SigningKeyNotFoundError("Key id is required", key_id=key_id)

        signing_key = self._lookup(key_id)
        if signing_key is not None:
            return signing_key

        with self._fetch_lock:
            # Another thread may have refreshed while we waited
            signing_key = self._lookup(key_id)
            if signing_key is not None:
                return signing_key

            if self._refetch_throttled(key_id):
                logger.warning(
                    "Unknown kid shortly after a JWKS fetch; not refetching",
                    extra={"kid": key_id, "jwks_url": self._jwks_url},
                )
                raise SigningKeyNotFoundError(
                    f"No signing key found for kid {key_id!r}", key_id=key_id
                )

            self._refresh_locked()

            signing_key = self._lookup(key_id)
            if signing_key is None:
                logger.warning(
                    "Signing key not found in JWKS",
                    extra={"kid": key_id, "jwks_url": self._jwks_url},
                )
                raise SigningKeyNotFoundError(
                    f"No signing key found for kid {key_id!r}", key_id=key_id
                )
            return signing_key

    def refresh(self) -> int:
        """
        Force a fetch of the key set, replacing the cache.

        Returns:
            Number of usable keys now cached
        """
        with self._fetch_lock:
            return self._refresh_locked()

    def invalidate(self, key_id: Optional[str] = None) -> None:
        """Drop one cached key, or every key when key_id is None."""
        with self._lock:
            if key_id is None:
                self._keys.clear()
            else:
                self._keys.pop(key_id, None)
            self._last_fetch_at = None
        logger.info("JWKS cache invalidated", extra={"kid": key_id})

    def cached_key_ids(self) -> list:
        with self._lock:
            return sorted(self._keys)

    def _refresh_locked(self) -> int:
        keys = self._fetch_keys()
        with self._lock:
            self._keys = keys
            self._last_fetch_at = self._clock()
        logger.info(
            "Refreshed JWKS cache",
            extra={"jwks_url": self._jwks_url, "key_count": len(keys)},
        )
        return len(keys)

    def _get_document(self) -> Dict[str, Any]:
        try:
            if self._http_client is not None:
                response = self._http_client.get(self._jwks_url, timeout=self._timeout_seconds)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.get(self._jwks_url)
        except httpx.HTTPError as e:
            logger.error(
                "JWKS request failed",
                extra={"jwks_url": self._jwks_url, "error": str(e)},
            )
            raise JWKSFetchError(f"Failed to fetch JWKS: {e}")

        if response.status_code != 200:
            logger.error(
                "JWKS endpoint returned unexpected status",
                extra={"jwks_url": self._jwks_url, "status": response.status_code},
            )
            raise JWKSFetchError(f"JWKS endpoint returned HTTP {response.status_code}")

        try:
            document = response.json()
        except ValueError:
            raise JWKSFetchError("JWKS response is not valid JSON")

        if not isinstance(document, dict):
            raise JWKSFetchError("JWKS response is not a JSON object")
        return document

    def _fetch_keys(self) -> Dict[str, SigningKey]:
        document = self._get_document()
        raw_keys = document.get("keys")
        if not isinstance(raw_keys, list):
            raise JWKSFetchError("JWKS response has no 'keys' array")

        fetched_at = self._clock()
        keys: Dict[str, SigningKey] = {}
        for jwk_data in raw_keys:
            if not isinstance(jwk_data, dict) or not jwk_data.get("kid"):
                logger.warning("Skipping JWK without kid")
                continue
            try:
                jwk = PyJWK(jwk_data)
            except (PyJWKError, InvalidKeyError) as e:
                logger.warning(
                    "Skipping unusable JWK",
                    extra={"kid": jwk_data.get("kid"), "error": str(e)},
                )
                continue
            keys[jwk_data["kid"]] = SigningKey(
                key_id=jwk_data["kid"],
                algorithm=jwk.algorithm_name,
                key=jwk.key,
                fetched_at=fetched_at,
            )
        return keys
