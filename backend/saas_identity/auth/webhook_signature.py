"""
Svix-style webhook signature verification for Clerk webhooks.

Clerk delivers webhooks through Svix. Each delivery carries:
- svix-id: Unique message identifier
- svix-timestamp: Unix timestamp (seconds) of the attempt
- svix-signature: "v1,<base64 HMAC-SHA256>"

Signed content: "{svix_id}.{svix_timestamp}.{raw_body}"

SECURITY:
- Fails closed when no secret is configured, unless unsigned delivery is
  explicitly allowed (CLERK_WEBHOOK_ALLOW_UNSIGNED, development only)
- Timestamps outside the tolerance window are rejected to limit replays
- Signatures are compared in constant time

Not delegated to svix.webhooks.Webhook: svix base64-decodes secrets that
lack the whsec_ prefix and accepts several space-separated signatures.
Here an unprefixed secret is used as raw UTF-8 key bytes and the header
must hold exactly one v1 signature.

Documentation: https://docs.svix.com/receiving/verifying-payloads/how-manual
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


class WebhookSignatureVerifier:
    """
    Verifies Svix-signed webhook deliveries.

    Usage:
        verifier = WebhookSignatureVerifier(os.getenv("CLERK_WEBHOOK_SECRET"))
        if not verifier.verify(svix_id, svix_timestamp, svix_signature, body):
            raise HTTPException(status_code=401)
    """

    def __init__(
        self,
        secret: Optional[str],
        allow_unsigned: bool = False,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret or None
        self._allow_unsigned = allow_unsigned
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

        if self._secret is None and allow_unsigned:
            logger.warning(
                "Webhook signature verification DISABLED - unsigned deliveries accepted. "
                "Never enable CLERK_WEBHOOK_ALLOW_UNSIGNED in production."
            )

    @property
    def is_configured(self) -> bool:
        return self._secret is not None

    def _secret_bytes(self) -> Optional[bytes]:
        """Decode the configured secret; None if the whsec_ payload is not base64."""
        if self._secret.startswith(SECRET_PREFIX):
            try:
                return base64.b64decode(self._secret[len(SECRET_PREFIX):], validate=True)
            except (binascii.Error, ValueError):
                logger.error("Webhook secret has whsec_ prefix but is not valid base64")
                return None
        return self._secret.encode("utf-8")

    def _timestamp_is_fresh(self, timestamp: str) -> bool:
        try:
            ts = int(timestamp)
        except ValueError:
            logger.warning("Webhook timestamp is not an integer")
            return False
        if abs(self._clock() - ts) > self._tolerance_seconds:
            logger.warning(
                "Webhook timestamp outside tolerance window",
                extra={"timestamp": ts, "tolerance_seconds": self._tolerance_seconds},
            )
            return False
        return True

    def compute_signature(self, msg_id: str, timestamp: str, raw_body: bytes) -> Optional[str]:
        """
        Compute the base64 HMAC-SHA256 signature for a delivery.

        Returns:
            Base64 signature, or None if no usable secret is configured
        """
        if self._secret is None:
            return None
        secret_key = self._secret_bytes()
        if secret_key is None:
            return None
        signed_content = f"{msg_id}.{timestamp}.".encode("utf-8") + raw_body
        digest = hmac.new(secret_key, signed_content, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(
        self,
        msg_id: Optional[str],
        timestamp: Optional[str],
        signature_header: Optional[str],
        raw_body: bytes,
    ) -> bool:
        """
        Verify a webhook delivery.

        Args:
            msg_id: svix-id header
            timestamp: svix-timestamp header
            signature_header: svix-signature header ("v1,<base64>")
            raw_body: Raw request body bytes, exactly as received

        Returns:
            True if the delivery is authentic, False otherwise
        """
        if self._secret is None:
            if self._allow_unsigned:
                return True
            logger.error("Webhook secret not configured - rejecting delivery")
            return False

        if not msg_id or not timestamp or not signature_header:
            logger.warning("Missing Svix headers")
            return False

        parts = signature_header.split(",")
        if len(parts) != 2 or parts[0] != SIGNATURE_VERSION or not parts[1]:
            logger.warning("Unsupported webhook signature format")
            return False

        if not self._timestamp_is_fresh(timestamp):
            return False

        expected = self.compute_signature(msg_id, timestamp, raw_body)
        if expected is None:
            return False

        if not hmac.compare_digest(expected.encode("ascii"), parts[1].encode("utf-8")):
            logger.warning("Webhook signature mismatch", extra={"svix_id": msg_id})
            return False

        return True
