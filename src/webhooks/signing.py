"""
Stripe-compatible webhook signing.

Scheme (same as the Stripe-Signature header):
- signed payload = "{timestamp}.{raw_body}"
- signature = HMAC-SHA256(secret, signed payload), hex encoded
- header = "t={timestamp},v1={signature}"

Used by the in-memory billing provider to verify webhooks, and by tests and
local tooling to produce deliveries that the real Stripe SDK also accepts.
"""

import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """Raised when a signature header is malformed, stale or does not match."""

    pass


class WebhookSigner:
    """
    Signs and verifies webhook payloads with HMAC-SHA256.

    Security features:
    - HMAC-SHA256: Prevents tampering
    - Timestamp: Prevents replay attacks (rejects old signatures)
    - Versioned signatures: v1 is the only accepted scheme
    """

    SIGNATURE_VERSION = "v1"
    TIMESTAMP_TOLERANCE_SECONDS = 300  # 5 minutes

    def __init__(self, secret: str, tolerance_seconds: int | None = None):
        """
        Initialize webhook signer.

        Args:
            secret: Shared endpoint secret (whsec_...)
            tolerance_seconds: Max signature age (None = 5 minutes)
        """
        if not secret or len(secret) < 16:
            raise ValueError("Webhook secret must be at least 16 characters")

        self.secret = secret.encode("utf-8")
        self.tolerance_seconds = tolerance_seconds or self.TIMESTAMP_TOLERANCE_SECONDS

    def _compute(self, payload: str, timestamp: int) -> str:
        signed_payload = f"{timestamp}.{payload}"
        return hmac.new(self.secret, signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_payload(self, payload: bytes | str, timestamp: int | None = None) -> str:
        """
        Sign a raw webhook body.

        Returns:
            str: Signature header value, e.g. "t=1700000000,v1=a1b2c3..."
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        if timestamp is None:
            timestamp = int(time.time())

        return f"t={timestamp},{self.SIGNATURE_VERSION}={self._compute(payload, timestamp)}"

    def verify(self, payload: bytes | str, header: str) -> None:
        """
        Verify a signature header against the raw body.

        Raises:
            WebhookSignatureError: malformed header, no v1 signature,
                timestamp outside tolerance, or no matching signature
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        timestamp: int | None = None
        candidates: list[str] = []
        for part in (header or "").split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError as e:
                    raise WebhookSignatureError("Invalid signature timestamp") from e
            elif key == self.SIGNATURE_VERSION:
                candidates.append(value)

        if timestamp is None or not candidates:
            raise WebhookSignatureError("Signature header missing timestamp or v1 signature")

        age_seconds = int(time.time()) - timestamp
        if abs(age_seconds) > self.tolerance_seconds:
            logger.warning(
                f"Signature outside tolerance: age={age_seconds}s, tolerance={self.tolerance_seconds}s"
            )
            raise WebhookSignatureError("Signature timestamp outside tolerance")

        expected = self._compute(payload, timestamp)
        # Constant-time comparison (prevents timing attacks)
        if not any(hmac.compare_digest(candidate, expected) for candidate in candidates):
            raise WebhookSignatureError("No signature matches the payload")
