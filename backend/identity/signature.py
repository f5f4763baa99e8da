"""
Identity - Signature Verifier

Verifies that a change notification was signed by the identity provider.

Signing scheme (Svix-compatible):
- signed content is "{delivery_id}.{delivery_timestamp}.{raw body}"
- HMAC-SHA256 keyed with the base64-decoded secret (after the "whsec_" prefix)
- the signature header holds one or more space-separated "v1,<base64 digest>"
  entries; any matching entry passes

Verification runs on the raw body bytes. Nothing here parses the body.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Callable, Optional, Union

from .errors import SignatureInvalid

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"

# Header names used by the provider
HEADER_DELIVERY_ID = "svix-id"
HEADER_DELIVERY_TIMESTAMP = "svix-timestamp"
HEADER_DELIVERY_SIGNATURE = "svix-signature"


def _decode_secret(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX):])
    return secret.encode("utf-8")


def sign_payload(secret: str, delivery_id: str, delivery_timestamp: str, body: bytes) -> str:
    """Compute the base64 signature for a payload."""
    key = _decode_secret(secret)
    signed_content = f"{delivery_id}.{delivery_timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class SignatureVerifier:
    """
    Fail-closed verifier for provider change notifications.

    A missing secret, a missing header, a stale timestamp or a digest
    mismatch all raise SignatureInvalid.
    """

    def __init__(
        self,
        secret: Optional[str],
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret or ""
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(
        self,
        body: Union[bytes, str],
        delivery_id: Optional[str],
        delivery_timestamp: Optional[str],
        delivery_signature: Optional[str],
    ) -> None:
        if not self.secret:
            logger.error("Identity webhook secret not configured; rejecting delivery")
            raise SignatureInvalid("Webhook secret not configured")

        if not delivery_id or not delivery_timestamp or not delivery_signature:
            raise SignatureInvalid("Missing signature headers")

        if isinstance(body, str):
            body = body.encode("utf-8")

        try:
            timestamp = int(delivery_timestamp)
        except ValueError:
            raise SignatureInvalid("Invalid delivery timestamp")

        if self.tolerance_seconds > 0:
            skew = abs(self.clock() - timestamp)
            if skew > self.tolerance_seconds:
                raise SignatureInvalid("Delivery timestamp outside tolerance")

        try:
            expected = sign_payload(self.secret, delivery_id, delivery_timestamp, body)
        except (binascii.Error, ValueError):
            logger.error("Identity webhook secret is not valid base64")
            raise SignatureInvalid("Webhook secret is malformed")

        for entry in delivery_signature.split():
            version, _, candidate = entry.partition(",")
            if version != SIGNATURE_VERSION or not candidate:
                continue
            if hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8")):
                return

        raise SignatureInvalid("Signature mismatch")

    def is_valid(self, *args, **kwargs) -> bool:
        try:
            self.verify(*args, **kwargs)
        except SignatureInvalid:
            return False
        return True
