"""
HMAC-SHA256 request signing for device ingestion.

Devices sign the exact bytes of the request body with their pre-shared
secret and send the lowercase hex digest in the x-device-signature header.
"""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(secret: str, raw_body: Union[bytes, str]) -> str:
    """Lowercase hex HMAC-SHA256 of *raw_body* under *secret*."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: Union[bytes, str], provided: Optional[str]) -> bool:
    """Constant-time check of *provided* against the expected signature.

    The header is trimmed and lowercased first.  A length mismatch returns
    False without reaching compare_digest.
    """
    if not provided:
        return False
    expected = compute_signature(secret, raw_body).encode("ascii")
    normalized = provided.strip().lower().encode("utf-8")
    if len(expected) != len(normalized):
        return False
    return hmac.compare_digest(expected, normalized)
