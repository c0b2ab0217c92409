"""
Square Webhook Signature Verification

Square signs each delivery with:
    base64(HMAC-SHA256(signature_key, notification_url + raw_body))

https://developer.squareup.com/docs/webhooks/step3validate

Verification must run on the unparsed body bytes. Nothing here raises:
callers get VALID / INVALID / MISSING and apply their own policy.
"""

import base64
import hashlib
import hmac
import logging
import enum
from typing import Mapping, Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-square-hmacsha256-signature", "x-square-signature")


class SignatureCheck(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"


def _to_bytes(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(body: Union[str, bytes], secret: str, url: str) -> str:
    """Base64 HMAC-SHA256 of url + body"""
    message = _to_bytes(url) + _to_bytes(body)
    digest = hmac.new(_to_bytes(secret), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(
    body: Union[str, bytes],
    signature: Optional[str],
    secret: Optional[str],
    url: str
) -> bool:
    """True only when the signature matches. Never raises."""
    if not signature or not secret:
        return False

    try:
        expected = compute_signature(body, secret, url)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not compute webhook signature: {e}")
        return False

    supplied = signature.strip()
    # Cheap length check before the constant-time compare
    if len(supplied) != len(expected):
        return False

    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def check_signature(
    body: Union[str, bytes],
    signature: Optional[str],
    secret: Optional[str],
    url: str
) -> SignatureCheck:
    """Distinguish "no usable signature" from "signature does not match"."""
    if not signature or not signature.strip() or not secret:
        return SignatureCheck.MISSING
    if verify_signature(body, signature, secret, url):
        return SignatureCheck.VALID
    return SignatureCheck.INVALID


def extract_signature(headers: Mapping[str, str]) -> Optional[str]:
    """Signature header value, preferring the HMAC-SHA256 header"""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value:
            return value
    return None


def build_webhook_url(host: str, path: str, configured_url: Optional[str] = None) -> str:
    """
    The notification URL Square signed against.

    A configured URL wins because reverse proxies rewrite Host.
    """
    if configured_url:
        return configured_url
    hostname = host.split(":")[0]
    scheme = "http" if hostname in ("localhost", "127.0.0.1") else "https"
    return f"{scheme}://{host}{path}"
