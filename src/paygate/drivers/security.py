"""Webhook signature primitives and the shared replay guard."""

import base64
import binascii
import hashlib
import hmac
import logging
import time
import zlib
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
# epoch values above this are milliseconds (year 5138 in seconds)
EPOCH_MILLIS_THRESHOLD = 10 ** 11


def parse_timestamp(value: Any, default_tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """
    Parse a webhook timestamp: unix seconds or milliseconds (int/float/digit
    string) or ISO-8601, with or without a trailing ``Z``. Naive values are read
    in ``default_tz``. Returns an aware datetime or None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=default_tz)
    if isinstance(value, (int, float)):
        if abs(value) > EPOCH_MILLIS_THRESHOLD:
            value = value / 1000
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text), default_tz)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=default_tz)
    return None


class ReplayGuard:
    """Rejects webhook deliveries whose issue time falls outside a tolerance window."""

    def __init__(
        self,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.tolerance = tolerance
        self._clock = clock

    def is_fresh(self, issued_at: Any) -> bool:
        moment = parse_timestamp(issued_at)
        if moment is None:
            logger.warning("Webhook rejected: missing or unparseable timestamp")
            return False
        age = self._clock() - moment.timestamp()
        if abs(age) > self.tolerance:
            logger.warning(f"Webhook rejected: timestamp outside tolerance ({age:.0f}s)")
            return False
        return True


def hmac_hex_matches(secret: str, body: bytes, signature: Optional[str], digest=hashlib.sha512) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, digest).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def hmac_base64_matches(secret: str, body: bytes, signature: Optional[str], digest=hashlib.sha256) -> bool:
    if not secret or not signature:
        return False
    expected = base64.b64encode(hmac.new(secret.encode(), body, digest).digest()).decode()
    return hmac.compare_digest(expected, signature.strip())


def shared_secret_matches(secret: Optional[str], presented: Optional[str]) -> bool:
    if not secret or not presented:
        return False
    return hmac.compare_digest(secret.encode(), presented.encode())


def is_trusted_cert_url(url: str, allowed_suffix: str = "paypal.com") -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == allowed_suffix or host.endswith("." + allowed_suffix))


def crc32_of(body: bytes) -> int:
    return zlib.crc32(body) & 0xFFFFFFFF


def verify_certificate_signature(cert_pem: bytes, message: bytes, signature_b64: str) -> bool:
    """Check an RSA PKCS#1 v1.5 SHA-256 signature against a PEM certificate."""
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValueError, binascii.Error) as e:
        logger.warning(f"Unable to load webhook certificate or signature: {e}")
        return False
    try:
        certificate.public_key().verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    except TypeError as e:
        # non-RSA keys do not accept a padding argument
        logger.warning(f"Unsupported certificate key type: {e}")
        return False
    return True
