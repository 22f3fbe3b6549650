"""Tests for webhook signature primitives and the replay guard."""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from paygate.drivers.security import (
    ReplayGuard,
    crc32_of,
    hmac_base64_matches,
    hmac_hex_matches,
    is_trusted_cert_url,
    parse_timestamp,
    shared_secret_matches,
    verify_certificate_signature,
)

NOW = 1_700_000_000.0


def make_certificate():
    """Self-signed RSA certificate and its private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "messageverificationcerts.paypal.com")])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM), key


def sign(key, message: bytes) -> str:
    return base64.b64encode(key.sign(message, padding.PKCS1v15(), hashes.SHA256())).decode()


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_unix_seconds(self):
        assert parse_timestamp(1700000000) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert parse_timestamp("1700000000") == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_iso_with_z(self):
        parsed = parse_timestamp("2023-11-14T22:13:20Z")
        assert parsed == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_iso_with_fraction_and_offset(self):
        parsed = parse_timestamp("2023-11-14T23:13:20.000+01:00")
        assert parsed.timestamp() == NOW

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2023-11-14T22:13:20").timestamp() == NOW

    def test_naive_iso_in_default_tz(self):
        lagos = timezone(timedelta(hours=1))
        assert parse_timestamp("2023-11-14 23:13:20", lagos).timestamp() == NOW

    def test_epoch_milliseconds(self):
        assert parse_timestamp(NOW * 1000).timestamp() == NOW
        assert parse_timestamp(str(int(NOW * 1000))).timestamp() == NOW

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"t": 1}])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestReplayGuard:
    """Tests for ReplayGuard.is_fresh."""

    @pytest.fixture
    def guard(self):
        return ReplayGuard(tolerance=300, clock=lambda: NOW)

    def test_fresh_timestamp(self, guard):
        assert guard.is_fresh(NOW - 10)
        assert guard.is_fresh("2023-11-14T22:13:20Z")

    def test_boundary_is_inclusive(self, guard):
        assert guard.is_fresh(NOW - 300)
        assert not guard.is_fresh(NOW - 301)

    def test_future_timestamp_outside_tolerance(self, guard):
        """Test the window applies in both directions."""
        assert guard.is_fresh(NOW + 200)
        assert not guard.is_fresh(NOW + 600)

    def test_missing_timestamp_rejected(self, guard):
        assert not guard.is_fresh(None)
        assert not guard.is_fresh("not a date")


class TestSignatureHelpers:
    """Tests for HMAC and shared-secret comparison."""

    def test_hmac_hex_sha512(self):
        body = b'{"event":"charge.success"}'
        signature = hmac.new(b"sk_test", body, hashlib.sha512).hexdigest()
        assert hmac_hex_matches("sk_test", body, signature)
        assert hmac_hex_matches("sk_test", body, signature.upper())
        assert not hmac_hex_matches("sk_other", body, signature)
        assert not hmac_hex_matches("sk_test", body + b" ", signature)
        assert not hmac_hex_matches("sk_test", body, None)

    def test_hmac_base64_sha256(self):
        body = b'{"type":"payment.updated"}'
        signature = base64.b64encode(hmac.new(b"sq_key", body, hashlib.sha256).digest()).decode()
        assert hmac_base64_matches("sq_key", body, signature)
        assert not hmac_base64_matches("sq_key", body, "invalid")
        assert not hmac_base64_matches("", body, signature)

    def test_shared_secret(self):
        assert shared_secret_matches("hash", "hash")
        assert not shared_secret_matches("hash", "Hash")
        assert not shared_secret_matches(None, "hash")
        assert not shared_secret_matches("hash", "")

    @pytest.mark.parametrize("url,trusted", [
        ("https://api.paypal.com/v1/notifications/certs/CERT-1", True),
        ("https://paypal.com/cert", True),
        ("http://api.paypal.com/cert", False),
        ("https://paypal.com.evil.example/cert", False),
        ("https://evilpaypal.com/cert", False),
    ])
    def test_trusted_cert_url(self, url, trusted):
        assert is_trusted_cert_url(url) is trusted

    def test_crc32_is_unsigned(self):
        assert crc32_of(b"hello") == 907060870
        assert crc32_of(b"") == 0


class TestCertificateSignature:
    """Tests for verify_certificate_signature."""

    def test_valid_signature(self):
        pem, key = make_certificate()
        message = b"transmission-id|2023-11-14T22:13:20Z|WH-1|907060870"
        assert verify_certificate_signature(pem, message, sign(key, message))

    def test_tampered_message(self):
        pem, key = make_certificate()
        signature = sign(key, b"original")
        assert not verify_certificate_signature(pem, b"tampered", signature)

    def test_garbage_inputs(self):
        pem, _ = make_certificate()
        assert not verify_certificate_signature(b"not a pem", b"message", "c2ln")
        assert not verify_certificate_signature(pem, b"message", "***not-base64***")
