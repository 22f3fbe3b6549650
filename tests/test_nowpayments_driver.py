"""Tests for NowPaymentsDriver."""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from paygate.drivers import NowPaymentsDriver
from paygate.drivers.nowpayments import canonical_body
from paygate.exceptions import ChargeError, VerificationError
from paygate.models import ChargeRequest

from conftest import install_transport

IPN_SECRET = "ipn-secret"


def sign(payload: dict, secret: str = IPN_SECRET) -> str:
    sorted_body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hmac.new(secret.encode(), sorted_body, hashlib.sha512).hexdigest()


@pytest.fixture
def driver():
    return NowPaymentsDriver({
        "api_key": "NP_KEY",
        "ipn_secret": IPN_SECRET,
        "callback_url": "https://shop.example.com/cb",
    })


class TestNowPaymentsCharge:
    """Tests for NowPaymentsDriver.charge."""

    def test_charge_creates_invoice(self, driver):
        captured = install_transport(driver, lambda request: httpx.Response(200, json={
            "id": 4522625843,
            "invoice_url": "https://nowpayments.io/payment/?iid=4522625843",
            "order_id": "NOW_1700000000_ab12",
        }))
        response = driver.charge(ChargeRequest(
            amount=Decimal("49.99"),
            currency="USD",
            email="ada@example.com",
            reference="NOW_1700000000_ab12",
            channels=["card"],
        ))

        sent = captured[0]
        body = json.loads(sent.content)
        assert sent.url.path == "/v1/invoice"
        assert sent.headers["x-api-key"] == "NP_KEY"
        assert body["price_amount"] == 49.99
        assert body["price_currency"] == "usd"
        assert body["order_id"] == "NOW_1700000000_ab12"
        assert body["success_url"] == "https://shop.example.com/cb?reference=NOW_1700000000_ab12"
        assert response.authorization_url == "https://nowpayments.io/payment/?iid=4522625843"
        assert response.access_code == "4522625843"
        assert response.metadata["invoice_id"] == "4522625843"

    def test_missing_callback_is_left_out(self):
        driver = NowPaymentsDriver({"api_key": "NP_KEY"})
        captured = install_transport(driver, lambda request: httpx.Response(200, json={
            "id": 1, "invoice_url": "https://nowpayments.io/payment/?iid=1",
        }))
        response = driver.charge(ChargeRequest(amount=Decimal("5"), currency="USD", email="ada@example.com"))

        body = json.loads(captured[0].content)
        assert "success_url" not in body
        assert "ipn_callback_url" not in body
        assert response.reference.startswith("NOW_")

    def test_charge_error(self, driver):
        install_transport(driver, lambda request: httpx.Response(400, json={
            "status": False, "message": "price_currency is not supported",
        }))
        with pytest.raises(ChargeError) as exc_info:
            driver.charge(ChargeRequest(amount=Decimal("1"), currency="USD", email="ada@example.com"))
        assert "price_currency" in str(exc_info.value)


class TestNowPaymentsVerify:
    """Tests for NowPaymentsDriver.verify."""

    def test_verify_finished_payment(self, driver):
        captured = install_transport(driver, lambda request: httpx.Response(200, json={
            "payment_id": 5524759814,
            "payment_status": "finished",
            "order_id": "NOW_1",
            "price_amount": 49.99,
            "price_currency": "usd",
            "pay_currency": "btc",
            "pay_amount": 0.0012,
            "updated_at": 1700000000000,
        }))
        result = driver.verify("5524759814")

        assert captured[0].url.path == "/v1/payment/5524759814"
        assert result.reference == "NOW_1"
        assert result.status == "success"
        assert result.amount == Decimal("49.99")
        assert result.currency == "USD"
        assert result.channel == "btc"
        assert result.paid_at.timestamp() == 1700000000
        assert result.metadata["payment_id"] == 5524759814

    def test_waiting_payment_is_pending(self, driver):
        install_transport(driver, lambda request: httpx.Response(200, json={
            "payment_id": 1, "payment_status": "confirming", "order_id": "NOW_1",
        }))
        result = driver.verify("1")
        assert result.status == "pending"
        assert result.paid_at is None

    def test_verify_failure(self, driver):
        install_transport(driver, lambda request: httpx.Response(404, json={"message": "Payment not found"}))
        with pytest.raises(VerificationError) as exc_info:
            driver.verify("404")
        assert "Payment not found" in str(exc_info.value)


class TestNowPaymentsWebhook:
    """Tests for the x-nowpayments-sig scheme over the key-sorted body."""

    def payload(self, updated_at=None):
        return {
            "payment_status": "finished",
            "payment_id": 5524759814,
            "order_id": "NOW_1",
            "pay_currency": "btc",
            "updated_at": updated_at if updated_at is not None else int(time.time() * 1000),
        }

    def test_signature_ignores_key_order(self, driver):
        payload = self.payload()
        # provider serializes keys in its own order; the digest is over sorted keys
        body = json.dumps(dict(reversed(list(payload.items())))).encode()
        assert driver.validate_webhook({"x-nowpayments-sig": sign(payload)}, body)

    def test_canonical_body_is_sorted_and_compact(self):
        assert canonical_body({"b": 1, "a": {"d": 2, "c": 3}}) == b'{"a":{"c":3,"d":2},"b":1}'

    def test_wrong_secret(self, driver):
        payload = self.payload()
        body = json.dumps(payload).encode()
        assert not driver.validate_webhook({"x-nowpayments-sig": sign(payload, "other")}, body)

    def test_missing_signature(self, driver):
        assert not driver.validate_webhook({}, json.dumps(self.payload()).encode())

    def test_missing_ipn_secret(self):
        driver = NowPaymentsDriver({"api_key": "NP_KEY"})
        payload = self.payload()
        assert not driver.validate_webhook({"x-nowpayments-sig": sign(payload)}, json.dumps(payload).encode())

    def test_stale_delivery(self, driver):
        payload = self.payload(updated_at=int((time.time() - 3600) * 1000))
        assert not driver.validate_webhook({"x-nowpayments-sig": sign(payload)}, json.dumps(payload).encode())

    def test_extraction(self, driver):
        payload = self.payload()
        assert driver.extract_webhook_reference(payload) == "NOW_1"
        assert driver.extract_webhook_reference({"payment_id": 42}) == "42"
        assert driver.extract_webhook_status(payload) == "finished"
        assert driver.extract_webhook_channel(payload) == "btc"
        assert driver.resolve_verification_id("NOW_1", "5524759814") == "5524759814"

    def test_health_check(self, driver):
        captured = install_transport(driver, lambda request: httpx.Response(200, json={"message": "OK"}))
        assert driver.health_check()
        assert captured[0].url.path == "/v1/status"
