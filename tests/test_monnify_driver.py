"""Tests for MonnifyDriver."""

import hashlib
import hmac
import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from paygate.drivers import MonnifyDriver
from paygate.drivers.monnify import MONNIFY_TZ
from paygate.exceptions import ChargeError, ConfigurationError, VerificationError
from paygate.models import ChargeRequest

from conftest import install_transport

SECRET = "MNFY_SECRET"


def token_response(expires_in=3600):
    return httpx.Response(200, json={
        "requestSuccessful": True,
        "responseBody": {"accessToken": "tok-123", "expiresIn": expires_in},
    })


def routed(handlers):
    """Dispatch on request path, answering the login call with a token."""
    def handler(request):
        if request.url.path == "/api/v1/auth/login":
            return token_response()
        return handlers[request.url.path](request)
    return handler


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


@pytest.fixture
def driver():
    return MonnifyDriver({
        "api_key": "MK_TEST",
        "secret_key": SECRET,
        "contract_code": "1234567890",
        "callback_url": "https://shop.example.com/cb",
    })


class TestMonnifyConfig:
    """Tests for required configuration."""

    def test_contract_code_required(self):
        with pytest.raises(ConfigurationError) as exc_info:
            MonnifyDriver({"api_key": "MK_TEST", "secret_key": SECRET})
        assert "contract_code" in str(exc_info.value)


class TestMonnifyAuth:
    """Tests for the bearer token exchange."""

    def test_token_is_reused(self, driver):
        captured = install_transport(driver, lambda request: token_response())
        assert driver.access_token() == "tok-123"
        assert driver.access_token() == "tok-123"

        logins = [r for r in captured if r.url.path == "/api/v1/auth/login"]
        assert len(logins) == 1
        assert logins[0].headers["Authorization"].startswith("Basic ")

    def test_expired_token_is_refreshed(self, driver):
        captured = install_transport(driver, lambda request: token_response(expires_in=30))
        driver.access_token()
        driver.access_token()
        assert len(captured) == 2

    def test_rejected_credentials(self, driver):
        install_transport(driver, lambda request: httpx.Response(401, json={
            "requestSuccessful": False, "responseMessage": "Invalid credentials",
        }))
        with pytest.raises(ChargeError):
            driver.access_token()
        with pytest.raises(VerificationError):
            driver.access_token(VerificationError)


class TestMonnifyCharge:
    """Tests for MonnifyDriver.charge."""

    def test_charge_success(self, driver):
        captured = install_transport(driver, routed({
            "/api/v1/merchant/transactions/init-transaction": lambda request: httpx.Response(200, json={
                "requestSuccessful": True,
                "responseBody": {
                    "transactionReference": "MNFY|20231114|000001",
                    "checkoutUrl": "https://sandbox.sdk.monnify.com/checkout/MNFY|20231114|000001",
                },
            }),
        }))
        response = driver.charge(ChargeRequest(
            amount=Decimal("5000.00"),
            currency="NGN",
            email="ada@example.com",
            reference="MON_1700000000_ab12",
            channels=["card", "bank_transfer", "qr_code"],
            customer={"name": "Ada Lovelace"},
        ))

        sent = captured[-1]
        body = json.loads(sent.content)
        assert sent.headers["Authorization"] == "Bearer tok-123"
        assert body["paymentReference"] == "MON_1700000000_ab12"
        assert body["contractCode"] == "1234567890"
        assert body["paymentMethods"] == ["CARD", "ACCOUNT_TRANSFER"]
        assert body["customerName"] == "Ada Lovelace"
        assert response.access_code == "MNFY|20231114|000001"
        assert response.authorization_url.startswith("https://sandbox.sdk.monnify.com/checkout/")

    def test_default_payment_methods(self, driver):
        captured = install_transport(driver, routed({
            "/api/v1/merchant/transactions/init-transaction": lambda request: httpx.Response(200, json={
                "requestSuccessful": True, "responseBody": {"checkoutUrl": "https://x"},
            }),
        }))
        response = driver.charge(ChargeRequest(amount=Decimal("1"), currency="NGN", email="ada@example.com"))

        assert json.loads(captured[-1].content)["paymentMethods"] == ["CARD", "ACCOUNT_TRANSFER"]
        assert response.reference.startswith("MON_")

    def test_charge_rejected(self, driver):
        install_transport(driver, routed({
            "/api/v1/merchant/transactions/init-transaction": lambda request: httpx.Response(400, json={
                "requestSuccessful": False, "responseMessage": "Invalid contract code",
            }),
        }))
        with pytest.raises(ChargeError) as exc_info:
            driver.charge(ChargeRequest(amount=Decimal("1"), currency="NGN", email="ada@example.com"))
        assert "Invalid contract code" in str(exc_info.value)


class TestMonnifyVerify:
    """Tests for MonnifyDriver.verify."""

    def paid(self, request):
        return httpx.Response(200, json={
            "requestSuccessful": True,
            "responseBody": {
                "paymentReference": "MON_1",
                "paymentStatus": "PAID",
                "amountPaid": "5000.00",
                "currencyCode": "NGN",
                "paidOn": "2023-11-14 23:13:20",
                "paymentMethod": "ACCOUNT_TRANSFER",
                "customer": {"email": "ada@example.com", "name": "Ada"},
            },
        })

    def test_verify_by_payment_reference(self, driver):
        captured = install_transport(driver, routed({"/api/v2/merchant/transactions/query": self.paid}))
        result = driver.verify("MON_1")

        query = captured[-1]
        assert query.url.params["paymentReference"] == "MON_1"
        assert query.headers["Authorization"] == "Bearer tok-123"
        assert result.status == "success"
        assert result.amount == Decimal("5000.00")
        assert result.channel == "ACCOUNT_TRANSFER"
        assert result.customer["email"] == "ada@example.com"
        assert result.paid_at.utcoffset() == timedelta(hours=1)

    def test_verify_by_transaction_reference(self, driver):
        captured = install_transport(driver, routed({"/api/v2/merchant/transactions/query": self.paid}))
        driver.verify("MNFY|20231114|000001")
        assert captured[-1].url.params["transactionReference"] == "MNFY|20231114|000001"

    def test_verify_failure(self, driver):
        install_transport(driver, routed({
            "/api/v2/merchant/transactions/query": lambda request: httpx.Response(200, json={
                "requestSuccessful": False, "responseMessage": "Transaction not found",
            }),
        }))
        with pytest.raises(VerificationError) as exc_info:
            driver.verify("MON_missing")
        assert "Transaction not found" in str(exc_info.value)


class TestMonnifyWebhook:
    """Tests for the monnify-signature HMAC-SHA512 scheme."""

    def body(self, paid_on=None):
        paid_on = paid_on or datetime.now(MONNIFY_TZ)
        return json.dumps({
            "eventType": "SUCCESSFUL_TRANSACTION",
            "eventData": {
                "paymentReference": "MON_1",
                "paymentStatus": "PAID",
                "paymentMethod": "CARD",
                "paidOn": paid_on.strftime("%Y-%m-%d %H:%M:%S"),
            },
        }).encode()

    def test_valid_signature(self, driver):
        body = self.body()
        assert driver.validate_webhook({"monnify-signature": sign(body)}, body)

    def test_wrong_secret(self, driver):
        body = self.body()
        assert not driver.validate_webhook({"monnify-signature": sign(body, "other")}, body)

    def test_missing_signature(self, driver):
        assert not driver.validate_webhook({}, self.body())

    def test_stale_delivery(self, driver):
        body = self.body(datetime.now(MONNIFY_TZ) - timedelta(hours=1))
        assert not driver.validate_webhook({"monnify-signature": sign(body)}, body)

    def test_missing_paid_on(self, driver):
        body = json.dumps({"eventData": {"paymentReference": "MON_1"}}).encode()
        assert not driver.validate_webhook({"monnify-signature": sign(body)}, body)

    def test_extraction(self, driver):
        payload = json.loads(self.body())
        assert driver.extract_webhook_reference(payload) == "MON_1"
        assert driver.extract_webhook_status(payload) == "PAID"
        assert driver.extract_webhook_channel(payload) == "CARD"
        assert driver.resolve_verification_id("MON_1", None) == "MON_1"
        assert driver.resolve_verification_id("MON_1", "MNFY|1") == "MNFY|1"

    def test_health_uses_login(self, driver):
        captured = install_transport(driver, lambda request: token_response())
        assert driver.health_check()
        assert captured[0].url.path == "/api/v1/auth/login"
