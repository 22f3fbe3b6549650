"""Tests for StripeDriver."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe

from paygate.drivers import StripeDriver
from paygate.exceptions import ChargeError, ConfigurationError, VerificationError
from paygate.models import ChargeRequest

WEBHOOK_SECRET = "whsec_test_secret"


class StripeObj(dict):
    """Dict with attribute access, shaped like a StripeObject."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError as e:
            raise AttributeError(name) from e


def stripe_signature(body: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed_payload = f"{timestamp}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def driver():
    return StripeDriver({
        "secret_key": "sk_test_123",
        "webhook_secret": WEBHOOK_SECRET,
        "callback_url": "https://shop.example.com/cb",
    })


@pytest.fixture
def request_data():
    return ChargeRequest(
        amount=Decimal("49.99"),
        currency="USD",
        email="ada@example.com",
        reference="STRIPE_1",
        idempotency_key="idem-1",
        channels=["card", "bank_transfer"],
        metadata={"order_id": "42"},
    )


class TestStripeCharge:
    """Tests for checkout session creation."""

    def test_charge_creates_session(self, driver, request_data):
        session = StripeObj(id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123")
        with patch("stripe.checkout.Session.create", return_value=session) as create:
            response = driver.charge(request_data)

        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_123"
        assert kwargs["idempotency_key"] == "idem-1"
        assert kwargs["client_reference_id"] == "STRIPE_1"
        assert kwargs["payment_method_types"] == ["card", "us_bank_account"]
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 4999
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["metadata"] == {"order_id": "42", "reference": "STRIPE_1"}
        assert kwargs["success_url"] == "https://shop.example.com/cb?status=success&reference=STRIPE_1"
        assert response.access_code == "cs_test_123"
        assert response.authorization_url == "https://checkout.stripe.com/c/pay/cs_test_123"
        assert response.metadata["session_id"] == "cs_test_123"

    def test_requires_callback_url(self, request_data):
        driver = StripeDriver({"secret_key": "sk_test_123"})
        with pytest.raises(ConfigurationError):
            driver.charge(request_data.model_copy(update={"callback_url": None}))

    def test_stripe_error_wrapped(self, driver, request_data):
        with patch("stripe.checkout.Session.create", side_effect=stripe.InvalidRequestError("bad", "amount")):
            with pytest.raises(ChargeError) as exc_info:
                driver.charge(request_data)
        assert exc_info.value.provider == "stripe"


class TestStripeVerify:
    """Tests for the id-shape dispatch in verify."""

    def test_verify_checkout_session(self, driver):
        session = StripeObj(
            id="cs_test_123",
            client_reference_id="STRIPE_1",
            payment_status="paid",
            status="complete",
            amount_total=4999,
            currency="usd",
            created=1700000000,
            payment_method_types=["card"],
            customer_details={"email": "ada@example.com"},
            metadata={"reference": "STRIPE_1"},
        )
        with patch("stripe.checkout.Session.retrieve", return_value=session) as retrieve:
            result = driver.verify("cs_test_123")

        assert retrieve.call_args.kwargs["expand"] == ["payment_intent"]
        assert result.reference == "STRIPE_1"
        assert result.status == "success"
        assert result.amount == Decimal("49.99")
        assert result.currency == "USD"
        assert result.channel == "card"
        assert result.customer == {"email": "ada@example.com"}
        assert result.paid_at is not None

    def test_expired_unpaid_session_is_failed(self, driver):
        session = StripeObj(id="cs_1", payment_status="unpaid", status="expired", amount_total=100)
        with patch("stripe.checkout.Session.retrieve", return_value=session):
            assert driver.verify("cs_1").status == "failed"

    def test_verify_payment_intent(self, driver):
        intent = StripeObj(
            id="pi_123", status="requires_payment_method", amount=4999, currency="usd",
            metadata={"reference": "STRIPE_1"}, payment_method_types=["card"],
        )
        with patch("stripe.PaymentIntent.retrieve", return_value=intent):
            result = driver.verify("pi_123")
        assert result.reference == "STRIPE_1"
        assert result.status == "pending"
        assert result.paid_at is None

    def test_verify_by_reference_searches_sessions(self, driver):
        listed = StripeObj(data=[StripeObj(id="cs_other", client_reference_id="X"),
                                 StripeObj(id="cs_match", client_reference_id="STRIPE_1")])
        full = StripeObj(id="cs_match", client_reference_id="STRIPE_1", payment_status="paid", amount_total=100)
        with patch("stripe.checkout.Session.list", return_value=listed), \
                patch("stripe.checkout.Session.retrieve", return_value=full) as retrieve:
            result = driver.verify("STRIPE_1")
        assert retrieve.call_args.args[0] == "cs_match"
        assert result.status == "success"

    def test_verify_by_reference_falls_back_to_intents(self, driver):
        intents = StripeObj(data=[StripeObj(id="pi_1", status="succeeded", amount=100,
                                            metadata={"reference": "STRIPE_1"})])
        with patch("stripe.checkout.Session.list", return_value=StripeObj(data=[])), \
                patch("stripe.PaymentIntent.list", return_value=intents):
            result = driver.verify("STRIPE_1")
        assert result.status == "success"

    def test_not_found(self, driver):
        with patch("stripe.checkout.Session.list", return_value=StripeObj(data=[])), \
                patch("stripe.PaymentIntent.list", return_value=StripeObj(data=[])):
            with pytest.raises(VerificationError) as exc_info:
                driver.verify("STRIPE_missing")
        assert "STRIPE_missing" in str(exc_info.value)

    def test_api_error_wrapped(self, driver):
        with patch("stripe.PaymentIntent.retrieve", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(VerificationError):
                driver.verify("pi_123")


class TestStripeWebhook:
    """Tests for Stripe-Signature validation."""

    def body(self, created=None):
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "created": int(created if created is not None else time.time()),
            "data": {"object": {
                "id": "cs_test_123",
                "object": "checkout.session",
                "client_reference_id": "STRIPE_1",
                "payment_status": "paid",
                "payment_method_types": ["card"],
            }},
        }).encode()

    def test_valid_signature(self, driver):
        body = self.body()
        assert driver.validate_webhook({"stripe-signature": stripe_signature(body)}, body)

    def test_wrong_secret(self, driver):
        body = self.body()
        assert not driver.validate_webhook({"stripe-signature": stripe_signature(body, "whsec_other")}, body)

    def test_missing_header(self, driver):
        assert not driver.validate_webhook({}, self.body())

    def test_stale_event_created(self, driver):
        """Test the event's own timestamp is checked as well as the header's."""
        body = self.body(created=time.time() - 3600)
        assert not driver.validate_webhook({"stripe-signature": stripe_signature(body)}, body)

    def test_extraction(self, driver):
        payload = json.loads(self.body())
        assert driver.extract_webhook_reference(payload) == "STRIPE_1"
        assert driver.extract_webhook_status(payload) == "paid"
        assert driver.extract_webhook_channel(payload) == "card"
        metadata_only = {"data": {"object": {"metadata": {"reference": "STRIPE_2"}, "status": "succeeded"}}}
        assert driver.extract_webhook_reference(metadata_only) == "STRIPE_2"


class TestStripeHealth:
    def test_balance_ok(self, driver):
        with patch("stripe.Balance.retrieve", return_value=StripeObj()):
            assert driver.health_check()

    def test_authentication_error_counts_as_reachable(self, driver):
        with patch("stripe.Balance.retrieve", side_effect=stripe.AuthenticationError("bad key")):
            assert driver.health_check()

    def test_server_error_unhealthy(self, driver):
        with patch("stripe.Balance.retrieve", side_effect=stripe.APIError("boom", http_status=503)):
            assert not driver.health_check()

    def test_connection_error_unhealthy(self, driver):
        with patch("stripe.Balance.retrieve", side_effect=stripe.APIConnectionError("down")):
            assert not driver.health_check()
