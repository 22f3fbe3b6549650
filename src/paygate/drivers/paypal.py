import logging
import threading
import time
from typing import Any, Dict, Mapping, Optional, Type, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, ConfigurationError, PaymentError, VerificationError
from ..models import ChargeRequest, ChargeResponse, VerificationResponse
from ..registry.channels import ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import (
    ReplayGuard,
    crc32_of,
    is_trusted_cert_url,
    parse_timestamp,
    verify_certificate_signature,
)
from .support import DriverSupport, dig, format_amount, load_payload, to_decimal

logger = logging.getLogger(__name__)

CERT_CACHE_TTL = 86400

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}

VERIFY_API = "api"
VERIFY_CERTIFICATE = "certificate"


class PayPalDriver(Driver):
    """
    PayPal Orders v2.

    Orders are verified by the PayPal order id issued at charge time. Webhooks
    are authenticated either by PayPal's verify-webhook-signature API or
    locally against the signing certificate, selected by the
    ``webhook_verification`` config value.
    """

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "paypal",
        cache: Optional[Cache] = None,
        normalizer: Optional[StatusNormalizer] = None,
        channel_mapper: Optional[ChannelMapper] = None,
        health_ttl: int = 300,
        webhook_tolerance: int = 300,
    ):
        self.support = DriverSupport(
            name,
            config,
            cache=cache,
            health_ttl=health_ttl,
            default_base_url=self._default_base_url(config),
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("client_id", "client_secret")
        self.webhook_id: Optional[str] = self.support.get("webhook_id")
        self.webhook_verification: str = self.support.get("webhook_verification", VERIFY_API)
        if self.webhook_verification not in (VERIFY_API, VERIFY_CERTIFICATE):
            raise ConfigurationError(
                f"paypal webhook_verification must be '{VERIFY_API}' or '{VERIFY_CERTIFICATE}'",
                provider=name,
            )
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    @staticmethod
    def _default_base_url(config: Union[ProviderConfig, Mapping[str, Any]]) -> str:
        mode = config.get("mode", "sandbox")
        if mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def _request_token(self) -> httpx.Response:
        return self.support.client.post(
            "/v1/oauth2/token",
            auth=(self.support.get("client_id"), self.support.get("client_secret")),
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def access_token(self, error_cls: Type[PaymentError] = ChargeError) -> str:
        with self._token_lock:
            if self._access_token and time.time() < self._token_expiry:
                return self._access_token
            try:
                response = self._request_token()
            except httpx.HTTPError as e:
                raise error_cls(f"PayPal authentication failed: {e}", provider=self.name) from e
            data = self.support.parse_json(response)
            token = data.get("access_token")
            if not token:
                raise error_cls("Failed to authenticate with PayPal", provider=self.name)
            self._access_token = token
            self._token_expiry = time.time() + int(data.get("expires_in", 3600)) - 60
            return token

    def _auth_headers(self, error_cls: Type[PaymentError] = ChargeError) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token(error_cls)}"}

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        # PayPal has no channel filter, so request.channels is ignored
        reference = request.reference or self.support.generate_reference()
        callback = self.support.callback_url(request.callback_url)
        payload: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": reference,
                "custom_id": reference,
                "description": request.description or "Payment",
                "amount": {
                    "currency_code": request.currency,
                    "value": format_amount(request.amount, request.currency),
                },
            }],
            "payment_source": {
                "paypal": {
                    "email_address": request.email,
                    "experience_context": {
                        "brand_name": self.support.get("brand_name", "Your Store"),
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "user_action": "PAY_NOW",
                        "return_url": callback,
                        "cancel_url": callback,
                    },
                },
            },
        }
        headers = self._auth_headers(ChargeError)
        if request.idempotency_key:
            headers["PayPal-Request-Id"] = request.idempotency_key

        try:
            response = self.support.request("POST", "/v2/checkout/orders", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"PayPal charge failed for {reference}: {e}")
            raise ChargeError(f"PayPal charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("id"):
            raise ChargeError(data.get("message") or "Failed to create PayPal order", provider=self.name)

        links = data.get("links") or []
        approve = next(
            (link.get("href") for link in links if link.get("rel") in ("approve", "payer-action")),
            "",
        )
        logger.info(f"PayPal order {data['id']} created for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=approve,
            access_code=data["id"],
            status=self.normalizer.normalize(data.get("status"), self.name),
            metadata={**request.metadata, "order_id": data["id"]},
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        headers = self._auth_headers(VerificationError)
        try:
            response = self.support.request("GET", f"/v2/checkout/orders/{verification_id}", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"PayPal verification failed for {verification_id}: {e}")
            raise VerificationError(f"PayPal verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("id"):
            raise VerificationError("PayPal order not found", provider=self.name)

        unit = dig(data, "purchase_units", 0) or {}
        capture = dig(unit, "payments", "captures", 0) or {}
        status = self.normalizer.normalize(data.get("status"), self.name)
        logger.info(f"PayPal verified order {verification_id}: {status}")
        return VerificationResponse(
            reference=unit.get("custom_id") or unit.get("reference_id") or verification_id,
            status=status,
            amount=to_decimal(dig(unit, "amount", "value") or 0),
            currency=(dig(unit, "amount", "currency_code") or "USD").upper(),
            paid_at=parse_timestamp(capture.get("create_time")),
            channel="paypal",
            customer={
                "email": dig(data, "payer", "email_address"),
                "name": dig(data, "payer", "name", "given_name"),
            },
            metadata={"order_id": data["id"], "capture_id": capture.get("id")},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        transmission = {key: headers.get(header) for key, header in TRANSMISSION_HEADERS.items()}
        missing = [TRANSMISSION_HEADERS[key] for key, value in transmission.items() if not value]
        if missing:
            logger.warning(f"PayPal webhook missing headers: {', '.join(missing)}")
            return False
        if not self.webhook_id:
            logger.warning("PayPal webhook_id is not configured")
            return False
        payload = load_payload(body)
        if payload is None:
            return False

        if self.webhook_verification == VERIFY_CERTIFICATE:
            valid = self._verify_with_certificate(transmission, body)
        else:
            valid = self._verify_with_api(transmission, payload)
        if not valid:
            logger.warning("PayPal webhook signature rejected")
            return False
        return self.replay_guard.is_fresh(payload.get("create_time"))

    def _verify_with_api(self, transmission: Dict[str, Optional[str]], event: Dict[str, Any]) -> bool:
        try:
            headers = self._auth_headers(VerificationError)
            response = self.support.request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                headers=headers,
                json={**transmission, "webhook_id": self.webhook_id, "webhook_event": event},
            )
        except (httpx.HTTPError, VerificationError) as e:
            logger.error(f"PayPal webhook verification call failed: {e}")
            return False
        return self.support.parse_json(response).get("verification_status") == "SUCCESS"

    def _verify_with_certificate(self, transmission: Dict[str, Optional[str]], body: bytes) -> bool:
        cert_url = transmission["cert_url"] or ""
        if not is_trusted_cert_url(cert_url):
            logger.warning(f"PayPal certificate URL is not trusted: {cert_url}")
            return False
        try:
            pem = self.support.cache.get_or_compute(
                f"paypal.cert.{cert_url}", CERT_CACHE_TTL, lambda: self._download_certificate(cert_url)
            )
        except httpx.HTTPError as e:
            logger.error(f"Unable to download PayPal certificate: {e}")
            return False
        message = "|".join([
            transmission["transmission_id"] or "",
            transmission["transmission_time"] or "",
            self.webhook_id or "",
            str(crc32_of(body)),
        ])
        return verify_certificate_signature(pem.encode(), message.encode(), transmission["transmission_sig"] or "")

    def _download_certificate(self, url: str) -> str:
        response = httpx.get(url, timeout=self.support.config.timeout)
        response.raise_for_status()
        return response.text

    def health_check(self) -> bool:
        try:
            response = self._request_token()
        except httpx.HTTPError as e:
            logger.warning(f"PayPal health check failed: {e}")
            return False
        return response.status_code < 500

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        resource = payload.get("resource") or {}
        return (
            resource.get("custom_id")
            or dig(resource, "purchase_units", 0, "custom_id")
            or dig(resource, "purchase_units", 0, "reference_id")
        )

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("event_type") or dig(payload, "resource", "status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return "paypal"
