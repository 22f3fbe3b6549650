import hashlib
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, VerificationError
from ..models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from ..registry.channels import OMIT, ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, hmac_base64_matches, parse_timestamp
from .support import DriverSupport, append_query_param, dig, from_minor_units, load_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-square-hmacsha256-signature", "x-square-signature")
SQUARE_VERSION = "2024-10-18"


class SquareDriver(Driver):
    """
    Square payment links. Verification needs a Square-issued id (payment or
    payment link), so the id returned at charge time is what gets re-checked.
    """

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "square",
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
            default_base_url="https://connect.squareup.com",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("access_token", "location_id")
        self.location_id: str = self.support.get("location_id")
        self.webhook_signature_key: Optional[str] = self.support.get("webhook_signature_key")
        self.support.default_headers.update({
            "Authorization": f"Bearer {self.support.get('access_token')}",
            "Square-Version": self.support.get("square_version", SQUARE_VERSION),
        })
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        payload: Dict[str, Any] = {
            # Square requires a key per create call; a caller-supplied one is sent unchanged
            "idempotency_key": request.idempotency_key or str(uuid.uuid4()),
            "order": {
                "location_id": self.location_id,
                "reference_id": reference,
                "line_items": [{
                    "name": request.description or "Payment",
                    "quantity": "1",
                    "base_price_money": {
                        "amount": request.amount_in_minor_units(),
                        "currency": request.currency,
                    },
                }],
            },
            "pre_populated_data": {"buyer_email": request.email},
        }
        checkout_options: Dict[str, Any] = {}
        redirect_url = append_query_param(
            self.support.callback_url(request.callback_url), "reference", reference
        )
        if redirect_url:
            checkout_options["redirect_url"] = redirect_url
        channels = self.channel_mapper.map_channels(request.channels, self.name)
        if channels is not OMIT and channels:
            checkout_options["accepted_payment_methods"] = {
                "apple_pay": "WALLET" in channels,
                "google_pay": "WALLET" in channels,
                "cash_app_pay": "CASH_APP" in channels,
                "afterpay_clearpay": "AFTERPAY" in channels,
            }
        if checkout_options:
            payload["checkout_options"] = checkout_options

        try:
            response = self.support.request("POST", "/v2/online-checkout/payment-links", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Square charge failed for {reference}: {e}")
            raise ChargeError(f"Square charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        link = data.get("payment_link")
        if not link:
            detail = dig(data, "errors", 0, "detail")
            raise ChargeError(detail or "Failed to create Square payment link", provider=self.name)

        logger.info(f"Square payment link {link.get('id')} created for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=link.get("url", ""),
            access_code=link.get("id"),
            status=PaymentStatus.PENDING.value,
            metadata={
                **request.metadata,
                "payment_link_id": link.get("id"),
                "order_id": link.get("order_id"),
                "is_sandbox": "squareupsandbox.com" in self.support.base_url,
            },
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        """
        Looks the id up as a payment id, then as a payment link id, then
        searches orders by ``reference_id``.
        """
        try:
            result = self._verify_by_payment_id(verification_id)
            if result is None:
                result = self._verify_by_payment_link_id(verification_id)
            if result is None:
                result = self._verify_by_reference_id(verification_id)
        except httpx.HTTPError as e:
            logger.error(f"Square verification failed for {verification_id}: {e}")
            raise VerificationError(f"Square verification failed: {e}", provider=self.name) from e
        logger.info(f"Square verified {verification_id}: {result.status}")
        return result

    def _get(self, url: str) -> Optional[Dict[str, Any]]:
        response = self.support.request("GET", url)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return self.support.parse_json(response)

    def _verify_by_payment_id(self, verification_id: str) -> Optional[VerificationResponse]:
        if not verification_id.startswith("payment_") and len(verification_id) != 32:
            return None
        data = self._get(f"/v2/payments/{verification_id}")
        if not data or "payment" not in data:
            return None
        return self._from_payment(data["payment"], verification_id)

    def _verify_by_payment_link_id(self, verification_id: str) -> Optional[VerificationResponse]:
        data = self._get(f"/v2/online-checkout/payment-links/{verification_id}")
        order_id = dig(data, "payment_link", "order_id")
        if not order_id:
            return None
        order = self._order(order_id)
        payment = self._payment(self._payment_id_from_order(order, order_id))
        return self._from_payment(payment, order.get("reference_id") or verification_id)

    def _verify_by_reference_id(self, reference: str) -> VerificationResponse:
        response = self.support.request("POST", "/v2/orders/search", json={
            "location_ids": [self.location_id],
            "query": {"filter": {"state_filter": {"states": ["OPEN", "COMPLETED", "CANCELED"]}}},
        })
        response.raise_for_status()
        orders: List[Dict[str, Any]] = self.support.parse_json(response).get("orders") or []
        match = next((order for order in orders if order.get("reference_id") == reference), None)
        if match is None:
            raise VerificationError(f"Payment not found for reference [{reference}]", provider=self.name)
        order = self._order(match["id"])
        payment = self._payment(self._payment_id_from_order(order, match["id"]))
        return self._from_payment(payment, reference)

    def _order(self, order_id: str) -> Dict[str, Any]:
        order = dig(self._get(f"/v2/orders/{order_id}"), "order")
        if not order:
            raise VerificationError(f"Order not found for ID [{order_id}]", provider=self.name)
        return order

    def _payment_id_from_order(self, order: Dict[str, Any], order_id: str) -> str:
        payment_id = dig(order, "tenders", 0, "payment_id")
        if not payment_id:
            raise VerificationError(f"No payment found for order [{order_id}]", provider=self.name)
        return payment_id

    def _payment(self, payment_id: str) -> Dict[str, Any]:
        payment = dig(self._get(f"/v2/payments/{payment_id}"), "payment")
        if not payment:
            raise VerificationError(f"Payment [{payment_id}] not found", provider=self.name)
        return payment

    def _from_payment(self, payment: Dict[str, Any], reference: str) -> VerificationResponse:
        status = self.normalizer.normalize(payment.get("status"), self.name)
        paid_at = None
        if status == PaymentStatus.SUCCESS.value:
            paid_at = parse_timestamp(payment.get("updated_at") or payment.get("created_at"))
        return VerificationResponse(
            reference=payment.get("reference_id") or reference,
            status=status,
            amount=from_minor_units(dig(payment, "amount_money", "amount") or 0),
            currency=(dig(payment, "amount_money", "currency") or "USD").upper(),
            paid_at=paid_at,
            channel=(payment.get("source_type") or "CARD").lower(),
            card_type=dig(payment, "card_details", "card", "card_brand"),
            customer={"email": payment.get("buyer_email_address")},
            metadata={"payment_id": payment.get("id"), "order_id": payment.get("order_id")},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = next((headers[h] for h in SIGNATURE_HEADERS if headers.get(h)), None)
        if not signature:
            logger.warning("Square webhook signature missing")
            return False
        if not self.webhook_signature_key:
            logger.warning("Square webhook_signature_key is not configured")
            return False
        if not hmac_base64_matches(self.webhook_signature_key, body, signature, hashlib.sha256):
            logger.warning("Square webhook signature mismatch")
            return False
        payload = load_payload(body)
        if payload is None:
            return False
        return self.replay_guard.is_fresh(payload.get("created_at"))

    def health_check(self) -> bool:
        return self.support.ping("GET", "/v2/locations")

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "object", "payment", "reference_id") or dig(payload, "data", "id")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "object", "payment", "status") or payload.get("type")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        source = dig(payload, "data", "object", "payment", "source_type") or "CARD"
        return source.lower()
