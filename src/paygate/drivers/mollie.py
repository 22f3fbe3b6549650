import hashlib
import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, VerificationError
from ..models import ChargeRequest, ChargeResponse, VerificationResponse
from ..registry.channels import OMIT, ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, hmac_hex_matches, parse_timestamp
from .support import DriverSupport, append_query_param, dig, format_amount, load_payload, to_decimal

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-mollie-signature"
PING_EVENT = "hook.ping"


class MollieDriver(Driver):
    """
    Mollie Payments API v2.

    With ``webhook_secret`` configured, webhooks must carry an HMAC-SHA256 hex
    digest of the body in ``x-mollie-signature``. Without it the payment id in
    the body is confirmed against the API instead. Either way payment events
    must carry a fresh ``createdAt``; ``hook.ping`` test events are exempt.
    """

    default_reference_prefix = "MOLLIE"

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "mollie",
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
            default_base_url="https://api.mollie.com",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("api_key")
        self.webhook_secret: Optional[str] = self.support.get("webhook_secret")
        self.support.default_headers["Authorization"] = f"Bearer {self.support.get('api_key')}"
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        payload: Dict[str, Any] = {
            "amount": {
                "currency": request.currency,
                "value": format_amount(request.amount, request.currency),
            },
            "description": request.description or "Payment",
            "metadata": {**request.metadata, "reference": reference},
        }
        redirect_url = append_query_param(self.support.callback_url(request.callback_url), "reference", reference)
        if redirect_url:
            payload["redirectUrl"] = redirect_url
        webhook_url = self.support.get("webhook_url")
        if webhook_url:
            payload["webhookUrl"] = webhook_url
        methods = self.channel_mapper.map_channels(request.channels, self.name)
        if methods is not OMIT and methods:
            payload["method"] = methods

        try:
            response = self.support.request(
                "POST", "/v2/payments", json=payload, idempotency_key=request.idempotency_key
            )
        except httpx.HTTPError as e:
            logger.error(f"Mollie charge failed for {reference}: {e}")
            raise ChargeError(f"Mollie charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        checkout_url = dig(data, "_links", "checkout", "href")
        if not checkout_url:
            raise ChargeError(data.get("detail") or "No checkout URL returned by Mollie", provider=self.name)

        logger.info(f"Mollie payment {data.get('id')} created for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=checkout_url,
            access_code=data.get("id"),
            status=self.normalizer.normalize(data.get("status"), self.name),
            metadata={**request.metadata, "mollie_id": data.get("id"), "reference": reference},
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        try:
            response = self.support.request("GET", f"/v2/payments/{verification_id}")
        except httpx.HTTPError as e:
            logger.error(f"Mollie verification failed for {verification_id}: {e}")
            raise VerificationError(f"Mollie verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("id"):
            raise VerificationError(data.get("detail") or "Failed to verify Mollie payment", provider=self.name)

        status = self.normalizer.normalize(data.get("status"), self.name)
        logger.info(f"Mollie verified {verification_id}: {status}")
        return VerificationResponse(
            reference=dig(data, "metadata", "reference") or verification_id,
            status=status,
            amount=to_decimal(dig(data, "amount", "value") or 0),
            currency=(dig(data, "amount", "currency") or "EUR").upper(),
            paid_at=parse_timestamp(data.get("paidAt")),
            channel=data.get("method"),
            card_type=dig(data, "details", "cardLabel"),
            bank=dig(data, "details", "consumerName"),
            customer={
                "email": dig(data, "billingAddress", "email"),
                "name": dig(data, "billingAddress", "givenName"),
            },
            metadata=data.get("metadata") or {},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        if self.webhook_secret:
            if not hmac_hex_matches(self.webhook_secret, body, headers.get(SIGNATURE_HEADER), hashlib.sha256):
                logger.warning("Mollie webhook signature missing or mismatched")
                return False
            payload = load_payload(body)
            if payload is None:
                return False
        else:
            payload = load_payload(body)
            if payload is None:
                return False
            if payload.get("type") != PING_EVENT and not self._payment_exists(payload.get("id")):
                return False

        if payload.get("type") == PING_EVENT:
            return True
        return self.replay_guard.is_fresh(payload.get("createdAt"))

    def _payment_exists(self, payment_id: Optional[str]) -> bool:
        if not payment_id:
            logger.warning("Mollie webhook missing payment id")
            return False
        try:
            response = self.support.request("GET", f"/v2/payments/{payment_id}")
        except httpx.HTTPError as e:
            logger.warning(f"Mollie webhook confirmation failed for {payment_id}: {e}")
            return False
        data = self.support.parse_json(response)
        if data.get("id") != payment_id:
            logger.warning(f"Mollie webhook payment id mismatch for {payment_id}")
            return False
        return True

    def health_check(self) -> bool:
        return self.support.ping("GET", "/v2/methods")

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "metadata", "reference") or payload.get("id")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("method")
