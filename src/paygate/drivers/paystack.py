import hashlib
import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, VerificationError
from ..models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from ..registry.channels import OMIT, ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, hmac_hex_matches, parse_timestamp
from .support import DriverSupport, dig, from_minor_units, load_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


class PaystackDriver(Driver):
    """
    Paystack transactions API. References are verified directly; webhooks carry
    an HMAC-SHA512 hex digest of the raw body keyed with the secret key.
    """

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "paystack",
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
            default_base_url="https://api.paystack.co",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("secret_key")
        self.secret_key: str = self.support.get("secret_key")
        self.support.default_headers["Authorization"] = f"Bearer {self.secret_key}"
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        payload: Dict[str, Any] = {
            "email": request.email,
            "amount": request.amount_in_minor_units(),
            "currency": request.currency,
            "reference": reference,
            "metadata": request.metadata,
        }
        callback_url = self.support.callback_url(request.callback_url)
        if callback_url:
            payload["callback_url"] = callback_url
        channels = self.channel_mapper.map_channels(request.channels, self.name)
        if channels is not OMIT and channels:
            payload["channels"] = channels

        try:
            response = self.support.request(
                "POST",
                "/transaction/initialize",
                json=payload,
                idempotency_key=request.idempotency_key,
            )
        except httpx.HTTPError as e:
            logger.error(f"Paystack charge failed for {reference}: {e}")
            raise ChargeError(f"Paystack charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("status"):
            raise ChargeError(
                data.get("message") or "Failed to initialize Paystack transaction",
                provider=self.name,
            )

        result = data.get("data") or {}
        logger.info(f"Paystack charge initialized for {result.get('reference', reference)}")
        return ChargeResponse(
            reference=result.get("reference", reference),
            authorization_url=result.get("authorization_url", ""),
            access_code=result.get("access_code"),
            status=PaymentStatus.PENDING.value,
            metadata=request.metadata,
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        try:
            response = self.support.request("GET", f"/transaction/verify/{verification_id}")
        except httpx.HTTPError as e:
            logger.error(f"Paystack verification failed for {verification_id}: {e}")
            raise VerificationError(f"Paystack verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("status"):
            raise VerificationError(
                data.get("message") or "Failed to verify Paystack transaction",
                provider=self.name,
            )

        result = data.get("data") or {}
        status = self.normalizer.normalize(result.get("status"), self.name)
        logger.info(f"Paystack verified {verification_id}: {status}")
        return VerificationResponse(
            reference=result.get("reference", verification_id),
            status=status,
            amount=from_minor_units(result.get("amount", 0)),
            currency=(result.get("currency") or "NGN").upper(),
            paid_at=parse_timestamp(result.get("paid_at")),
            channel=result.get("channel"),
            card_type=dig(result, "authorization", "card_type"),
            bank=dig(result, "authorization", "bank"),
            customer={
                "email": dig(result, "customer", "email"),
                "code": dig(result, "customer", "customer_code"),
            },
            metadata=result.get("metadata") or {},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            logger.warning("Paystack webhook signature missing")
            return False
        if not hmac_hex_matches(self.secret_key, body, signature, hashlib.sha512):
            logger.warning("Paystack webhook signature mismatch")
            return False

        payload = load_payload(body)
        if payload is None:
            return False
        issued_at = dig(payload, "data", "paid_at") or dig(payload, "data", "created_at")
        return self.replay_guard.is_fresh(issued_at)

    def health_check(self) -> bool:
        # an unknown reference answers 400/404 when the API is up
        return self.support.ping("GET", "/transaction/verify/invalid_ref_test")

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "reference")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "channel")
