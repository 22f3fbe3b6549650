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
from .security import ReplayGuard, parse_timestamp, shared_secret_matches
from .support import DriverSupport, append_query_param, dig, load_payload, to_decimal

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "verif-hash"


class FlutterwaveDriver(Driver):
    """
    Flutterwave Standard checkout. Webhooks carry the configured secret hash
    verbatim in ``verif-hash``; there is no digest to compute.
    """

    default_reference_prefix = "FLW"

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "flutterwave",
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
            default_base_url="https://api.flutterwave.com/v3",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("secret_key")
        self.secret_key: str = self.support.get("secret_key")
        self.webhook_secret: str = self.support.get("webhook_secret") or self.secret_key
        self.support.default_headers["Authorization"] = f"Bearer {self.secret_key}"
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        customer = request.customer or {}
        payload: Dict[str, Any] = {
            "tx_ref": reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "redirect_url": append_query_param(
                self.support.callback_url(request.callback_url), "reference", reference
            ),
            "customer": {
                "email": request.email,
                "name": customer.get("name", "Customer"),
                "phonenumber": customer.get("phone"),
            },
            "customizations": {
                "title": request.description or "Payment",
                "description": request.description or "Payment for services",
            },
            "meta": request.metadata,
        }
        channels = self.channel_mapper.map_channels(request.channels, self.name)
        if channels is not OMIT and channels:
            payload["payment_options"] = ",".join(channels)

        try:
            response = self.support.request(
                "POST", "payments", json=payload, idempotency_key=request.idempotency_key
            )
        except httpx.HTTPError as e:
            logger.error(f"Flutterwave charge failed for {reference}: {e}")
            raise ChargeError(f"Flutterwave charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if data.get("status") != "success":
            raise ChargeError(
                data.get("message") or "Failed to initialize Flutterwave transaction",
                provider=self.name,
            )

        logger.info(f"Flutterwave charge initialized for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=dig(data, "data", "link") or "",
            access_code=reference,
            status=PaymentStatus.PENDING.value,
            metadata=request.metadata,
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        try:
            response = self.support.request(
                "GET", "transactions/verify_by_reference", params={"tx_ref": verification_id}
            )
        except httpx.HTTPError as e:
            logger.error(f"Flutterwave verification failed for {verification_id}: {e}")
            raise VerificationError(f"Flutterwave verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if data.get("status") != "success":
            raise VerificationError(
                data.get("message") or "Failed to verify Flutterwave transaction",
                provider=self.name,
            )

        result = data.get("data") or {}
        status = self.normalizer.normalize(result.get("status"), self.name)
        logger.info(f"Flutterwave verified {verification_id}: {status}")
        return VerificationResponse(
            reference=result.get("tx_ref", verification_id),
            status=status,
            amount=to_decimal(result.get("amount", 0)),
            currency=(result.get("currency") or "NGN").upper(),
            paid_at=parse_timestamp(result.get("created_at")) if status == PaymentStatus.SUCCESS.value else None,
            channel=result.get("payment_type"),
            card_type=dig(result, "card", "type"),
            bank=dig(result, "card", "issuer"),
            customer={
                "email": dig(result, "customer", "email"),
                "name": dig(result, "customer", "name"),
            },
            metadata=result.get("meta") or {},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        if not shared_secret_matches(self.webhook_secret, headers.get(SIGNATURE_HEADER)):
            logger.warning("Flutterwave webhook hash missing or invalid")
            return False
        payload = load_payload(body)
        if payload is None:
            return False
        return self.replay_guard.is_fresh(dig(payload, "data", "created_at"))

    def health_check(self) -> bool:
        return self.support.ping("GET", "banks/NG")

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "tx_ref") or dig(payload, "data", "txRef")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "payment_type")
