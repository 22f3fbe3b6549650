import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, VerificationError
from ..models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from ..registry.channels import ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, hmac_hex_matches, parse_timestamp
from .support import DriverSupport, append_query_param, load_payload, to_decimal

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-nowpayments-sig"


def canonical_body(payload: Dict[str, Any]) -> bytes:
    """IPN signatures cover the key-sorted, whitespace-free JSON encoding."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


class NowPaymentsDriver(Driver):
    """
    NOWPayments hosted invoices for crypto payments.

    Charges create an invoice whose ``order_id`` is our reference. IPN
    callbacks are signed with HMAC-SHA512 over the key-sorted body, keyed with
    the IPN secret.
    """

    default_reference_prefix = "NOW"

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "nowpayments",
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
            default_base_url="https://api.nowpayments.io",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("api_key")
        self.ipn_secret: Optional[str] = self.support.get("ipn_secret")
        self.support.default_headers["x-api-key"] = self.support.get("api_key")
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        return_url = append_query_param(self.support.callback_url(request.callback_url), "reference", reference)
        payload = {
            "price_amount": float(request.amount),
            "price_currency": request.currency.lower(),
            "order_id": reference,
            "order_description": request.description or "Payment for services",
            "customer_email": request.email,
            "ipn_callback_url": self.support.get("ipn_callback_url") or return_url,
            "success_url": return_url,
            "cancel_url": return_url,
        }

        try:
            response = self.support.request(
                "POST",
                "/v1/invoice",
                json={key: value for key, value in payload.items() if value is not None},
                idempotency_key=request.idempotency_key,
            )
        except httpx.HTTPError as e:
            logger.error(f"NOWPayments charge failed for {reference}: {e}")
            raise ChargeError(f"NOWPayments charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("id") or not data.get("invoice_url"):
            raise ChargeError(
                data.get("message") or "Failed to initialize NOWPayments invoice",
                provider=self.name,
            )

        invoice_id = str(data["id"])
        logger.info(f"NOWPayments invoice {invoice_id} created for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=data["invoice_url"],
            access_code=invoice_id,
            status=PaymentStatus.PENDING.value,
            metadata={**request.metadata, "invoice_id": invoice_id},
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        try:
            response = self.support.request("GET", f"/v1/payment/{verification_id}")
        except httpx.HTTPError as e:
            logger.error(f"NOWPayments verification failed for {verification_id}: {e}")
            raise VerificationError(f"NOWPayments verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("payment_id"):
            raise VerificationError(
                data.get("message") or "Failed to verify NOWPayments payment",
                provider=self.name,
            )

        status = self.normalizer.normalize(data.get("payment_status"), self.name)
        logger.info(f"NOWPayments verified {verification_id}: {status}")
        return VerificationResponse(
            reference=data.get("order_id") or verification_id,
            status=status,
            amount=to_decimal(data.get("price_amount", 0)),
            currency=(data.get("price_currency") or "USD").upper(),
            paid_at=parse_timestamp(data.get("updated_at")) if status == PaymentStatus.SUCCESS.value else None,
            channel=data.get("pay_currency"),
            metadata={
                "payment_id": data["payment_id"],
                "pay_currency": data.get("pay_currency"),
                "pay_amount": data.get("pay_amount"),
                "actually_paid": data.get("actually_paid"),
                "pay_address": data.get("pay_address"),
            },
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            logger.warning("NOWPayments webhook signature missing")
            return False
        if not self.ipn_secret:
            logger.warning("NOWPayments ipn_secret is not configured")
            return False

        payload = load_payload(body)
        if payload is None:
            return False
        if not hmac_hex_matches(self.ipn_secret, canonical_body(payload), signature, hashlib.sha512):
            logger.warning("NOWPayments webhook signature mismatch")
            return False
        return self.replay_guard.is_fresh(payload.get("updated_at") or payload.get("created_at"))

    def health_check(self) -> bool:
        return self.support.ping("GET", "/v1/status")

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("order_id") or payload.get("payment_id")
        return str(reference) if reference is not None else None

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("payment_status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("pay_currency")
