import hashlib
import logging
import threading
import time
from datetime import timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Type, Union

import httpx

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, PaymentError, VerificationError
from ..models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from ..registry.channels import OMIT, ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, hmac_hex_matches, parse_timestamp
from .support import DriverSupport, dig, load_payload, to_decimal

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "monnify-signature"
DEFAULT_PAYMENT_METHODS = ["CARD", "ACCOUNT_TRANSFER"]
# Monnify reports times in Lagos local time without an offset
MONNIFY_TZ = timezone(timedelta(hours=1))


class MonnifyDriver(Driver):
    """
    Monnify merchant transactions API.

    API key and secret are exchanged for a bearer token, cached until shortly
    before it expires. Webhooks carry an HMAC-SHA512 hex digest of the raw body
    keyed with the secret key.
    """

    default_reference_prefix = "MON"

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "monnify",
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
            default_base_url="https://api.monnify.com",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("api_key", "secret_key", "contract_code")
        self.secret_key: str = self.support.get("secret_key")
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    def _request_token(self) -> httpx.Response:
        return self.support.client.post(
            "/api/v1/auth/login",
            auth=(self.support.get("api_key"), self.secret_key),
        )

    def access_token(self, error_cls: Type[PaymentError] = ChargeError) -> str:
        with self._token_lock:
            if self._access_token and time.time() < self._token_expiry:
                return self._access_token
            try:
                response = self._request_token()
            except httpx.HTTPError as e:
                raise error_cls(f"Monnify authentication failed: {e}", provider=self.name) from e
            data = self.support.parse_json(response)
            token = dig(data, "responseBody", "accessToken")
            if not data.get("requestSuccessful") or not token:
                raise error_cls("Failed to authenticate with Monnify", provider=self.name)
            self._access_token = token
            self._token_expiry = time.time() + int(dig(data, "responseBody", "expiresIn") or 3600) - 60
            return token

    def _auth_headers(self, error_cls: Type[PaymentError] = ChargeError) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token(error_cls)}"}

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        customer = request.customer or {}
        channels = self.channel_mapper.map_channels(request.channels, self.name)
        payload: Dict[str, Any] = {
            "amount": float(request.amount),
            "customerName": customer.get("name", "Customer"),
            "customerEmail": request.email,
            "paymentReference": reference,
            "paymentDescription": request.description or "Payment",
            "currencyCode": request.currency,
            "contractCode": self.support.get("contract_code"),
            "redirectUrl": self.support.callback_url(request.callback_url),
            "paymentMethods": channels if channels is not OMIT and channels else DEFAULT_PAYMENT_METHODS,
            "metadata": request.metadata,
        }

        headers = self._auth_headers()
        try:
            response = self.support.request(
                "POST",
                "/api/v1/merchant/transactions/init-transaction",
                json=payload,
                headers=headers,
                idempotency_key=request.idempotency_key,
            )
        except httpx.HTTPError as e:
            logger.error(f"Monnify charge failed for {reference}: {e}")
            raise ChargeError(f"Monnify charge failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("requestSuccessful"):
            raise ChargeError(
                data.get("responseMessage") or "Failed to initialize Monnify transaction",
                provider=self.name,
            )

        result = data.get("responseBody") or {}
        logger.info(f"Monnify charge initialized for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=result.get("checkoutUrl", ""),
            access_code=result.get("transactionReference"),
            status=PaymentStatus.PENDING.value,
            metadata=request.metadata,
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        # Monnify's own references start with MNFY; anything else is ours
        if verification_id.upper().startswith("MNFY"):
            params = {"transactionReference": verification_id}
        else:
            params = {"paymentReference": verification_id}

        headers = self._auth_headers(VerificationError)
        try:
            response = self.support.request(
                "GET", "/api/v2/merchant/transactions/query", params=params, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Monnify verification failed for {verification_id}: {e}")
            raise VerificationError(f"Monnify verification failed: {e}", provider=self.name) from e

        data = self.support.parse_json(response)
        if not data.get("requestSuccessful"):
            raise VerificationError(
                data.get("responseMessage") or "Failed to verify Monnify transaction",
                provider=self.name,
            )

        result = data.get("responseBody") or {}
        status = self.normalizer.normalize(result.get("paymentStatus"), self.name)
        logger.info(f"Monnify verified {verification_id}: {status}")
        return VerificationResponse(
            reference=result.get("paymentReference", verification_id),
            status=status,
            amount=to_decimal(result.get("amountPaid", 0)),
            currency=(result.get("currencyCode") or "NGN").upper(),
            paid_at=parse_timestamp(result.get("paidOn"), MONNIFY_TZ),
            channel=result.get("paymentMethod"),
            customer={
                "email": dig(result, "customer", "email") or result.get("customerEmail"),
                "name": dig(result, "customer", "name") or result.get("customerName"),
            },
            metadata=result.get("metaData") or {},
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            logger.warning("Monnify webhook signature missing")
            return False
        if not hmac_hex_matches(self.secret_key, body, signature, hashlib.sha512):
            logger.warning("Monnify webhook signature mismatch")
            return False

        payload = load_payload(body)
        if payload is None:
            return False
        return self.replay_guard.is_fresh(parse_timestamp(dig(payload, "eventData", "paidOn"), MONNIFY_TZ))

    def health_check(self) -> bool:
        return self.support.ping("POST", "/api/v1/auth/login", auth=(self.support.get("api_key"), self.secret_key))

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "eventData", "paymentReference")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "eventData", "paymentStatus")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "eventData", "paymentMethod")
