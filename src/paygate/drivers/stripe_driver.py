import logging
from typing import Any, Dict, Mapping, Optional, Union

import stripe

from ..cache import Cache
from ..config import ProviderConfig
from ..exceptions import ChargeError, ConfigurationError, VerificationError
from ..models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from ..registry.channels import OMIT, ChannelMapper
from ..registry.status import StatusNormalizer
from .base import Driver
from .security import ReplayGuard, parse_timestamp
from .support import DriverSupport, append_query_param, dig, from_minor_units, load_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeDriver(Driver):
    """
    Stripe Checkout Sessions via stripe-python. The API key is passed per call
    so several Stripe accounts can be configured side by side.
    """

    def __init__(
        self,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        name: str = "stripe",
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
            default_base_url="https://api.stripe.com",
            default_reference_prefix=self.default_reference_prefix,
        )
        self.support.require("secret_key")
        self.api_key: str = self.support.get("secret_key")
        self.webhook_secret: Optional[str] = self.support.get("webhook_secret")
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.replay_guard = ReplayGuard(webhook_tolerance)
        self.webhook_tolerance = webhook_tolerance

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        reference = request.reference or self.support.generate_reference()
        callback = self.support.callback_url(request.callback_url)
        if not callback:
            raise ConfigurationError(
                "Stripe requires a callback URL for its redirect flow; set callback_url",
                provider=self.name,
            )

        success_url = append_query_param(append_query_param(callback, "status", "success"), "reference", reference)
        cancel_url = append_query_param(append_query_param(callback, "status", "cancelled"), "reference", reference)
        channels = self.channel_mapper.map_channels(request.channels, self.name)
        payment_method_types = channels if channels is not OMIT and channels else ["card"]

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": payment_method_types,
            "line_items": [{
                "price_data": {
                    "currency": request.currency.lower(),
                    "product_data": {"name": request.description or "Payment"},
                    "unit_amount": request.amount_in_minor_units(),
                },
                "quantity": 1,
            }],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": reference,
            "customer_email": request.email,
            "metadata": {**request.metadata, "reference": reference},
        }
        if request.idempotency_key:
            params["idempotency_key"] = request.idempotency_key

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe charge failed for {reference}: {e}")
            raise ChargeError(f"Stripe charge failed: {e}", provider=self.name) from e

        logger.info(f"Stripe checkout session {session.id} created for {reference}")
        return ChargeResponse(
            reference=reference,
            authorization_url=session.url or "",
            access_code=session.id,
            status=PaymentStatus.PENDING.value,
            metadata={**request.metadata, "session_id": session.id},
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        """
        ``cs_`` ids are checkout sessions, ``pi_`` ids payment intents; anything
        else is treated as our reference and matched against recent sessions
        and intents.
        """
        try:
            if verification_id.startswith("cs_"):
                session = stripe.checkout.Session.retrieve(
                    verification_id, api_key=self.api_key, expand=["payment_intent"]
                )
                return self._from_session(_as_dict(session))
            if verification_id.startswith("pi_"):
                intent = stripe.PaymentIntent.retrieve(verification_id, api_key=self.api_key)
                return self._from_payment_intent(_as_dict(intent))

            sessions = stripe.checkout.Session.list(api_key=self.api_key, limit=20)
            for session in sessions.data:
                if session.get("client_reference_id") == verification_id:
                    full = stripe.checkout.Session.retrieve(
                        session.id, api_key=self.api_key, expand=["payment_intent"]
                    )
                    return self._from_session(_as_dict(full))

            intents = stripe.PaymentIntent.list(api_key=self.api_key, limit=20)
            for intent in intents.data:
                if (intent.get("metadata") or {}).get("reference") == verification_id:
                    return self._from_payment_intent(_as_dict(intent))
        except stripe.StripeError as e:
            logger.error(f"Stripe verification failed for {verification_id}: {e}")
            raise VerificationError(f"Stripe verification failed: {e}", provider=self.name) from e

        raise VerificationError(f"Payment not found for reference [{verification_id}]", provider=self.name)

    def _from_session(self, session: Dict[str, Any]) -> VerificationResponse:
        status = self.normalizer.normalize(session.get("payment_status"), self.name)
        if session.get("status") == "expired" and status != PaymentStatus.SUCCESS.value:
            status = PaymentStatus.FAILED.value
        intent = session.get("payment_intent")
        amount = session.get("amount_total")
        if amount is None and isinstance(intent, dict):
            amount = intent.get("amount")
        paid_at = parse_timestamp(session.get("created")) if status == PaymentStatus.SUCCESS.value else None
        methods = session.get("payment_method_types") or []
        return VerificationResponse(
            reference=session.get("client_reference_id") or session.get("id", ""),
            status=status,
            amount=from_minor_units(amount or 0),
            currency=(session.get("currency") or "usd").upper(),
            paid_at=paid_at,
            channel=",".join(methods) or None,
            customer={"email": session.get("customer_email") or dig(session, "customer_details", "email")},
            metadata=dict(session.get("metadata") or {}),
            provider=self.name,
        )

    def _from_payment_intent(self, intent: Dict[str, Any]) -> VerificationResponse:
        status = self.normalizer.normalize(intent.get("status"), self.name)
        metadata = dict(intent.get("metadata") or {})
        paid_at = parse_timestamp(intent.get("created")) if status == PaymentStatus.SUCCESS.value else None
        return VerificationResponse(
            reference=metadata.get("reference") or intent.get("id", ""),
            status=status,
            amount=from_minor_units(intent.get("amount") or 0),
            currency=(intent.get("currency") or "usd").upper(),
            paid_at=paid_at,
            channel=dig(intent, "payment_method_types", 0),
            customer={"email": intent.get("receipt_email")},
            metadata=metadata,
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature or not self.webhook_secret:
            logger.warning("Stripe webhook signature or secret missing")
            return False
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=signature,
                secret=self.webhook_secret,
                tolerance=self.webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Stripe webhook validation failed: {e}")
            return False
        payload = load_payload(body)
        if payload is None:
            return False
        return self.replay_guard.is_fresh(payload.get("created"))

    def health_check(self) -> bool:
        try:
            stripe.Balance.retrieve(api_key=self.api_key)
        except stripe.AuthenticationError:
            # bad credentials still prove the API answered
            return True
        except stripe.StripeError as e:
            logger.warning(f"Stripe health check failed: {e}")
            return e.http_status is not None and e.http_status < 500
        return True

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        obj = dig(payload, "data", "object") or {}
        return obj.get("client_reference_id") or dig(obj, "metadata", "reference")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        obj = dig(payload, "data", "object") or {}
        return obj.get("payment_status") or obj.get("status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return dig(payload, "data", "object", "payment_method_types", 0)
