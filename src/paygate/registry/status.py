"""Maps provider-native status vocabulary onto the canonical payment states."""

import logging
from typing import Dict, Iterable, Mapping, Optional

from ..models import PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_STATUS_MAP: Dict[str, Iterable[str]] = {
    PaymentStatus.SUCCESS.value: (
        "SUCCESS", "SUCCEEDED", "SUCCESSFUL", "COMPLETED", "COMPLETE",
        "PAID", "OVERPAID", "CAPTURED",
    ),
    PaymentStatus.FAILED.value: (
        "FAILED", "FAILURE", "REJECTED", "DECLINED", "DENIED", "EXPIRED",
        "ABANDONED", "ERROR", "REVERSED",
    ),
    PaymentStatus.CANCELLED.value: ("CANCELLED", "CANCELED", "VOIDED"),
    PaymentStatus.PENDING.value: (
        "PENDING", "PROCESSING", "PARTIALLY_PAID", "CREATED", "SAVED", "APPROVED",
        "PAYER_ACTION_REQUIRED", "REQUIRES_ACTION", "REQUIRES_PAYMENT_METHOD",
        "REQUIRES_CONFIRMATION", "REQUIRES_CAPTURE", "ONGOING", "QUEUED", "OPEN", "UNPAID",
    ),
}

PROVIDER_STATUS_MAPS: Dict[str, Dict[str, Iterable[str]]] = {
    "paypal": {
        PaymentStatus.SUCCESS.value: ("PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"),
        PaymentStatus.FAILED.value: ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"),
        PaymentStatus.PENDING.value: ("CHECKOUT.ORDER.APPROVED", "PAYMENT.CAPTURE.PENDING"),
        PaymentStatus.CANCELLED.value: ("CHECKOUT.ORDER.VOIDED",),
    },
    "stripe": {
        PaymentStatus.SUCCESS.value: ("PAID", "NO_PAYMENT_REQUIRED"),
        PaymentStatus.PENDING.value: ("UNPAID",),
    },
    "square": {
        PaymentStatus.PENDING.value: ("APPROVED",),
    },
    "mollie": {
        PaymentStatus.PENDING.value: ("AUTHORIZED",),
    },
    "nowpayments": {
        PaymentStatus.SUCCESS.value: ("FINISHED",),
        PaymentStatus.PENDING.value: ("WAITING", "CONFIRMING", "CONFIRMED", "SENDING", "PARTIALLY_PAID"),
        PaymentStatus.FAILED.value: ("FAILED", "EXPIRED", "REFUNDED"),
    },
}


def _invert(mapping: Mapping[str, Iterable[str]]) -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for canonical, tokens in mapping.items():
        if canonical not in PaymentStatus.values():
            raise ValueError(f"'{canonical}' is not a canonical payment status")
        for token in tokens:
            lookup[token.strip().upper()] = canonical
    return lookup


class StatusNormalizer:
    """
    Total, idempotent status normalization.

    Provider overrides are consulted before the default table. Unknown tokens
    are lowercased and returned as-is so unseen statuses never break callers.
    """

    def __init__(
        self,
        default_map: Optional[Mapping[str, Iterable[str]]] = None,
        provider_maps: Optional[Mapping[str, Mapping[str, Iterable[str]]]] = None,
    ):
        self._default = _invert(DEFAULT_STATUS_MAP if default_map is None else default_map)
        self._providers: Dict[str, Dict[str, str]] = {}
        maps = PROVIDER_STATUS_MAPS if provider_maps is None else provider_maps
        for provider, mapping in maps.items():
            self.register(provider, mapping)

    def register(self, provider: str, mapping: Mapping[str, Iterable[str]]) -> None:
        """Add or extend the override table for ``provider``."""
        self._providers.setdefault(provider.lower(), {}).update(_invert(mapping))

    def normalize(self, status: Optional[str], provider: Optional[str] = None) -> str:
        if status is None:
            return PaymentStatus.PENDING.value
        token = str(status).strip()
        if not token:
            return PaymentStatus.PENDING.value
        if token.lower() in PaymentStatus.values():
            return token.lower()

        key = token.upper()
        if provider:
            override = self._providers.get(provider.lower(), {}).get(key)
            if override:
                return override
        canonical = self._default.get(key)
        if canonical:
            return canonical

        logger.debug(f"Unmapped status '{token}' from provider {provider or 'unknown'}")
        return token.lower()

    def is_canonical(self, status: str) -> bool:
        return status in PaymentStatus.values()
