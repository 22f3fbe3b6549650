"""Canonical request, response and status models shared by every driver."""

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_AMOUNT = Decimal("999999999.99")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PaymentStatus(str, Enum):
    """Canonical payment states."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    CANCELLED = "cancelled"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


class PaymentChannel(str, Enum):
    """Canonical payment channel vocabulary."""
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"
    MOBILE_MONEY = "mobile_money"
    QR_CODE = "qr_code"


# Canonical models
class ChargeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(gt=0, le=MAX_AMOUNT)
    currency: str
    email: str
    reference: Optional[str] = None
    callback_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    channels: Optional[List[str]] = None
    customer: Optional[Dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a 3-letter ISO-4217 code")
        return value

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("email must be a valid email address")
        return value

    @field_validator("reference", "idempotency_key")
    @classmethod
    def _reject_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("must not be blank")
        return value

    def amount_in_minor_units(self) -> int:
        """Amount in cents (kobo, pence ...), rounded half-up."""
        return int((self.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ChargeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: str
    authorization_url: str
    access_code: Optional[str] = None  # provider-issued session/order id
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    provider: str


class VerificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: str
    status: str  # canonical
    amount: Decimal
    currency: str
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    card_type: Optional[str] = None
    bank: Optional[str] = None
    customer: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    provider: str

    def is_successful(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value

    def is_failed(self) -> bool:
        return self.status == PaymentStatus.FAILED.value

    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value


@dataclass(frozen=True)
class VerificationContext:
    """Provider and provider-side id needed to re-check a reference."""
    provider: str
    provider_id: Optional[str] = None
