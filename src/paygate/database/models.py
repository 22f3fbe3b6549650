"""SQLAlchemy models for transaction persistence."""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..models import PaymentStatus


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentTransaction(Base):
    """One row per charge, keyed by the merchant-visible reference."""
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Provider-issued session/order/payment id, when verification needs one
    provider_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentStatus.PENDING.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Last status reported by a webhook; verify writes leave it alone
    webhook_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_payment_transactions_status", "status"),
        Index("ix_payment_transactions_provider", "provider"),
        Index("ix_payment_transactions_created_at", "created_at"),
    )

    # "metadata" is reserved on declarative classes
    @property
    def meta(self) -> Dict[str, Any]:
        """Get metadata as dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return {}

    @meta.setter
    def meta(self, value: Optional[Dict[str, Any]]) -> None:
        """Set metadata from dictionary."""
        self.metadata_json = json.dumps(value, default=str) if value is not None else None

    @property
    def customer(self) -> Optional[Dict[str, Any]]:
        if self.customer_json:
            return json.loads(self.customer_json)
        return None

    @customer.setter
    def customer(self, value: Optional[Dict[str, Any]]) -> None:
        self.customer_json = json.dumps(value, default=str) if value is not None else None

    def is_successful(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "reference": self.reference,
            "provider": self.provider,
            "provider_id": self.provider_id,
            "status": self.status,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "email": self.email,
            "channel": self.channel,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "webhook_status": self.webhook_status,
            "metadata": self.meta,
            "customer": self.customer,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
