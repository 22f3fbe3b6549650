"""Repository and store layer for transaction persistence."""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import PaymentStatus
from .locks import KeyedLock
from .models import PaymentTransaction

logger = logging.getLogger(__name__)

# Columns callers may set through update(); metadata and customer go through properties
UPDATABLE_FIELDS = {"provider", "provider_id", "status", "amount", "currency", "email", "channel", "paid_at",
                    "webhook_status"}


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Columns are timezone-naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TransactionRepository:
    """Repository for PaymentTransaction CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        reference: str,
        provider: str,
        amount: Decimal,
        currency: str,
        status: str = PaymentStatus.PENDING.value,
        provider_id: Optional[str] = None,
        email: Optional[str] = None,
        channel: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """Create a new transaction record.

        Args:
            reference: Merchant-visible unique reference.
            provider: Provider that accepted the charge.
            amount: Amount in major units.
            currency: Three-letter currency code.
            status: Initial canonical status.
            provider_id: Provider-issued session/order id.
            email: Payer email.
            channel: Payment channel, when known.
            metadata: Optional metadata dictionary.
            customer: Optional customer dictionary.

        Returns:
            Created PaymentTransaction instance.
        """
        transaction = PaymentTransaction(
            reference=reference,
            provider=provider,
            provider_id=provider_id,
            amount=amount,
            currency=currency.upper(),
            status=status,
            email=email,
            channel=channel,
        )
        transaction.meta = metadata or {}
        if customer:
            transaction.customer = customer

        self.session.add(transaction)
        await self.session.flush()

        logger.info(f"Created transaction {reference} via {provider} with status {status}")
        return transaction

    async def get_by_reference(self, reference: str, for_update: bool = False) -> Optional[PaymentTransaction]:
        """Get a transaction by reference.

        Args:
            reference: Transaction reference.
            for_update: Lock the row until the surrounding transaction ends.

        Returns:
            PaymentTransaction instance if found, None otherwise.
        """
        query = select(PaymentTransaction).where(PaymentTransaction.reference == reference)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def update(self, transaction: PaymentTransaction, fields: Mapping[str, Any]) -> PaymentTransaction:
        """Apply column updates to a transaction.

        Args:
            transaction: PaymentTransaction instance to update.
            fields: Column values; ``metadata`` is merged into existing metadata.

        Returns:
            Updated PaymentTransaction instance.
        """
        for key, value in fields.items():
            if key == "metadata":
                transaction.meta = {**transaction.meta, **(value or {})}
            elif key == "customer":
                transaction.customer = value
            elif key == "paid_at":
                transaction.paid_at = to_naive_utc(value)
            elif key in UPDATABLE_FIELDS:
                setattr(transaction, key, value)
            else:
                logger.warning(f"Ignoring unknown transaction field '{key}'")
        transaction.updated_at = datetime.utcnow()
        await self.session.flush()
        return transaction

    async def list_by_status(self, status: str, limit: int = 100, offset: int = 0) -> List[PaymentTransaction]:
        """List transactions in a given status, newest first."""
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.status == status)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class TransactionStore:
    """
    Session-owning facade over TransactionRepository used by the orchestrator
    and the webhook processor. Each call runs in its own database transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._locks = KeyedLock()

    async def create(self, record: Mapping[str, Any]) -> PaymentTransaction:
        async with self.session_factory() as session:
            async with session.begin():
                return await TransactionRepository(session).create(**record)

    async def find_by_reference(self, reference: str) -> Optional[PaymentTransaction]:
        async with self.session_factory() as session:
            return await TransactionRepository(session).get_by_reference(reference)

    async def update(self, reference: str, fields: Mapping[str, Any]) -> bool:
        """Returns False when no transaction has this reference."""
        async with self.session_factory() as session:
            async with session.begin():
                repository = TransactionRepository(session)
                transaction = await repository.get_by_reference(reference)
                if transaction is None:
                    logger.info(f"No transaction {reference} to update")
                    return False
                await repository.update(transaction, fields)
        logger.info(f"Updated transaction {reference}: {', '.join(fields)}")
        return True

    async def apply_status_update(
        self,
        reference: str,
        status: str,
        channel: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record a webhook-reported ``status`` under a per-reference lock.

        Returns True when this is the first webhook to report ``status`` for
        the transaction, so redelivered or concurrent webhooks for the same
        outcome are reported once. Deduplication keys on ``webhook_status``
        rather than ``status``, so a verify that already stored the outcome
        does not swallow the webhook.
        """
        async with self._locks.acquire(reference):
            async with self.session_factory() as session:
                async with session.begin():
                    repository = TransactionRepository(session)
                    transaction = await repository.get_by_reference(reference, for_update=True)
                    if transaction is None:
                        logger.warning(f"Webhook for unknown transaction {reference}")
                        return False
                    if transaction.webhook_status == status:
                        logger.info(f"Webhook for {reference} already reported {status}; skipping")
                        return False

                    previous = transaction.status
                    fields: Dict[str, Any] = {"status": status, "webhook_status": status}
                    if channel:
                        fields["channel"] = channel
                    if status == PaymentStatus.SUCCESS.value and transaction.paid_at is None:
                        fields["paid_at"] = paid_at or datetime.now(timezone.utc)
                    await repository.update(transaction, fields)

        logger.info(f"Transaction {reference} webhook reported {status} (was {previous})")
        return True
