"""Payment orchestration: driver caching, fallback charging and verification."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .cache import Cache, InMemoryCache
from .config import PaymentsSettings
from .database.repository import TransactionStore
from .drivers.base import Driver
from .exceptions import DriverNotFoundError, PaymentError, ProviderAggregateError
from .models import (
    ChargeRequest,
    ChargeResponse,
    PaymentStatus,
    VerificationContext,
    VerificationResponse,
)
from .registry.detector import ProviderDetector
from .registry.factory import DriverFactory

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "payments_session_"
# Metadata keys that may hold the provider-side id on stored transactions
PROVIDER_ID_METADATA_KEYS = ("_provider_id", "session_id", "order_id")


@dataclass(frozen=True)
class ProviderAttempt:
    """Outcome of one provider in a fallback or verification loop."""
    provider: str
    error: str


def session_cache_key(reference: str) -> str:
    return f"{SESSION_KEY_PREFIX}{reference}"


def _aggregate(message: str, attempts: Sequence[ProviderAttempt]) -> ProviderAggregateError:
    return ProviderAggregateError(message, {attempt.provider: attempt.error for attempt in attempts})


class PaymentOrchestrator:
    """
    Entry point for charging and verifying payments across providers.

    All collaborators are passed in at construction; drivers are built lazily
    through the factory and cached for the orchestrator's lifetime.
    """

    def __init__(
        self,
        settings: PaymentsSettings,
        factory: Optional[DriverFactory] = None,
        *,
        cache: Optional[Cache] = None,
        store: Optional[TransactionStore] = None,
        detector: Optional[ProviderDetector] = None,
    ):
        self.settings = settings
        self.cache = cache or InMemoryCache()
        self.factory = factory or DriverFactory.with_builtin_drivers(
            cache=self.cache,
            health_ttl=settings.health_check.cache_ttl,
            webhook_tolerance=settings.webhook.tolerance,
        )
        self.store = store
        self.detector = detector or self._build_detector()
        self._drivers: Dict[str, Driver] = {}
        self._drivers_lock = threading.Lock()

    def _build_detector(self) -> ProviderDetector:
        detector = ProviderDetector()
        for name in self.settings.enabled_providers():
            prefix = self.factory.resolve_reference_prefix(name, self.settings.provider_config(name))
            detector.register_prefix(prefix, name)
        return detector

    @property
    def logging_enabled(self) -> bool:
        return self.settings.logging.enabled and self.store is not None

    # Drivers

    def driver(self, name: Optional[str] = None) -> Driver:
        """Cached driver for ``name`` (default provider when omitted)."""
        name = (name or self.settings.default or "").lower()
        if not name:
            raise DriverNotFoundError("No provider given and no default provider configured")
        driver = self._drivers.get(name)
        if driver is not None:
            return driver
        with self._drivers_lock:
            driver = self._drivers.get(name)
            if driver is None:
                config = self.settings.provider_config(name)
                if config is None or not config.enabled:
                    raise DriverNotFoundError(
                        f"Payment provider '{name}' is not configured or is disabled",
                        provider=name,
                    )
                driver = self.factory.create(name, config)
                self._drivers[name] = driver
        return driver

    def enabled_providers(self) -> List[str]:
        return self.settings.enabled_providers()

    def provider_chain(self, providers: Optional[Sequence[str]] = None) -> List[str]:
        chain = providers if providers else self.settings.provider_chain()
        return list(dict.fromkeys(name.lower() for name in chain if name))

    # Charge

    async def charge(self, request: ChargeRequest, providers: Optional[Sequence[str]] = None) -> ChargeResponse:
        """
        Try each provider in order until one accepts the charge.

        Raises:
            ProviderAggregateError: every provider failed or was skipped.
        """
        chain = self.provider_chain(providers)
        if not chain:
            raise ProviderAggregateError("No payment providers configured")

        attempts: List[ProviderAttempt] = []
        for name in chain:
            try:
                driver = self.driver(name)
            except PaymentError as e:
                logger.warning(f"Skipping provider {name}: {e}")
                attempts.append(ProviderAttempt(name, str(e)))
                continue

            if self.settings.health_check.enabled:
                healthy = await asyncio.to_thread(driver.get_cached_health_check)
                if not healthy:
                    logger.warning(f"Skipping provider {name}: failed health check")
                    attempts.append(ProviderAttempt(name, "skipped: provider failed health check"))
                    continue

            if not driver.is_currency_supported(request.currency):
                logger.info(f"Skipping provider {name}: currency {request.currency} not supported")
                attempts.append(ProviderAttempt(name, f"skipped: currency {request.currency} not supported"))
                continue

            try:
                response = await asyncio.to_thread(driver.charge, request)
            except PaymentError as e:
                logger.warning(f"Charge via {name} failed: {e}")
                attempts.append(ProviderAttempt(name, str(e)))
                continue

            logger.info(f"Charge {response.reference} created via {name}")
            await self._log_transaction(request, response)
            self._cache_session(response)
            return response

        raise _aggregate("All payment providers failed", attempts)

    async def _log_transaction(self, request: ChargeRequest, response: ChargeResponse) -> None:
        if not self.logging_enabled:
            return
        metadata: Dict[str, Any] = {**request.metadata, **response.metadata}
        if response.access_code:
            metadata["_provider_id"] = response.access_code
        try:
            await self.store.create({
                "reference": response.reference,
                "provider": response.provider,
                "provider_id": response.access_code,
                "status": PaymentStatus.PENDING.value,
                "amount": request.amount,
                "currency": request.currency,
                "email": request.email,
                "metadata": metadata,
                "customer": request.customer,
            })
        except Exception as e:
            logger.error(f"Failed to log transaction {response.reference}: {e}")

    def _cache_session(self, response: ChargeResponse) -> None:
        try:
            self.cache.put(
                session_cache_key(response.reference),
                {"provider": response.provider, "id": response.access_code},
                self.settings.session_cache_ttl,
            )
        except Exception as e:
            logger.warning(f"Failed to cache session for {response.reference}: {e}")

    # Verify

    async def resolve_verification_context(self, reference: str) -> Optional[VerificationContext]:
        """Cache, then transaction store, then reference-prefix heuristic."""
        try:
            cached = self.cache.get(session_cache_key(reference))
        except Exception as e:
            logger.warning(f"Session cache lookup failed for {reference}: {e}")
            cached = None
        if isinstance(cached, dict) and cached.get("provider"):
            return VerificationContext(cached["provider"], cached.get("id"))

        if self.logging_enabled:
            try:
                transaction = await self.store.find_by_reference(reference)
            except Exception as e:
                logger.error(f"Transaction lookup failed for {reference}: {e}")
                transaction = None
            if transaction is not None:
                metadata = transaction.meta
                provider_id = transaction.provider_id or next(
                    (metadata[key] for key in PROVIDER_ID_METADATA_KEYS if metadata.get(key)), None
                )
                return VerificationContext(transaction.provider, provider_id)

        detected = self.detector.detect_from_reference(reference)
        if detected:
            return VerificationContext(detected)
        return None

    async def verify(self, reference: str, provider: Optional[str] = None) -> VerificationResponse:
        """
        Re-check a transaction.

        With an explicit provider only that provider is queried. Otherwise the
        resolved provider is tried first, then every other enabled provider.

        Raises:
            DriverNotFoundError: the explicit provider is unknown or disabled.
            ProviderAggregateError: every candidate failed.
        """
        if provider:
            name = provider.lower()
            self.driver(name)
            # a stored provider id only applies when it belongs to the pinned provider
            resolved = await self.resolve_verification_context(reference)
            provider_id = resolved.provider_id if resolved and resolved.provider == name else None
            candidates = [VerificationContext(name, provider_id)]
        else:
            context = await self.resolve_verification_context(reference)
            candidates = [context] if context else []
            tried = {context.provider} if context else set()
            candidates += [VerificationContext(name) for name in self.enabled_providers() if name not in tried]

        attempts: List[ProviderAttempt] = []
        for context in candidates:
            try:
                driver = self.driver(context.provider)
                verification_id = driver.resolve_verification_id(reference, context.provider_id)
                response = await asyncio.to_thread(driver.verify, verification_id)
            except PaymentError as e:
                logger.warning(f"Verification of {reference} via {context.provider} failed: {e}")
                attempts.append(ProviderAttempt(context.provider, str(e)))
                continue

            logger.info(f"Verified {reference} via {context.provider}: {response.status}")
            await self._update_transaction(reference, response)
            return response

        raise _aggregate(f"Unable to verify payment {reference}", attempts)

    async def _update_transaction(self, reference: str, response: VerificationResponse) -> None:
        if not self.logging_enabled:
            return
        fields: Dict[str, Any] = {"status": response.status}
        if response.channel:
            fields["channel"] = response.channel
        if response.is_successful():
            fields["paid_at"] = response.paid_at or datetime.now(timezone.utc)
        try:
            await self.store.update(reference, fields)
        except Exception as e:
            logger.error(f"Failed to update transaction {reference}: {e}")
