"""Shared test fixtures and configuration."""

import os
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("PAYMENTS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from paygate.cache import InMemoryCache
from paygate.config import PaymentsSettings
from paygate.database import Base, TransactionStore, create_async_engine, create_session_factory
from paygate.drivers.base import Driver
from paygate.drivers.security import shared_secret_matches
from paygate.drivers.support import DriverSupport
from paygate.exceptions import ChargeError, VerificationError
from paygate.models import ChargeRequest, ChargeResponse, PaymentStatus, VerificationResponse
from paygate.orchestrator import PaymentOrchestrator
from paygate.registry import DriverFactory, ProviderDetector, StatusNormalizer


class FakeDriver(Driver):
    """In-memory driver whose behaviour is driven by its provider config.

    Recognised config keys: ``fail_charge``, ``fail_verify``, ``healthy``,
    ``verify_status`` and ``webhook_secret``.
    """

    def __init__(
        self,
        config,
        *,
        name: str = "fake",
        cache=None,
        normalizer=None,
        channel_mapper=None,
        health_ttl: int = 300,
        webhook_tolerance: int = 300,
    ):
        self.support = DriverSupport(name, config, cache=cache, health_ttl=health_ttl)
        self.normalizer = normalizer or StatusNormalizer()
        self.charge_calls = []
        self.verify_calls = []
        self.health_calls = 0

    def charge(self, request: ChargeRequest) -> ChargeResponse:
        self.charge_calls.append(request)
        if self.support.get("fail_charge"):
            raise ChargeError(f"{self.name} declined the charge", provider=self.name)
        reference = request.reference or self.support.generate_reference()
        return ChargeResponse(
            reference=reference,
            authorization_url=f"https://pay.example.com/{self.name}/{reference}",
            access_code=f"{self.name}_session_1",
            status=PaymentStatus.PENDING.value,
            metadata=request.metadata,
            provider=self.name,
        )

    def verify(self, verification_id: str) -> VerificationResponse:
        self.verify_calls.append(verification_id)
        if self.support.get("fail_verify"):
            raise VerificationError(f"{self.name} could not find {verification_id}", provider=self.name)
        return VerificationResponse(
            reference=verification_id,
            status=self.normalizer.normalize(self.support.get("verify_status", "success"), self.name),
            amount=Decimal("100.00"),
            currency="NGN",
            channel="card",
            provider=self.name,
        )

    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        return shared_secret_matches(self.support.get("webhook_secret"), headers.get("x-fake-signature"))

    def health_check(self) -> bool:
        self.health_calls += 1
        return bool(self.support.get("healthy", True))

    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        return provider_id or reference

    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("reference")

    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("status")

    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("channel")


def install_transport(driver: Driver, handler) -> list:
    """Route a driver's HTTP calls through ``handler``; returns the captured requests."""
    captured = []

    def record(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return handler(request)

    driver.support.set_client(httpx.Client(
        base_url=driver.support.base_url,
        headers=driver.support.default_headers,
        transport=httpx.MockTransport(record),
    ))
    return captured


def make_settings(providers: Dict[str, Dict[str, Any]], **overrides: Any) -> PaymentsSettings:
    """Settings with every name in ``providers`` resolved to FakeDriver."""
    names = list(providers)
    values: Dict[str, Any] = {
        "default": names[0] if names else None,
        "fallback": names[1:],
        "providers": providers,
    }
    values.update(overrides)
    return PaymentsSettings(**values)


def make_orchestrator(
    settings: PaymentsSettings,
    *,
    store: Optional[TransactionStore] = None,
    cache: Optional[InMemoryCache] = None,
    detector: Optional[ProviderDetector] = None,
) -> PaymentOrchestrator:
    cache = cache or InMemoryCache()
    factory = DriverFactory(
        {name: FakeDriver for name in settings.providers},
        cache=cache,
        health_ttl=settings.health_check.cache_ttl,
        webhook_tolerance=settings.webhook.tolerance,
    )
    return PaymentOrchestrator(settings, factory, cache=cache, store=store, detector=detector)


@pytest.fixture(autouse=True)
def isolate_celery_shared_tasks():
    """Keep Celery's process-wide shared-task registry from leaking tasks between test apps."""
    from celery import _state

    saved = set(_state._on_app_finalizers)
    yield
    _state._on_app_finalizers.clear()
    _state._on_app_finalizers.update(saved)


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    return TransactionStore(session_factory)


@pytest.fixture
def charge_request() -> ChargeRequest:
    return ChargeRequest(
        amount=Decimal("100.00"),
        currency="NGN",
        email="ada@example.com",
        reference="REF_1700000000_ab12cd34",
        callback_url="https://shop.example.com/callback",
        metadata={"order_id": "order_456"},
    )


@pytest.fixture
def settings() -> PaymentsSettings:
    return make_settings({
        "alpha": {"webhook_secret": "alpha-secret"},
        "beta": {"webhook_secret": "beta-secret"},
    })
