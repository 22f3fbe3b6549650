# paygate package
__version__ = "0.1.0"

from .models import (
    ChargeRequest,
    ChargeResponse,
    VerificationResponse,
    VerificationContext,
    PaymentStatus,
    PaymentChannel,
)
from .exceptions import (
    PaymentError,
    ConfigurationError,
    ChargeError,
    VerificationError,
    WebhookAuthError,
    ProviderAggregateError,
    DriverNotFoundError,
)
from .config import PaymentsSettings, ProviderConfig
from .cache import Cache, InMemoryCache, RedisCache, create_cache
from .registry import (
    StatusNormalizer,
    ChannelMapper,
    ProviderDetector,
    DriverFactory,
)
from .orchestrator import PaymentOrchestrator
