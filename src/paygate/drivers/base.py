from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..models import ChargeRequest, ChargeResponse, VerificationResponse

if TYPE_CHECKING:
    from .support import DriverSupport


class Driver(ABC):
    """
    Contract every provider integration implements. Drivers are synchronous and
    perform blocking network calls with a per-call timeout; shared scaffolding
    lives in the composed ``support`` helper.
    """

    support: "DriverSupport"

    #: Reference prefix used when config does not set ``reference_prefix``.
    default_reference_prefix: Optional[str] = None

    @property
    def name(self) -> str:
        return self.support.name

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeResponse:
        """Create a charge. Raises ChargeError on provider failure."""
        raise NotImplementedError

    @abstractmethod
    def verify(self, verification_id: str) -> VerificationResponse:
        """Re-check a transaction. Raises VerificationError on provider failure."""
        raise NotImplementedError

    @abstractmethod
    def validate_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        """
        Check signature and replay window of a raw webhook. ``headers`` keys are
        lower-cased. Never raises for malformed input.
        """
        raise NotImplementedError

    @abstractmethod
    def health_check(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def resolve_verification_id(self, reference: str, provider_id: Optional[str]) -> str:
        """Pick the identifier this provider's verify call expects."""
        raise NotImplementedError

    @abstractmethod
    def extract_webhook_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def extract_webhook_status(self, payload: Dict[str, Any]) -> Optional[str]:
        """Provider-native status; the caller normalizes it."""
        raise NotImplementedError

    @abstractmethod
    def extract_webhook_channel(self, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def get_cached_health_check(self) -> bool:
        return self.support.cached_health_check(self.health_check)

    def supported_currencies(self) -> List[str]:
        return self.support.supported_currencies()

    def is_currency_supported(self, currency: str) -> bool:
        return self.support.is_currency_supported(currency)
