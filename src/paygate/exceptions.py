"""Payment error taxonomy."""

from typing import Dict, Optional


class PaymentError(Exception):
    """Base class for payment domain errors."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ConfigurationError(PaymentError):
    """Raised when a driver or the orchestrator is misconfigured."""


class ChargeError(PaymentError):
    """Raised when a single provider fails to create a charge."""


class VerificationError(PaymentError):
    """Raised when a single provider fails to verify a transaction."""


class WebhookAuthError(PaymentError):
    """Raised when an inbound webhook fails signature or timestamp validation."""


class DriverNotFoundError(PaymentError):
    """Raised when an unknown or disabled provider is requested."""


class ProviderAggregateError(PaymentError):
    """Raised when every candidate provider failed.

    ``errors`` maps provider name to its failure message, in attempt order.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        details = "; ".join(f"{name}: {error}" for name, error in self.errors.items())
        return f"{self.message} ({details})"
