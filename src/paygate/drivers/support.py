"""Shared scaffolding composed into every driver."""

import json
import logging
import secrets
import threading
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ..cache import Cache, InMemoryCache
from ..config import ProviderConfig
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_TTL = 300
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "HUF", "TWD"}


class DriverSupport:
    """
    Config validation, lazy HTTP client construction, reference generation and
    cached health probing for a single provider.
    """

    def __init__(
        self,
        name: str,
        config: Union[ProviderConfig, Mapping[str, Any]],
        *,
        cache: Optional[Cache] = None,
        health_ttl: int = DEFAULT_HEALTH_TTL,
        default_base_url: Optional[str] = None,
        default_headers: Optional[Dict[str, str]] = None,
        default_reference_prefix: Optional[str] = None,
    ):
        if not isinstance(config, ProviderConfig):
            config = ProviderConfig.model_validate(dict(config))
        self.name = name
        self.config = config
        self.cache = cache or InMemoryCache()
        self.health_ttl = health_ttl
        self.base_url = (config.base_url or default_base_url or "").rstrip("/")
        self.default_headers = dict(default_headers or {})
        self.reference_prefix = (
            config.reference_prefix or default_reference_prefix or name.upper()
        )
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()

    def require(self, *fields: str) -> None:
        """Fail fast when a required config field is missing or empty."""
        for field in fields:
            if not self.config.get(field):
                raise ConfigurationError(
                    f"{self.name} configuration is missing required field '{field}'",
                    provider=self.name,
                )

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = httpx.Client(
                        base_url=self.base_url,
                        timeout=self.config.timeout,
                        headers={
                            "Accept": "application/json",
                            "Content-Type": "application/json",
                            **self.default_headers,
                        },
                        verify=not self.config.testing_mode,
                    )
        return self._client

    def set_client(self, client: httpx.Client) -> None:
        self._client = client

    def request(
        self,
        method: str,
        url: str,
        *,
        idempotency_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        merged = dict(headers or {})
        if idempotency_key:
            merged.setdefault("Idempotency-Key", idempotency_key)
        return self.client.request(method, url, headers=merged, **kwargs)

    @staticmethod
    def parse_json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def generate_reference(self, prefix: Optional[str] = None) -> str:
        """``{PREFIX}_{unix_time}_{16 hex chars}``"""
        return f"{(prefix or self.reference_prefix).upper()}_{int(time.time())}_{secrets.token_hex(8)}"

    def health_cache_key(self) -> str:
        return f"payments.health.{self.name}"

    def cached_health_check(self, check: Callable[[], bool]) -> bool:
        return bool(self.cache.get_or_compute(self.health_cache_key(), self.health_ttl, check))

    def ping(self, method: str, url: str, **kwargs: Any) -> bool:
        """Any response below 500 counts as healthy."""
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{self.name} health check failed: {e}")
            return False
        healthy = response.status_code < 500
        if not healthy:
            logger.warning(f"{self.name} health check returned {response.status_code}")
        return healthy

    def supported_currencies(self) -> List[str]:
        return [currency.upper() for currency in self.config.currencies]

    def is_currency_supported(self, currency: str) -> bool:
        currencies = self.supported_currencies()
        return not currencies or currency.upper() in currencies

    def callback_url(self, request_callback: Optional[str]) -> Optional[str]:
        return request_callback or self.config.callback_url

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def dig(payload: Any, *path: Union[str, int]) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    current = payload
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int) and -len(current) <= key < len(current):
            current = current[key]
        else:
            return None
        if current is None:
            return None
    return current


def load_payload(body: bytes) -> Optional[Dict[str, Any]]:
    """Decode a webhook body; None when it is not a JSON object."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


def from_minor_units(value: Any) -> Decimal:
    try:
        return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


def format_amount(amount: Decimal, currency: str) -> str:
    """Major-unit amount string with the currency's number of decimals."""
    places = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    return str(amount.quantize(places, rounding=ROUND_HALF_UP))


def append_query_param(url: Optional[str], key: str, value: str) -> Optional[str]:
    if not url:
        return url
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query)))
