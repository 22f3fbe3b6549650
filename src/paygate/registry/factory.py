"""Resolves provider names to driver classes and constructs drivers."""

import importlib
import logging
import re
from types import ModuleType
from typing import Callable, Dict, Mapping, Optional, Type

from ..cache import Cache
from ..config import ProviderConfig
from ..drivers.base import Driver
from ..exceptions import ConfigurationError, DriverNotFoundError
from .channels import ChannelMapper
from .status import StatusNormalizer

logger = logging.getLogger(__name__)

DriverConstructor = Callable[..., Driver]

# Brand casings that a plain capitalize() gets wrong.
SPECIAL_CASINGS: Dict[str, str] = {
    "paypal": "PayPal",
    "nowpayments": "NowPayments",
    "opay": "OPay",
}


def pascal_case(provider: str) -> str:
    key = provider.strip().lower()
    if key in SPECIAL_CASINGS:
        return SPECIAL_CASINGS[key]
    return "".join(part.capitalize() for part in re.split(r"[_\-\s]+", key) if part)


def convention_class_name(provider: str) -> str:
    return f"{pascal_case(provider)}Driver"


def import_string(path: str) -> object:
    """Import ``package.module.Attribute``; raises ImportError on failure."""
    module_path, _, attribute = path.rpartition(".")
    if not module_path:
        raise ImportError(f"'{path}' is not a dotted path")
    module = importlib.import_module(module_path)
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise ImportError(f"Module '{module_path}' has no attribute '{attribute}'") from e


class DriverFactory:
    """
    Driver registry.

    Resolution order for a provider name:
        1. a constructor registered under that name
        2. the configured ``driver_class`` dotted path
        3. the ``{PascalCase}Driver`` convention inside the drivers namespace
        4. the configured ``driver`` value taken literally as a dotted path
    """

    def __init__(
        self,
        constructors: Optional[Mapping[str, DriverConstructor]] = None,
        *,
        namespace: Optional[ModuleType] = None,
        cache: Optional[Cache] = None,
        normalizer: Optional[StatusNormalizer] = None,
        channel_mapper: Optional[ChannelMapper] = None,
        health_ttl: int = 300,
        webhook_tolerance: int = 300,
    ):
        self._constructors: Dict[str, DriverConstructor] = {}
        for name, constructor in (constructors or {}).items():
            self.register(name, constructor)
        self._namespace = namespace
        self.cache = cache
        self.normalizer = normalizer or StatusNormalizer()
        self.channel_mapper = channel_mapper or ChannelMapper()
        self.health_ttl = health_ttl
        self.webhook_tolerance = webhook_tolerance

    @classmethod
    def with_builtin_drivers(cls, **kwargs) -> "DriverFactory":
        from ..drivers import BUILTIN_DRIVERS

        return cls(BUILTIN_DRIVERS, **kwargs)

    def register(self, name: str, constructor: DriverConstructor) -> None:
        self._constructors[name.lower()] = constructor
        logger.debug(f"Registered driver constructor for {name}")

    def is_registered(self, name: str) -> bool:
        return name.lower() in self._constructors

    @property
    def namespace(self) -> ModuleType:
        if self._namespace is None:
            self._namespace = importlib.import_module("paygate.drivers")
        return self._namespace

    def resolve(self, name: str, config: Optional[ProviderConfig] = None) -> DriverConstructor:
        key = name.lower()
        config = config or ProviderConfig()

        constructor = self._constructors.get(key)
        if constructor is not None:
            return constructor

        if config.driver_class:
            try:
                return self._checked(import_string(config.driver_class), name)
            except ImportError as e:
                raise ConfigurationError(
                    f"Driver class '{config.driver_class}' for {name} could not be imported: {e}",
                    provider=name,
                ) from e

        class_name = convention_class_name(config.driver or name)
        candidate = getattr(self.namespace, class_name, None)
        if candidate is not None:
            return self._checked(candidate, name)

        if config.driver and "." in config.driver:
            try:
                return self._checked(import_string(config.driver), name)
            except ImportError:
                logger.warning(f"Literal driver path '{config.driver}' for {name} is not importable")

        raise DriverNotFoundError(
            f"No driver found for provider '{name}' (looked for {class_name})",
            provider=name,
        )

    def resolve_reference_prefix(self, name: str, config: Optional[ProviderConfig] = None) -> str:
        """Prefix a provider's references start with, without constructing the driver."""
        config = config or ProviderConfig()
        if config.reference_prefix:
            return config.reference_prefix.upper()
        try:
            constructor = self.resolve(name, config)
        except (DriverNotFoundError, ConfigurationError):
            return name.upper()
        default = getattr(constructor, "default_reference_prefix", None)
        return (default or name).upper()

    def create(self, name: str, config: Optional[ProviderConfig] = None) -> Driver:
        config = config or ProviderConfig()
        constructor = self.resolve(name, config)
        driver = constructor(
            config,
            name=name.lower(),
            cache=self.cache,
            normalizer=self.normalizer,
            channel_mapper=self.channel_mapper,
            health_ttl=self.health_ttl,
            webhook_tolerance=self.webhook_tolerance,
        )
        if not isinstance(driver, Driver):
            raise ConfigurationError(
                f"Constructor for {name} returned {type(driver).__name__}, not a Driver",
                provider=name,
            )
        logger.info(f"Created {type(driver).__name__} for provider {name}")
        return driver

    @staticmethod
    def _checked(candidate: object, name: str) -> DriverConstructor:
        if isinstance(candidate, type) and not issubclass(candidate, Driver):
            raise ConfigurationError(f"{candidate.__name__} does not implement Driver", provider=name)
        if not callable(candidate):
            raise ConfigurationError(f"Driver for {name} is not constructible", provider=name)
        return candidate
