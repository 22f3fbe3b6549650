"""Status, channel, provider-detection and driver registries."""

from .status import StatusNormalizer, DEFAULT_STATUS_MAP, PROVIDER_STATUS_MAPS
from .channels import ChannelMapper, OMIT, table_mapper
from .detector import ProviderDetector
from .factory import DriverFactory, pascal_case, convention_class_name

__all__ = [
    "StatusNormalizer",
    "DEFAULT_STATUS_MAP",
    "PROVIDER_STATUS_MAPS",
    "ChannelMapper",
    "OMIT",
    "table_mapper",
    "ProviderDetector",
    "DriverFactory",
    "pascal_case",
    "convention_class_name",
]
