"""Infers the provider behind a reference from its prefix."""

import logging
from typing import Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class ProviderDetector:
    """
    Maps reference prefixes to provider names.

    A prefix only matches when it is immediately followed by the delimiter, so
    ``MONACO_123`` never resolves to a provider prefixed ``MON``.
    """

    def __init__(self, prefixes: Optional[Mapping[str, str]] = None, delimiter: str = "_"):
        self.delimiter = delimiter
        self._prefixes: Dict[str, str] = {}
        for prefix, provider in (prefixes or {}).items():
            self.register_prefix(prefix, provider)

    @classmethod
    def for_providers(cls, providers: Iterable[str], delimiter: str = "_") -> "ProviderDetector":
        """Detector whose prefixes are the upper-cased provider names."""
        return cls({name.upper(): name for name in providers}, delimiter=delimiter)

    def register_prefix(self, prefix: str, provider: str) -> None:
        prefix = prefix.strip().upper().rstrip(self.delimiter)
        if not prefix:
            raise ValueError("prefix must not be empty")
        self._prefixes[prefix] = provider
        logger.debug(f"Registered reference prefix {prefix} for {provider}")

    def prefixes(self) -> Dict[str, str]:
        return dict(self._prefixes)

    def detect_from_reference(self, reference: Optional[str]) -> Optional[str]:
        if not reference:
            return None
        candidate = reference.strip().upper()
        # longest prefix wins so FLW_X_ beats FLW_ when both are registered
        for prefix in sorted(self._prefixes, key=len, reverse=True):
            if candidate.startswith(prefix + self.delimiter):
                return self._prefixes[prefix]
        return None
