"""
ProviderRegistry - The live provider map shared by router and aggregator.

Registration and unregistration are the only mutation paths.
"""

from typing import Iterator

from loguru import logger

from chainfeed.datasource.base import BaseProvider
from chainfeed.models import RecordKind
from chainfeed.services.errors import ConfigurationError


class ProviderRegistry:
    def __init__(self, providers: list[BaseProvider] | None = None):
        self._providers: dict[str, BaseProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: BaseProvider) -> None:
        if not getattr(provider, "name", None):
            raise ConfigurationError("Provider has no name")
        if provider.name in self._providers:
            logger.warning(f"Replacing registered provider: {provider.name}")
        self._providers[provider.name] = provider
        logger.debug(
            f"Registered provider {provider.name} "
            f"(token={len(provider.capabilities.token_data)}, "
            f"wallet={len(provider.capabilities.wallet_data)} fields)"
        )

    def unregister(self, name: str) -> BaseProvider | None:
        provider = self._providers.pop(name, None)
        if provider is not None:
            logger.debug(f"Unregistered provider: {name}")
        return provider

    def get(self, name: str) -> BaseProvider | None:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return list(self._providers)

    def providers_for_field(self, field: str, kind: RecordKind) -> list[BaseProvider]:
        """Providers whose declared capabilities include ``field``, in registration order."""
        return [
            p for p in self._providers.values() if field in p.capabilities.fields_for(kind)
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[BaseProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)
