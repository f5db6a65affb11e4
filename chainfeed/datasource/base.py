"""
Base provider interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from chainfeed.models import (
    ProviderCapabilities,
    ProviderHealth,
    ProviderResponse,
    RequestOptions,
)
from chainfeed.services.client import ServiceClient
from chainfeed.services.errors import ConfigurationError, ServiceError, normalize_error


class BaseProvider(ABC):
    """
    Abstract base class for all data providers.

    All providers should:
    - Declare the fields they can supply in ``capabilities``
    - Use ServiceClient for HTTP requests (caching, circuit breaker, errors)
    - Return ProviderResponse rather than raising for upstream failures
    """

    name: str
    version: str = "1.0.0"
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self, client: ServiceClient | None = None):
        self.client = client
        self.config: dict[str, Any] = {}
        self._owns_client = False
        self._initialized = False
        self._destroyed = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, config: dict[str, Any] | None = None) -> None:
        """Apply configuration and run the provider's setup hook."""
        if self._initialized:
            raise ConfigurationError(
                f"Provider {self.name} already initialized", service_id=self.name
            )
        self.config = dict(config or {})
        await self.on_initialize()
        self._initialized = True
        self._destroyed = False
        logger.debug(f"Provider {self.name} initialized")

    async def destroy(self) -> None:
        """Release resources. Safe to call more than once."""
        if self._destroyed:
            return
        await self.on_destroy()
        if self._owns_client and self.client is not None:
            await self.client.close()
            self.client = None
        self._destroyed = True
        self._initialized = False

    async def on_initialize(self) -> None:
        """Hook for subclasses; runs inside ``initialize``."""

    async def on_destroy(self) -> None:
        """Hook for subclasses; runs inside ``destroy``."""

    @abstractmethod
    async def health_check(self) -> ProviderHealth:
        """Probe the upstream."""
        ...

    @abstractmethod
    async def get_token_data(
        self, asset_unit: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        """Return the subset of token fields this provider knows."""
        ...

    @abstractmethod
    async def get_wallet_data(
        self, address: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        """Return the subset of wallet fields this provider knows."""
        ...

    def supports(self, feature: str) -> bool:
        """Capability query for the optional extensions below."""
        declared = getattr(self.capabilities.features, feature, False)
        if not declared:
            return False
        if feature == "batch":
            return isinstance(self, BatchTokenDataProvider)
        if feature == "historical":
            return isinstance(self, HistoricalTokenDataProvider)
        return True

    def is_configured(self) -> bool:
        return True

    # Response helpers

    def ok(
        self,
        data: dict[str, Any],
        observed_at: dict[str, datetime] | None = None,
    ) -> ProviderResponse:
        return ProviderResponse(
            success=True, provider=self.name, data=data, observed_at=observed_at
        )

    def fail(self, error: BaseException | str) -> ProviderResponse:
        if isinstance(error, str):
            return ProviderResponse(success=False, provider=self.name, error=error)
        err: ServiceError = normalize_error(error, self.name)
        return ProviderResponse(
            success=False,
            provider=self.name,
            error=err.message,
            error_category=err.category,
            retryable=err.retryable,
        )

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ConfigurationError(
                f"Provider {self.name} not initialized", service_id=self.name
            )


@runtime_checkable
class BatchTokenDataProvider(Protocol):
    """Providers that can fetch several asset units in one call."""

    async def get_token_data_batch(
        self, asset_units: list[str], options: RequestOptions | None = None
    ) -> ProviderResponse:
        """``data`` maps each asset unit to its partial token record."""
        ...


@runtime_checkable
class HistoricalTokenDataProvider(Protocol):
    """Providers with a price/volume history endpoint."""

    async def get_token_data_historical(
        self,
        asset_unit: str,
        start: datetime,
        end: datetime,
        options: RequestOptions | None = None,
    ) -> ProviderResponse:
        """``data["points"]`` lists ``{timestamp, price, market_cap, volume}`` dicts."""
        ...
