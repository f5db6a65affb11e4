"""
ChainFeed - Public entry point.

Wires providers, the aggregation engine and a response cache together and
adds the operational surface around them: request statistics, lifecycle
events and periodic provider health checks.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from chainfeed.aggregator.engine import DataAggregator
from chainfeed.datasource.base import BaseProvider
from chainfeed.datasource.blockfrost import BlockfrostProvider
from chainfeed.datasource.coingecko import CoinGeckoProvider
from chainfeed.models import (
    TOKEN_FIELDS,
    WALLET_FIELDS,
    ConflictStrategy,
    ProviderHealth,
    RecordKind,
    RequestOptions,
    RoutingStrategy,
    TokenData,
    TokenDataRequest,
    UnifiedResponse,
    WalletData,
    WalletDataRequest,
    utcnow,
)
from chainfeed.priorities import FieldPriorityConfig, load_field_priorities
from chainfeed.services.cache import CacheBackend, CacheStats, MemoryCache
from chainfeed.services.cache_keys import CacheKeyBuilder
from chainfeed.services.errors import ConfigurationError
from chainfeed.settings import Settings, global_settings
from chainfeed.validation import validate_address, validate_asset_unit, validate_fields

DEFAULT_TOKEN_FIELDS = ["price", "market_cap", "volume_24h"]
DEFAULT_WALLET_FIELDS = ["balance", "portfolio"]

HEALTH_CHECK_JOB_ID = "provider_health_check"


class SDKEvent(str, Enum):
    PROVIDER_HEALTHY = "provider.healthy"
    PROVIDER_UNHEALTHY = "provider.unhealthy"
    CACHE_HIT = "cache.hit"
    CACHE_MISS = "cache.miss"
    CACHE_CLEARED = "cache.cleared"
    REQUEST_START = "request.start"
    REQUEST_COMPLETE = "request.complete"
    REQUEST_ERROR = "request.error"
    AGGREGATION_START = "aggregation.start"
    AGGREGATION_COMPLETE = "aggregation.complete"
    HEALTH_CHECK_COMPLETE = "health.check.complete"
    HEALTH_CHECK_ERROR = "health.check.error"
    SDK_INITIALIZED = "sdk.initialized"
    SDK_DESTROYED = "sdk.destroyed"


EventListener = Callable[[SDKEvent, Any], None]


@dataclass
class RequestStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    cached: int = 0


@dataclass
class ProviderUsage:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    last_used: datetime | None = None


@dataclass
class SDKStats:
    requests: RequestStats
    providers: dict[str, ProviderUsage]
    cache: CacheStats
    uptime: float = 0.0  # seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": {
                "total": self.requests.total,
                "successful": self.requests.successful,
                "failed": self.requests.failed,
                "cached": self.requests.cached,
            },
            "providers": {
                name: {
                    "requests": usage.requests,
                    "successes": usage.successes,
                    "failures": usage.failures,
                    "last_used": usage.last_used.isoformat() if usage.last_used else None,
                }
                for name, usage in self.providers.items()
            },
            "cache": self.cache.to_dict(),
            "uptime": round(self.uptime, 1),
        }


class ChainFeed:
    """
    Field-addressable Cardano data client.

    Usage:
        async with ChainFeed() as feed:
            response = await feed.get_token_data("lovelace", ["price", "name"])
            response.data.price, response.metadata.data_sources

    Providers come from ``settings`` unless passed explicitly; explicit
    providers that are not yet initialized are initialized with an empty
    config.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        providers: Iterable[BaseProvider] | None = None,
        field_priorities: FieldPriorityConfig | None = None,
        cache: CacheBackend | None = None,
        default_options: RequestOptions | None = None,
        health_check_enabled: bool | None = None,
        health_check_interval: int | None = None,
    ):
        self.settings = settings or global_settings
        self.priorities = field_priorities or load_field_priorities(
            self.settings.field_priorities_path
        )
        self.cache = cache or MemoryCache(
            default_ttl=self.settings.cache_default_ttl,
            max_size=self.settings.cache_max_size,
            cleanup_interval=self.settings.cache_cleanup_interval,
        )
        self.keys = CacheKeyBuilder()
        self.default_options = default_options or RequestOptions(
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
            retry_delay=self.settings.retry_delay,
        )
        self.health_check_enabled = (
            self.settings.health_check_enabled
            if health_check_enabled is None
            else health_check_enabled
        )
        self.health_check_interval = health_check_interval or self.settings.health_check_interval

        self._explicit_providers = list(providers) if providers is not None else None
        self._providers: dict[str, BaseProvider] = {}
        self._aggregator: DataAggregator | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._listeners: dict[SDKEvent, list[EventListener]] = {}
        self._initialized = False
        self._started_at: float | None = None

        self._requests = RequestStats()
        self._provider_usage: dict[str, ProviderUsage] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def aggregator(self) -> DataAggregator:
        self._ensure_initialized()
        return self._aggregator

    @property
    def providers(self) -> dict[str, BaseProvider]:
        return dict(self._providers)

    # Lifecycle

    async def initialize(self) -> None:
        """
        Initialize providers, build the aggregator and start health checks.

        Raises:
            ConfigurationError: If already initialized, a provider fails to
                initialize, or no provider is available
        """
        if self._initialized:
            raise ConfigurationError("ChainFeed already initialized")

        start = time.monotonic()
        try:
            await self._initialize_providers()
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(
                f"Failed to initialize providers: {e}", context={"error": str(e)}
            ) from e

        if not self._providers:
            raise ConfigurationError("No providers configured or enabled")

        self._aggregator = DataAggregator(
            self._providers.values(),
            self.priorities.field_priorities,
            default_timeout=self.settings.request_timeout,
        )

        if self.health_check_enabled:
            self._start_health_checks()

        self._initialized = True
        self._started_at = time.monotonic()

        init_ms = (time.monotonic() - start) * 1000
        logger.info(f"ChainFeed initialized with {list(self._providers)} in {init_ms:.0f}ms")
        self._emit(
            SDKEvent.SDK_INITIALIZED,
            {"providers": list(self._providers), "init_time": init_ms},
        )

    async def destroy(self) -> None:
        """Stop health checks, release providers and close the cache."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        for provider in self._providers.values():
            try:
                await provider.destroy()
            except Exception as e:
                logger.warning(f"Failed to destroy provider {provider.name}: {e}")

        try:
            await self.cache.close()
        except Exception as e:
            logger.warning(f"Failed to close cache: {e}")

        self._initialized = False
        logger.info("ChainFeed destroyed")
        self._emit(SDKEvent.SDK_DESTROYED, {})

    async def __aenter__(self) -> "ChainFeed":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.destroy()

    # Queries

    async def get_token_data(
        self,
        asset_unit: str,
        fields: list[str] | None = None,
        options: RequestOptions | None = None,
        strategy: ConflictStrategy | str = ConflictStrategy.PRIORITY,
    ) -> UnifiedResponse[TokenData]:
        """
        Token fields for ``asset_unit`` (``lovelace`` or policy id + asset name hex).

        Raises:
            ConfigurationError: If called before ``initialize``
            ValidationError: If the asset unit or field list is malformed
        """
        self._ensure_initialized()
        validate_asset_unit(asset_unit)
        fields = list(fields or DEFAULT_TOKEN_FIELDS)
        validate_fields(fields, self._known_fields(RecordKind.TOKEN))

        return await self._query(
            RecordKind.TOKEN,
            asset_unit,
            fields,
            options,
            ConflictStrategy(strategy),
        )

    async def get_wallet_data(
        self,
        address: str,
        fields: list[str] | None = None,
        options: RequestOptions | None = None,
        strategy: ConflictStrategy | str = ConflictStrategy.PRIORITY,
    ) -> UnifiedResponse[WalletData]:
        """
        Wallet fields for a bech32 payment ``address``.

        Raises:
            ConfigurationError: If called before ``initialize``
            ValidationError: If the address or field list is malformed
        """
        self._ensure_initialized()
        validate_address(address)
        fields = list(fields or DEFAULT_WALLET_FIELDS)
        validate_fields(fields, self._known_fields(RecordKind.WALLET))

        return await self._query(
            RecordKind.WALLET,
            address,
            fields,
            options,
            ConflictStrategy(strategy),
        )

    async def get_provider_health(self) -> dict[str, ProviderHealth]:
        """Probe every provider concurrently; a raising probe counts as unhealthy."""
        self._ensure_initialized()

        async def probe(provider: BaseProvider) -> ProviderHealth:
            try:
                return await provider.health_check()
            except Exception as e:
                return ProviderHealth(
                    provider=provider.name,
                    healthy=False,
                    consecutive_failures=1,
                    last_error=str(e),
                )

        results = await asyncio.gather(*(probe(p) for p in self._providers.values()))
        health = {h.provider: h for h in results}

        for name, status in health.items():
            event = SDKEvent.PROVIDER_HEALTHY if status.healthy else SDKEvent.PROVIDER_UNHEALTHY
            self._emit(event, status)
        return health

    async def get_stats(self) -> SDKStats:
        cache_stats = await self.cache.get_stats()
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return SDKStats(
            requests=RequestStats(**vars(self._requests)),
            providers={name: ProviderUsage(**vars(u)) for name, u in self._provider_usage.items()},
            cache=cache_stats,
            uptime=uptime,
        )

    # Configuration

    async def register_provider(
        self, provider: BaseProvider, config: dict[str, Any] | None = None
    ) -> None:
        """Add a provider; initializes it first when needed."""
        if not provider.initialized:
            await provider.initialize(config)
        self._providers[provider.name] = provider
        if self._aggregator is not None:
            self._aggregator.register_provider(provider)
        logger.info(f"Registered provider {provider.name}")

    def set_field_priority(self, field: str, providers: list[str]) -> None:
        self.priorities.field_priorities[field] = list(providers)
        if self._aggregator is not None:
            self._aggregator.set_field_priority(field, providers)

    async def clear_cache(self) -> None:
        await self.cache.clear()
        self._emit(SDKEvent.CACHE_CLEARED, {})

    # Events

    def add_event_listener(self, event: SDKEvent | str, listener: EventListener) -> None:
        self._listeners.setdefault(SDKEvent(event), []).append(listener)

    def remove_event_listener(self, event: SDKEvent | str, listener: EventListener) -> None:
        listeners = self._listeners.get(SDKEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    # Internals

    async def _query(
        self,
        kind: RecordKind,
        identifier: str,
        fields: list[str],
        options: RequestOptions | None,
        strategy: ConflictStrategy,
    ) -> UnifiedResponse:
        options = self._merge_options(options)
        started = time.monotonic()
        self._requests.total += 1
        self._emit(
            SDKEvent.REQUEST_START, {"type": kind.value, "id": identifier, "fields": fields}
        )

        try:
            key = self._cache_key(kind, identifier, fields, options, strategy)
            if options.use_cache:
                cached = await self.cache.get(key)
                if cached is not None:
                    self._requests.cached += 1
                    self._emit(SDKEvent.CACHE_HIT, {"key": key})
                    return cached.model_copy(
                        update={
                            "metadata": cached.metadata.model_copy(
                                update={"cache_status": "hit"}
                            )
                        }
                    )
                self._emit(SDKEvent.CACHE_MISS, {"key": key})

            self._emit(SDKEvent.AGGREGATION_START, {"type": kind.value, "fields": fields})
            if kind == RecordKind.TOKEN:
                result = await self._aggregator.aggregate_token_data(
                    TokenDataRequest(
                        identifier=identifier, fields=fields, options=options, strategy=strategy
                    )
                )
            else:
                result = await self._aggregator.aggregate_wallet_data(
                    WalletDataRequest(
                        identifier=identifier, fields=fields, options=options, strategy=strategy
                    )
                )
            self._emit(
                SDKEvent.AGGREGATION_COMPLETE,
                {"type": kind.value, "sources": result.metadata.data_sources},
            )

            if options.use_cache and result.data.data_source:
                ttl = (
                    options.cache_timeout
                    if options.cache_timeout is not None
                    else self.priorities.ttl_for(fields, self.settings.cache_default_ttl)
                )
                await self.cache.set(key, result, ttl)

            if result.errors:
                self._requests.failed += 1
            else:
                self._requests.successful += 1
            self._record_usage(result)

            self._emit(
                SDKEvent.REQUEST_COMPLETE,
                {
                    "type": kind.value,
                    "id": identifier,
                    "fields": fields,
                    "response_time": (time.monotonic() - started) * 1000,
                    "cached": False,
                },
            )
            return result

        except Exception as e:
            self._requests.failed += 1
            logger.error(f"ChainFeed {kind.value} request for {identifier} failed: {e}")
            self._emit(
                SDKEvent.REQUEST_ERROR, {"type": kind.value, "id": identifier, "error": str(e)}
            )
            raise

    async def _initialize_providers(self) -> None:
        if self._explicit_providers is not None:
            for provider in self._explicit_providers:
                await self.register_provider(provider)
            return

        if self.settings.blockfrost_project_id:
            await self.register_provider(
                BlockfrostProvider(),
                {
                    "project_id": self.settings.blockfrost_project_id,
                    "base_url": self.settings.blockfrost_base_url,
                    "timeout": self.settings.request_timeout,
                },
            )
        else:
            logger.info("BLOCKFROST_PROJECT_ID not set, Blockfrost disabled")

        await self.register_provider(
            CoinGeckoProvider(),
            {
                "api_key": self.settings.coingecko_api_key or None,
                "pro": self.settings.coingecko_pro,
                "timeout": self.settings.request_timeout,
            },
        )

    def _start_health_checks(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._health_check_job,
            trigger="interval",
            seconds=self.health_check_interval,
            id=HEALTH_CHECK_JOB_ID,
            name="Provider health check",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Health checks scheduled every {self.health_check_interval}s")

    async def _health_check_job(self) -> None:
        try:
            health = await self.get_provider_health()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            self._emit(SDKEvent.HEALTH_CHECK_ERROR, {"error": str(e)})
            return

        unhealthy = [name for name, h in health.items() if not h.healthy]
        if unhealthy:
            logger.warning(f"Unhealthy providers: {unhealthy}")
        self._emit(SDKEvent.HEALTH_CHECK_COMPLETE, health)

    def _merge_options(self, options: RequestOptions | None) -> RequestOptions:
        if options is None:
            return self.default_options.model_copy()
        return self.default_options.model_copy(update=options.model_dump(exclude_unset=True))

    def _cache_key(
        self,
        kind: RecordKind,
        identifier: str,
        fields: list[str],
        options: RequestOptions,
        strategy: ConflictStrategy,
    ) -> str:
        """Plain record key for default routing, else an aggregated key naming
        the choices that can change which value wins."""
        variant = [
            *(f"prefer:{i}:{name}" for i, name in enumerate(options.preferred_providers)),
            *(f"fallback:{i}:{name}" for i, name in enumerate(options.fallback_providers)),
        ]
        strategy = ConflictStrategy(strategy)
        if strategy != ConflictStrategy.PRIORITY:
            variant.append(f"strategy:{strategy.value}")
        routing = RoutingStrategy(options.routing_strategy or RoutingStrategy.PRIORITY)
        if routing != RoutingStrategy.PRIORITY:
            variant.append(f"routing:{routing.value}")
        if variant:
            return self.keys.build_aggregated_key(kind.value, identifier, fields, variant)
        if kind == RecordKind.TOKEN:
            return self.keys.build_token_data_key(identifier, fields)
        return self.keys.build_wallet_data_key(identifier, fields)

    def _known_fields(self, kind: RecordKind) -> tuple[str, ...]:
        base = TOKEN_FIELDS if kind == RecordKind.TOKEN else WALLET_FIELDS
        declared = [f for p in self._providers.values() for f in p.capabilities.fields_for(kind)]
        return tuple(dict.fromkeys([*base, *declared]))

    def _record_usage(self, result: UnifiedResponse) -> None:
        now = utcnow()
        for name, healthy in result.metadata.provider_health.items():
            usage = self._provider_usage.setdefault(name, ProviderUsage())
            usage.requests += 1
            usage.last_used = now
            if healthy:
                usage.successes += 1
            else:
                usage.failures += 1

    def _emit(self, event: SDKEvent, data: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(event, data)
            except Exception as e:
                logger.warning(f"Event listener error on {event.value}: {e}")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ConfigurationError("ChainFeed not initialized. Call initialize() first.")
