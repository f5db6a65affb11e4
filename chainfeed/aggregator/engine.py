"""
DataAggregator - Fans a field request out to providers and merges the answers.

Flow per request:
1. Ask the router for a per-field plan (primary + fallbacks)
2. Synthesize a failure for fields nobody can serve
3. Group fields by provider; optionally add every priority provider that
   declares a field so disagreements surface as conflicts
4. Call each provider once, in parallel; every call is retried inside its
   circuit breaker and raced against the request timeout
5. Walk fallback chains, sequentially, for fields still without a value
6. Resolve each field (single answer, agreement, or conflict strategy)
7. Assemble the record, metadata and error list

Provider failures never raise; they become error entries. Only a fault in
this machinery produces an AggregationError, itself returned as a single
unrecoverable error entry.
"""

import asyncio
import time
from typing import Iterable

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from chainfeed.aggregator.conflicts import Contribution, resolve_field
from chainfeed.aggregator.router import FieldRouter
from chainfeed.datasource.base import BaseProvider
from chainfeed.datasource.registry import ProviderRegistry
from chainfeed.models import (
    AggregationRequest,
    ConflictStrategy,
    ErrorEntry,
    FieldAggregationResult,
    ProviderExecution,
    ProviderResponse,
    RecordKind,
    RequestOptions,
    ResponseMetadata,
    RoutingPlan,
    TokenData,
    TokenDataRequest,
    UnifiedResponse,
    WalletData,
    WalletDataRequest,
    utcnow,
)
from chainfeed.services.circuit_breaker import CircuitBreakerRegistry
from chainfeed.services.errors import (
    AggregationError,
    ProviderError,
    RequestTimeoutError,
    error_from_category,
    normalize_error,
)
from chainfeed.services.retry import RetryConfig, RetryExecutor

AGGREGATOR_ID = "aggregator"

_RECORD_MODELS: dict[RecordKind, type[BaseModel]] = {
    RecordKind.TOKEN: TokenData,
    RecordKind.WALLET: WalletData,
}


class DataAggregator:
    """
    Multi-provider aggregation engine.

    Usage:
        aggregator = DataAggregator(
            [CoinGeckoProvider(), BlockfrostProvider()],
            {"name": ["blockfrost", "coingecko"]},
        )
        response = await aggregator.aggregate_token_data(
            TokenDataRequest(identifier="lovelace", fields=["name", "price"])
        )
        response.data.price, response.errors
    """

    def __init__(
        self,
        providers: Iterable[BaseProvider] = (),
        field_priorities: dict[str, list[str]] | None = None,
        *,
        registry: ProviderRegistry | None = None,
        router: FieldRouter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_config: RetryConfig | None = None,
        fan_out_priority: bool = True,
        default_timeout: float = 30.0,
    ):
        self.breakers = breakers or CircuitBreakerRegistry()
        if router is not None:
            self.router = router
            self.registry = router.registry
            if field_priorities:
                for field, names in field_priorities.items():
                    router.set_field_priority(field, names)
        else:
            self.registry = registry or ProviderRegistry()
            self.router = FieldRouter(self.registry, field_priorities, breakers=self.breakers)

        self.retry_config = retry_config or RetryConfig(max_attempts=1)
        self.fan_out_priority = fan_out_priority
        self.default_timeout = default_timeout

        for provider in providers:
            self.register_provider(provider)

    # Registration

    def register_provider(self, provider: BaseProvider) -> None:
        self.router.register_provider(provider)

    def unregister_provider(self, name: str) -> None:
        self.router.unregister_provider(name)
        self.breakers.remove(name)

    def set_field_priority(self, field: str, providers: list[str]) -> None:
        self.router.set_field_priority(field, providers)

    # Aggregation

    async def aggregate_token_data(
        self, request: TokenDataRequest
    ) -> UnifiedResponse[TokenData]:
        return await self._aggregate(RecordKind.TOKEN, request)

    async def aggregate_wallet_data(
        self, request: WalletDataRequest
    ) -> UnifiedResponse[WalletData]:
        return await self._aggregate(RecordKind.WALLET, request)

    async def _aggregate(self, kind: RecordKind, request: AggregationRequest) -> UnifiedResponse:
        start = time.monotonic()
        model = _RECORD_MODELS[kind]
        try:
            return await self._run(kind, request, start)
        except Exception as e:
            error = AggregationError(
                f"Aggregation failed: {e}", context={"kind": kind.value, "id": request.identifier}
            )
            logger.exception(f"[aggregator] {error.message}")
            return UnifiedResponse[model](
                data=model(),
                metadata=ResponseMetadata(
                    data_sources=[],
                    cache_status="miss",
                    response_time=_elapsed_ms(start),
                    timestamp=utcnow(),
                ),
                errors=[
                    ErrorEntry(
                        provider=AGGREGATOR_ID,
                        error=error.message,
                        recoverable=False,
                        category=error.category,
                    )
                ],
            )

    async def _run(
        self, kind: RecordKind, request: AggregationRequest, start: float
    ) -> UnifiedResponse:
        options = request.options
        fields = list(dict.fromkeys(request.fields))
        plan = self.router.plan_routing(fields, kind, options)

        logger.debug(
            f"[aggregator] {kind.value} {request.identifier[:24]}: "
            + ", ".join(f"{f}->{p.provider}" for f, p in plan.items())
        )

        missing = [self._missing_execution(f, options) for f in fields if f not in plan]

        requests = self._group_requests(kind, plan, options)
        executions = list(
            await asyncio.gather(
                *(
                    self._execute(name, kind, request.identifier, names, options)
                    for name, names in requests.items()
                )
            )
        )
        executions += await self._run_fallbacks(kind, request.identifier, plan, executions, options)
        executions += missing

        results: dict[str, FieldAggregationResult] = {}
        for field in fields:
            result = self._aggregate_field(field, plan.get(field), executions, request)
            if result is not None:
                results[field] = result

        model = _RECORD_MODELS[kind]
        invalid = self._drop_invalid(model, results)
        sources = _dedupe(s for r in results.values() for s in r.sources)
        data = model.model_validate(
            {
                **{field: r.value for field, r in results.items()},
                "data_source": sources,
                "last_updated": utcnow(),
            }
        )

        return UnifiedResponse[model](
            data=data,
            metadata=self._build_metadata(executions, start),
            errors=self._extract_errors(executions) + invalid,
            field_results=results,
        )

    # Planning helpers

    def _missing_execution(self, field: str, options: RequestOptions) -> ProviderExecution:
        priorities = self.router.priority_order(field, options.preferred_providers)
        name = priorities[0] if priorities else "unknown"
        return ProviderExecution(
            provider=name,
            success=False,
            error=ProviderError(f"Provider {name} not found for field {field}", service_id=name),
        )

    def _group_requests(
        self, kind: RecordKind, plan: dict[str, RoutingPlan], options: RequestOptions
    ) -> dict[str, list[str]]:
        requests: dict[str, list[str]] = {}
        for field, entry in plan.items():
            requests.setdefault(entry.provider, []).append(field)

        if not self.fan_out_priority:
            return requests

        for field, entry in plan.items():
            priorities = self.router.priority_order(field, options.preferred_providers)
            if len(priorities) < 2:
                continue
            for name in priorities:
                provider = self.registry.get(name)
                if name == entry.provider or provider is None:
                    continue
                if field not in provider.capabilities.fields_for(kind):
                    continue
                names = requests.setdefault(name, [])
                if field not in names:
                    names.append(field)
        return requests

    # Execution

    async def _execute(
        self,
        name: str,
        kind: RecordKind,
        identifier: str,
        fields: list[str],
        options: RequestOptions,
    ) -> ProviderExecution:
        provider = self.registry.get(name)
        if provider is None:
            return ProviderExecution(
                provider=name,
                success=False,
                error=ProviderError(f"Provider {name} not found", service_id=name),
            )

        fetch = provider.get_token_data if kind == RecordKind.TOKEN else provider.get_wallet_data
        timeout = options.timeout or self.default_timeout
        breaker = self.breakers.get(name)
        executor = RetryExecutor(self._retry_config(options))

        async def call() -> ProviderResponse:
            response = await fetch(identifier, options)
            if not response.success:
                error = error_from_category(
                    response.error_category, response.error or "Provider call failed", name
                )
                if response.retryable is False:
                    error.retryable = False
                raise error
            return response

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                breaker.execute(lambda: executor.execute(call)), timeout
            )
        except asyncio.TimeoutError:
            # the cancelled call never reached the breaker's failure path
            breaker.record_failure()
            return self._failed(name, RequestTimeoutError(name, timeout), started)
        except Exception as e:
            return self._failed(name, normalize_error(e, name), started)

        elapsed = _elapsed_ms(started)
        self.router.update_metrics(name, elapsed, True)
        data = response.data or {}
        logger.debug(f"[aggregator] {name} answered in {elapsed:.0f}ms")
        return ProviderExecution(
            provider=name,
            success=True,
            data=data,
            response_time=elapsed,
            fields_provided=[f for f in fields if data.get(f) is not None],
            observed_at=response.observed_at,
            timestamp=response.timestamp,
        )

    def _failed(self, name: str, error: Exception, started: float) -> ProviderExecution:
        elapsed = _elapsed_ms(started)
        self.router.update_metrics(name, elapsed, False)
        logger.warning(f"[aggregator] {name} failed after {elapsed:.0f}ms: {error}")
        return ProviderExecution(provider=name, success=False, error=error, response_time=elapsed)

    async def _run_fallbacks(
        self,
        kind: RecordKind,
        identifier: str,
        plan: dict[str, RoutingPlan],
        executions: list[ProviderExecution],
        options: RequestOptions,
    ) -> list[ProviderExecution]:
        attempted = {e.provider: e for e in executions}
        extra: list[ProviderExecution] = []

        for field, entry in plan.items():
            primary = attempted.get(entry.provider)
            if primary is None or primary.success or not entry.fallback_providers:
                continue

            for name in entry.fallback_providers:
                if _covers(executions + extra, field):
                    break
                if name in attempted or name not in self.registry:
                    continue

                execution = await self._execute(name, kind, identifier, [field], options)
                attempted[name] = execution
                extra.append(execution)
                if execution.success:
                    break

        return extra

    def _retry_config(self, options: RequestOptions) -> RetryConfig:
        return self.retry_config.merged(
            max_attempts=None if options.max_retries is None else options.max_retries + 1,
            base_delay=options.retry_delay,
        )

    # Merging

    def _aggregate_field(
        self,
        field: str,
        entry: RoutingPlan | None,
        executions: list[ProviderExecution],
        request: AggregationRequest,
    ) -> FieldAggregationResult | None:
        valid = [
            e for e in executions if e.success and e.data and e.data.get(field) is not None
        ]
        if not valid:
            return None

        order = self.router.priority_order(field, request.options.preferred_providers)
        if entry is not None:
            order = _dedupe([*order, entry.provider, *entry.fallback_providers])
        rank = {name: i for i, name in enumerate(order)}
        valid.sort(key=lambda e: rank.get(e.provider, len(rank)))

        contributions = [
            Contribution(
                provider=e.provider,
                value=e.data[field],
                observed_at=(e.observed_at or {}).get(field, e.timestamp),
            )
            for e in valid
        ]
        return resolve_field(field, contributions, request.strategy or ConflictStrategy.PRIORITY)

    def _build_metadata(
        self, executions: list[ProviderExecution], start: float
    ) -> ResponseMetadata:
        health: dict[str, bool] = {}
        for e in executions:
            health[e.provider] = health.get(e.provider, False) or e.success

        return ResponseMetadata(
            data_sources=_dedupe(e.provider for e in executions if e.success),
            cache_status="miss",
            response_time=_elapsed_ms(start),
            timestamp=utcnow(),
            provider_health=health,
        )

    @staticmethod
    def _drop_invalid(
        model: type[BaseModel], results: dict[str, FieldAggregationResult]
    ) -> list[ErrorEntry]:
        """
        Validate each resolved value on its own. A value the record type
        rejects is removed from ``results`` and reported against the provider
        that supplied it; accepted values are replaced by their coerced form.
        """
        entries = []
        for field, result in list(results.items()):
            try:
                checked = model.model_validate({field: result.value})
            except ModelValidationError as e:
                source = result.sources[0] if result.sources else AGGREGATOR_ID
                reason = e.errors()[0]["msg"] if e.errors() else str(e)
                logger.warning(f"[{source}] Rejected {field}={result.value!r}: {reason}")
                del results[field]
                entries.append(
                    ErrorEntry(
                        provider=source,
                        error=f"Invalid value for {field}: {reason}",
                        recoverable=True,
                        category="validation",
                    )
                )
                continue
            result.value = getattr(checked, field)
        return entries

    @staticmethod
    def _extract_errors(executions: list[ProviderExecution]) -> list[ErrorEntry]:
        entries = []
        for e in executions:
            if e.success or e.error is None:
                continue
            error = normalize_error(e.error, e.provider)
            entries.append(
                ErrorEntry(
                    provider=e.provider,
                    error=error.message,
                    recoverable=True,
                    category=error.category,
                )
            )
        return entries


def _covers(executions: list[ProviderExecution], field: str) -> bool:
    return any(e.success and e.data and e.data.get(field) is not None for e in executions)


def _dedupe(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(names))


def _elapsed_ms(started: float) -> float:
    return max(1.0, (time.monotonic() - started) * 1000)

