"""
FieldRouter - Decides which provider answers which field.

For every requested field the router collects the providers whose declared
capabilities include it, picks a primary with the active strategy and orders
the rest into a fallback chain. Live metrics (EMA response time, success
rate) feed the ``fastest`` and ``reliability`` strategies and the fallback
ordering.
"""

from datetime import datetime, timezone
from typing import Iterable

from loguru import logger

from chainfeed.datasource.base import BaseProvider
from chainfeed.datasource.registry import ProviderRegistry
from chainfeed.models import (
    ProviderMetrics,
    RecordKind,
    RequestOptions,
    RoutingPlan,
    RoutingStrategy,
)
from chainfeed.services.circuit_breaker import CircuitBreakerRegistry

EMA_ALPHA = 0.1
DEFAULT_RESPONSE_TIME_MS = 1000.0


class FieldRouter:
    """
    Capability-based routing over a shared provider registry.

    Usage:
        router = FieldRouter(registry, {"price": ["coingecko", "blockfrost"]})
        plan = router.plan_routing(["price", "name"], RecordKind.TOKEN)
        plan["price"].provider  # "coingecko"
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        field_priorities: dict[str, list[str]] | None = None,
        default_strategy: RoutingStrategy | str = RoutingStrategy.PRIORITY,
        *,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        self.registry = registry
        self.default_strategy = RoutingStrategy(default_strategy)
        self.breakers = breakers
        self._field_priorities: dict[str, list[str]] = {
            field: list(providers) for field, providers in (field_priorities or {}).items()
        }
        self._metrics: dict[str, ProviderMetrics] = {}

        for provider in registry:
            self._init_metrics(provider)

    # Registration

    def register_provider(self, provider: BaseProvider) -> None:
        self.registry.register(provider)
        self._init_metrics(provider)

    def unregister_provider(self, name: str) -> None:
        self.registry.unregister(name)
        self._metrics.pop(name, None)

    def set_field_priority(self, field: str, providers: list[str]) -> None:
        self._field_priorities[field] = list(providers)
        logger.debug(f"Field priority for {field}: {providers}")

    def get_field_priorities(self, field: str) -> list[str] | None:
        priorities = self._field_priorities.get(field)
        return list(priorities) if priorities is not None else None

    def priority_order(self, field: str, preferred: Iterable[str] = ()) -> list[str]:
        """Request preferences first, then the configured priority list."""
        configured = self._field_priorities.get(field, [])
        return list(dict.fromkeys([*preferred, *configured]))

    # Planning

    def get_providers_for_field(self, field: str, kind: RecordKind | str) -> list[str]:
        """Names of providers whose capabilities declare ``field``."""
        return [p.name for p in self.registry.providers_for_field(field, RecordKind(kind))]

    def plan_routing(
        self,
        fields: Iterable[str],
        kind: RecordKind | str,
        options: RequestOptions | None = None,
    ) -> dict[str, RoutingPlan]:
        """
        Build a plan entry per field.

        A field no provider declares still gets an entry when a priority list
        names it, so the caller can report the missing provider precisely.
        Fields with neither are left out.
        """
        kind = RecordKind(kind)
        strategy = self.default_strategy
        if options and options.routing_strategy:
            strategy = RoutingStrategy(options.routing_strategy)
        preferred = list(options.preferred_providers) if options else []
        requested_fallbacks = list(options.fallback_providers) if options else []

        plan: dict[str, RoutingPlan] = {}
        for field in dict.fromkeys(fields):
            candidates = self.get_providers_for_field(field, kind)
            priorities = self.priority_order(field, preferred)
            entry = self._create_plan(field, candidates, strategy, priorities, requested_fallbacks)
            if entry is not None:
                plan[field] = entry
        return plan

    def plan_token_data_routing(
        self, fields: Iterable[str], options: RequestOptions | None = None
    ) -> dict[str, RoutingPlan]:
        return self.plan_routing(fields, RecordKind.TOKEN, options)

    def plan_wallet_data_routing(
        self, fields: Iterable[str], options: RequestOptions | None = None
    ) -> dict[str, RoutingPlan]:
        return self.plan_routing(fields, RecordKind.WALLET, options)

    def get_optimal_provider(
        self,
        field: str,
        candidates: list[str],
        strategy: RoutingStrategy | str = RoutingStrategy.PRIORITY,
    ) -> str | None:
        """Primary provider for ``field`` among ``candidates``, or None if there are none."""
        return self._select(
            field, candidates, RoutingStrategy(strategy), self._field_priorities.get(field, [])
        )

    # Metrics

    def update_metrics(self, provider: str, response_time: float, success: bool) -> None:
        """Fold one call outcome (response time in ms) into the provider's metrics."""
        if provider not in self._metrics and provider not in self.registry:
            return
        metrics = self._metric(provider)

        metrics.total_requests += 1
        metrics.last_used = datetime.now(timezone.utc)

        if success:
            metrics.avg_response_time = (
                EMA_ALPHA * response_time + (1 - EMA_ALPHA) * metrics.avg_response_time
            )
        else:
            metrics.failed_requests += 1

        metrics.success_rate = (
            metrics.total_requests - metrics.failed_requests
        ) / metrics.total_requests

    def get_provider_metrics(self, provider: str) -> ProviderMetrics | None:
        return self._metrics.get(provider)

    def get_all_metrics(self) -> dict[str, ProviderMetrics]:
        return dict(self._metrics)

    # Internals

    def _init_metrics(self, provider: BaseProvider) -> None:
        if provider.name not in self._metrics:
            self._metrics[provider.name] = ProviderMetrics(
                cost=provider.capabilities.cost_per_request
            )

    def _create_plan(
        self,
        field: str,
        candidates: list[str],
        strategy: RoutingStrategy,
        priorities: list[str],
        requested_fallbacks: list[str],
    ) -> RoutingPlan | None:
        primary = self._select(field, candidates, strategy, priorities)

        if primary is None:
            if not priorities:
                return None
            return RoutingPlan(
                field=field,
                provider=priorities[0],
                fallback_providers=priorities[1:],
                estimated_response_time=DEFAULT_RESPONSE_TIME_MS,
                estimated_success_rate=0.0,
                estimated_cost=0.0,
            )

        rest = [p for p in candidates if p != primary]
        rest.sort(key=lambda p: (-self._metric(p).success_rate, self._metric(p).avg_response_time))

        pinned = [p for p in dict.fromkeys(requested_fallbacks) if p in rest]
        fallbacks = pinned + [p for p in rest if p not in pinned]

        metrics = self._metric(primary)
        return RoutingPlan(
            field=field,
            provider=primary,
            fallback_providers=fallbacks,
            estimated_response_time=metrics.avg_response_time,
            estimated_success_rate=metrics.success_rate,
            estimated_cost=metrics.cost,
        )

    def _select(
        self,
        field: str,
        candidates: list[str],
        strategy: RoutingStrategy,
        priorities: list[str],
    ) -> str | None:
        if not candidates:
            return None

        available = [p for p in candidates if self._is_available(p)]
        if not available:
            logger.warning(f"No available provider for {field}, all circuits open")
        pool = available or candidates

        if strategy == RoutingStrategy.PRIORITY:
            for name in priorities:
                if name in pool:
                    return name
            return pool[0]

        if strategy == RoutingStrategy.FASTEST:
            return min(pool, key=lambda p: self._metric(p).avg_response_time)

        if strategy == RoutingStrategy.RELIABILITY:
            return max(pool, key=lambda p: self._metric(p).success_rate)

        if strategy == RoutingStrategy.COST:
            return min(pool, key=lambda p: self._metric(p).cost)

        return pool[0]

    def _metric(self, provider: str) -> ProviderMetrics:
        metrics = self._metrics.get(provider)
        if metrics is None:
            registered = self.registry.get(provider)
            metrics = ProviderMetrics(
                cost=registered.capabilities.cost_per_request if registered else 0.0
            )
            if registered is not None:
                self._metrics[provider] = metrics
        return metrics

    def _is_available(self, provider: str) -> bool:
        return self.breakers is None or self.breakers.is_available(provider)
