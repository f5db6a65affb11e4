"""
ServiceClient - Async HTTP client shared by the provider adapters.

Combines:
- MemoryCache for short-lived response caching of GET requests
- CircuitBreaker per upstream service
- RetryExecutor for transport-level retries (off unless configured)
- Mapping of httpx failures onto the service error taxonomy
"""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx
from loguru import logger

from chainfeed.services.cache import MemoryCache
from chainfeed.services.cache_keys import CacheKeyBuilder
from chainfeed.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from chainfeed.services.errors import (
    AuthenticationError,
    NetworkError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
)
from chainfeed.services.retry import RETRY_PRESETS, RetryConfig, RetryExecutor

T = TypeVar("T")


@dataclass
class RequestResult(Generic[T]):
    data: T
    from_cache: bool = False
    service_id: str | None = None
    status_code: int | None = None


@dataclass
class ServiceConfig:
    """Per-upstream settings; ``service_id`` doubles as the breaker name."""

    service_id: str
    base_url: str
    timeout: float = 30.0
    cache_ttl: float = 60.0  # seconds
    use_cache: bool = True
    use_circuit_breaker: bool = True
    headers: dict[str, str] | None = None
    retry_config: RetryConfig | None = None
    circuit_breaker_config: CircuitBreakerConfig | None = None


@dataclass
class _Prepared:
    url: str
    headers: dict[str, str]
    timeout: float
    cache_key: str | None
    cache_ttl: float
    guarded: bool
    retry: RetryConfig


class ServiceClient:
    """
    HTTP client with response caching, circuit breaking and retries.

    Usage:
        client = ServiceClient()
        client.register_service(ServiceConfig(
            service_id="blockfrost",
            base_url="https://cardano-mainnet.blockfrost.io/api/v0",
            headers={"project_id": "..."},
        ))

        result = await client.request("blockfrost", "/assets/lovelace")
        result.data  # decoded JSON

    Pass ``transport`` (e.g. ``httpx.MockTransport``) to stub the network.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        default_cache_ttl: float = 60.0,
        cache_max_size: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool = False,
    ):
        self.default_timeout = default_timeout
        self.default_cache_ttl = default_cache_ttl
        self._transport = transport
        self._debug = debug

        self._responses = MemoryCache(
            default_ttl=default_cache_ttl, max_size=cache_max_size, debug=debug
        )
        self._keys = CacheKeyBuilder()
        self._breakers = CircuitBreakerRegistry()
        self._services: dict[str, ServiceConfig] = {}
        self._http: httpx.AsyncClient | None = None  # created on first request

    def register_service(self, config: ServiceConfig) -> None:
        self._services[config.service_id] = config
        if config.circuit_breaker_config:
            self._breakers.remove(config.service_id)
            self._breakers.get(config.service_id, config.circuit_breaker_config)
        logger.debug(f"[ServiceClient] Registered {config.service_id} at {config.base_url}")

    def get_service_config(self, service_id: str) -> ServiceConfig | None:
        return self._services.get(service_id)

    async def request(
        self,
        service_id: str,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        method: str = "GET",
        json_data: dict[str, Any] | None = None,
        use_cache: bool | None = None,
        cache_ttl: float | None = None,
        timeout: float | None = None,
    ) -> RequestResult[Any]:
        """
        Make an HTTP request to a registered service.

        Args:
            service_id: Registered service (also the breaker name)
            path: Path appended to the service base URL, or a full URL
            params: Query parameters
            headers: Extra headers, merged over the service's own
            method: HTTP method; only GET responses are cached
            json_data: JSON body for POST/PUT requests
            use_cache: Override the service's cache setting
            cache_ttl: Override the cache TTL in seconds
            timeout: Override the request timeout in seconds

        Raises:
            CircuitOpenError: If the service's breaker is open
            RequestTimeoutError: If the request times out
            RateLimitError: On HTTP 429
            AuthenticationError: On HTTP 401/403
            ProviderError: On any other HTTP error status
            NetworkError: On transport failures
        """
        prepared = self._prepare(
            service_id, path, params, headers, method, use_cache, cache_ttl, timeout
        )

        if prepared.cache_key and await self._responses.has(prepared.cache_key):
            cached = await self._responses.get(prepared.cache_key)
            return RequestResult(data=cached, from_cache=True, service_id=service_id)

        executor = RetryExecutor(prepared.retry)

        async def send() -> tuple[Any, int]:
            return await self._send(service_id, method, prepared, params, json_data)

        async def attempt() -> tuple[Any, int]:
            return await executor.execute(send)

        if prepared.guarded:
            data, status = await self._breakers.get(service_id).execute(attempt)
        else:
            data, status = await attempt()

        if prepared.cache_key:
            await self._responses.set(prepared.cache_key, data, prepared.cache_ttl)
        return RequestResult(data=data, service_id=service_id, status_code=status)

    def _prepare(
        self,
        service_id: str,
        path: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        method: str,
        use_cache: bool | None,
        cache_ttl: float | None,
        timeout: float | None,
    ) -> _Prepared:
        config = self._services.get(service_id) or ServiceConfig(
            service_id=service_id,
            base_url="",
            timeout=self.default_timeout,
            cache_ttl=self.default_cache_ttl,
        )

        url = path
        if config.base_url and not path.startswith("http"):
            url = config.base_url.rstrip("/") + path

        cacheable = method == "GET" and (config.use_cache if use_cache is None else use_cache)

        return _Prepared(
            url=url,
            headers={**(config.headers or {}), **(headers or {})},
            timeout=timeout or config.timeout,
            cache_key=self._keys.build_provider_key(service_id, path, params) if cacheable else None,
            cache_ttl=config.cache_ttl if cache_ttl is None else cache_ttl,
            guarded=config.use_circuit_breaker,
            retry=config.retry_config or RETRY_PRESETS["none"],
        )

    async def _send(
        self,
        service_id: str,
        method: str,
        prepared: _Prepared,
        params: dict[str, Any] | None,
        json_data: dict[str, Any] | None,
    ) -> tuple[Any, int]:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.default_timeout),
                follow_redirects=True,
                transport=self._transport,
            )

        if self._debug:
            logger.debug(f"[ServiceClient] {method} {prepared.url} params={params}")

        try:
            response = await self._http.request(
                method,
                prepared.url,
                params=params,
                headers=prepared.headers,
                json=json_data,
                timeout=prepared.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(service_id, prepared.timeout) from e
        except httpx.HTTPStatusError as e:
            raise _status_error(service_id, e.response) from e
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, service_id=service_id) from e

        return response.json(), response.status_code

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        await self._responses.close()
        logger.debug("[ServiceClient] Closed")

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def get_health_status(self) -> dict[str, Any]:
        """Response-cache stats and breaker state for every service seen so far."""
        stats = await self._responses.get_stats()
        return {
            "cache": stats.to_dict(),
            "circuit_breakers": self._breakers.get_all_status(),
            "open_circuits": self._breakers.get_open_circuits(),
        }

    async def reset_circuit(self, service_id: str) -> bool:
        return self._breakers.reset(service_id)

    async def clear_cache(self) -> None:
        await self._responses.clear()


def _status_error(service_id: str, response: httpx.Response) -> ServiceError:
    status = response.status_code

    if status == 429:
        retry_after = response.headers.get("retry-after")
        try:
            seconds = float(retry_after) if retry_after else None
        except ValueError:
            seconds = None
        return RateLimitError(service_id, seconds)

    detail = f"HTTP {status}: {response.text[:200]}"
    if status in (401, 403):
        return AuthenticationError(detail, service_id=service_id)
    return ProviderError(detail, service_id=service_id, status_code=status)
