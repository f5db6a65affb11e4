"""
Shared fixtures: in-memory providers with scripted answers.
"""

import asyncio
from datetime import datetime
from typing import Any

import pytest

from chainfeed.datasource.base import BaseProvider
from chainfeed.models import (
    ProviderCapabilities,
    ProviderHealth,
    ProviderResponse,
    RequestOptions,
)


class FakeProvider(BaseProvider):
    """
    Provider that answers from dicts.

    ``token_fields`` / ``wallet_fields`` default to the keys of the answers,
    so a provider can also declare fields it then fails to deliver.
    """

    def __init__(
        self,
        name: str,
        token: dict[str, Any] | None = None,
        wallet: dict[str, Any] | None = None,
        *,
        token_fields: tuple[str, ...] | None = None,
        wallet_fields: tuple[str, ...] | None = None,
        delay: float = 0.0,
        error: BaseException | str | None = None,
        fail_times: int | None = None,
        cost: float = 0.0,
        observed_at: datetime | None = None,
        healthy: bool = True,
    ):
        super().__init__()
        self.name = name
        self.token = token or {}
        self.wallet = wallet or {}
        self.capabilities = ProviderCapabilities(
            token_data=tuple(token_fields if token_fields is not None else self.token),
            wallet_data=tuple(wallet_fields if wallet_fields is not None else self.wallet),
            cost_per_request=cost,
        )
        self.delay = delay
        self.error = error
        self.fail_times = fail_times
        self.observed_at = observed_at
        self.healthy = healthy
        self.calls: list[tuple[str, str]] = []

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(provider=self.name, healthy=self.healthy)

    async def get_token_data(
        self, asset_unit: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        return await self._answer("token", asset_unit, self.token)

    async def get_wallet_data(
        self, address: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        return await self._answer("wallet", address, self.wallet)

    async def _answer(self, kind: str, identifier: str, data: dict[str, Any]) -> ProviderResponse:
        self.calls.append((kind, identifier))
        if self.delay:
            await asyncio.sleep(self.delay)

        failing = self.error is not None and (
            self.fail_times is None or len(self.calls) <= self.fail_times
        )
        if failing:
            return self.fail(self.error)

        observed = {f: self.observed_at for f in data} if self.observed_at else None
        return self.ok(dict(data), observed_at=observed)


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""

    def factory(name: str, **kwargs: Any) -> FakeProvider:
        return FakeProvider(name, **kwargs)

    return factory
