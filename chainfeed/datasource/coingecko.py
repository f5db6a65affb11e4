"""
CoinGecko API provider for Cardano market data.

API Documentation: https://www.coingecko.com/en/api/documentation
Free tier: 10-30 calls/minute (no API key required)
"""

import time
from datetime import datetime
from typing import Any

from loguru import logger

from chainfeed.datasource.base import BaseProvider
from chainfeed.models import (
    ProviderCapabilities,
    ProviderFeatures,
    ProviderHealth,
    ProviderResponse,
    RateLimit,
    RequestOptions,
)
from chainfeed.services.client import ServiceClient, ServiceConfig
from chainfeed.services.errors import ServiceError

# Asset unit -> CoinGecko coin id
CARDANO_COIN_MAPPINGS: dict[str, str] = {
    "lovelace": "cardano",
}


class CoinGeckoProvider(BaseProvider):
    """
    CoinGecko market data provider.

    Supplies price, market and supply fields for asset units that have a
    known CoinGecko coin id. No wallet data.
    """

    BASE_URL = "https://api.coingecko.com/api/v3"
    PRO_BASE_URL = "https://pro-api.coingecko.com/api/v3"

    name = "coingecko"
    version = "1.0.0"
    capabilities = ProviderCapabilities(
        token_data=(
            "price",
            "price_usd",
            "market_cap",
            "market_cap_usd",
            "volume_24h",
            "volume_24h_usd",
            "price_change_24h",
            "price_change_percentage_24h",
            "price_change_percentage_7d",
            "price_change_percentage_30d",
            "high_24h",
            "low_24h",
            "ath",
            "atl",
            "ath_date",
            "atl_date",
            "total_supply",
            "circulating_supply",
            "max_supply",
            "name",
            "symbol",
            "description",
            "logo",
        ),
        wallet_data=(),
        features=ProviderFeatures(batch=True, historical=True),
        rate_limit=RateLimit(requests_per_minute=50),
    )

    def __init__(
        self,
        client: ServiceClient | None = None,
        coin_mappings: dict[str, str] | None = None,
    ):
        super().__init__(client)
        self.coin_mappings = dict(CARDANO_COIN_MAPPINGS)
        if coin_mappings:
            self.coin_mappings.update(coin_mappings)

    async def on_initialize(self) -> None:
        api_key = self.config.get("api_key")
        pro = bool(self.config.get("pro", False))
        base_url = self.config.get("base_url") or (self.PRO_BASE_URL if pro else self.BASE_URL)

        headers = {"User-Agent": "chainfeed/1.0"}
        if api_key:
            headers["x-cg-pro-api-key"] = api_key

        if self.client is None:
            self.client = ServiceClient(default_timeout=self.config.get("timeout", 10.0))
            self._owns_client = True

        self.client.register_service(
            ServiceConfig(
                service_id=self.name,
                base_url=base_url,
                timeout=self.config.get("timeout", 10.0),
                cache_ttl=self.config.get("cache_ttl", 60.0),
                headers=headers,
            )
        )

    def add_asset_mapping(self, asset_unit: str, coin_id: str) -> None:
        self.coin_mappings[asset_unit] = coin_id

    def get_coin_id(self, asset_unit: str) -> str | None:
        return self.coin_mappings.get(asset_unit)

    async def health_check(self) -> ProviderHealth:
        start = time.monotonic()
        try:
            self._require_initialized()
            await self.client.request(self.name, "/ping", use_cache=False)
        except ServiceError as e:
            return ProviderHealth(
                provider=self.name,
                healthy=False,
                consecutive_failures=1,
                response_time=(time.monotonic() - start) * 1000,
                last_error=e.message,
            )
        return ProviderHealth(
            provider=self.name,
            healthy=True,
            response_time=(time.monotonic() - start) * 1000,
        )

    async def get_token_data(
        self, asset_unit: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        """
        Fetch ``/coins/{id}`` and map it onto token fields.

        Returns:
            ProviderResponse; failures are reported, not raised
        """
        try:
            self._require_initialized()
            coin_id = self.get_coin_id(asset_unit)
            if not coin_id:
                return self.fail(f"No CoinGecko mapping found for asset: {asset_unit}")

            result = await self.client.request(
                self.name,
                f"/coins/{coin_id}",
                params={
                    "localization": "false",
                    "tickers": "false",
                    "community_data": "false",
                    "developer_data": "false",
                },
                timeout=options.timeout if options else None,
            )
            coin = result.data
            market = coin.get("market_data")
            if not market:
                return self.fail(f"No market data available for {coin_id}")

            data = self._transform_coin(coin, market)
            observed = _parse_date(market.get("last_updated"))
            return self.ok(data, observed_at={f: observed for f in data} if observed else None)

        except ServiceError as e:
            logger.warning(f"[coingecko] Token data for {asset_unit} failed: {e}")
            return self.fail(e)

    async def get_wallet_data(
        self, address: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        return self.fail("CoinGecko provider does not support wallet data")

    async def get_token_data_batch(
        self, asset_units: list[str], options: RequestOptions | None = None
    ) -> ProviderResponse:
        """Fetch several assets via ``/coins/markets``; ``data`` is keyed by asset unit."""
        try:
            self._require_initialized()
            unit_to_coin = {
                unit: self.get_coin_id(unit) for unit in asset_units if self.get_coin_id(unit)
            }
            if not unit_to_coin:
                return self.fail("No valid CoinGecko mappings found for provided assets")

            result = await self.client.request(
                self.name,
                "/coins/markets",
                params={
                    "vs_currency": "usd",
                    "ids": ",".join(unit_to_coin.values()),
                    "order": "market_cap_desc",
                    "per_page": str(len(unit_to_coin)),
                    "page": "1",
                    "sparkline": "false",
                    "price_change_percentage": "7d,30d",
                },
                timeout=options.timeout if options else None,
            )

            by_id = {row.get("id"): row for row in result.data or []}
            results = {
                unit: self._transform_market_row(by_id[coin_id])
                for unit, coin_id in unit_to_coin.items()
                if coin_id in by_id
            }
            logger.debug(f"[coingecko] Batch fetched {len(results)}/{len(asset_units)} assets")
            return self.ok(results)

        except ServiceError as e:
            logger.warning(f"[coingecko] Batch token data failed: {e}")
            return self.fail(e)

    async def get_token_data_historical(
        self,
        asset_unit: str,
        start: datetime,
        end: datetime,
        options: RequestOptions | None = None,
    ) -> ProviderResponse:
        """Price history from ``/coins/{id}/market_chart`` covering ``start`` to now."""
        try:
            self._require_initialized()
            coin_id = self.get_coin_id(asset_unit)
            if not coin_id:
                return self.fail(f"No CoinGecko mapping found for asset: {asset_unit}")

            days = max(1, (end - start).days)
            result = await self.client.request(
                self.name,
                f"/coins/{coin_id}/market_chart",
                params={"vs_currency": "usd", "days": str(days)},
                cache_ttl=600.0,
                timeout=options.timeout if options else None,
            )
            chart = result.data
            caps = dict(chart.get("market_caps", []))
            volumes = dict(chart.get("total_volumes", []))

            points = []
            for ts_ms, price in chart.get("prices", []):
                ts = datetime.fromtimestamp(ts_ms / 1000, tz=start.tzinfo)
                if start <= ts <= end:
                    points.append(
                        {
                            "timestamp": ts,
                            "price": price,
                            "market_cap": caps.get(ts_ms),
                            "volume": volumes.get(ts_ms),
                        }
                    )
            return self.ok({"points": points})

        except ServiceError as e:
            logger.warning(f"[coingecko] History for {asset_unit} failed: {e}")
            return self.fail(e)

    def _transform_coin(self, coin: dict[str, Any], market: dict[str, Any]) -> dict[str, Any]:
        """Map a ``/coins/{id}`` payload onto token fields."""
        image = coin.get("image") or {}
        price = _usd(market, "current_price")
        market_cap = _usd(market, "market_cap")
        volume = _usd(market, "total_volume")

        return _compact(
            {
                "name": coin.get("name"),
                "symbol": (coin.get("symbol") or "").upper() or None,
                "description": (coin.get("description") or {}).get("en") or None,
                "logo": image.get("large") or image.get("small") or image.get("thumb"),
                "price": price,
                "price_usd": price,
                "market_cap": market_cap,
                "market_cap_usd": market_cap,
                "volume_24h": volume,
                "volume_24h_usd": volume,
                "price_change_24h": market.get("price_change_24h"),
                "price_change_percentage_24h": market.get("price_change_percentage_24h"),
                "price_change_percentage_7d": market.get("price_change_percentage_7d"),
                "price_change_percentage_30d": market.get("price_change_percentage_30d"),
                "high_24h": _usd(market, "high_24h"),
                "low_24h": _usd(market, "low_24h"),
                "ath": _usd(market, "ath"),
                "atl": _usd(market, "atl"),
                "ath_date": _parse_date(_usd(market, "ath_date")),
                "atl_date": _parse_date(_usd(market, "atl_date")),
                "total_supply": market.get("total_supply"),
                "circulating_supply": market.get("circulating_supply"),
                "max_supply": market.get("max_supply"),
            }
        )

    def _transform_market_row(self, row: dict[str, Any]) -> dict[str, Any]:
        """Map one ``/coins/markets`` row onto token fields."""
        return _compact(
            {
                "name": row.get("name"),
                "symbol": (row.get("symbol") or "").upper() or None,
                "logo": row.get("image"),
                "price": row.get("current_price"),
                "price_usd": row.get("current_price"),
                "market_cap": row.get("market_cap"),
                "market_cap_usd": row.get("market_cap"),
                "volume_24h": row.get("total_volume"),
                "volume_24h_usd": row.get("total_volume"),
                "price_change_24h": row.get("price_change_24h"),
                "price_change_percentage_24h": row.get("price_change_percentage_24h"),
                "price_change_percentage_7d": row.get("price_change_percentage_7d_in_currency"),
                "price_change_percentage_30d": row.get("price_change_percentage_30d_in_currency"),
                "high_24h": row.get("high_24h"),
                "low_24h": row.get("low_24h"),
                "ath": row.get("ath"),
                "atl": row.get("atl"),
                "ath_date": _parse_date(row.get("ath_date")),
                "atl_date": _parse_date(row.get("atl_date")),
                "total_supply": row.get("total_supply"),
                "circulating_supply": row.get("circulating_supply"),
                "max_supply": row.get("max_supply"),
            }
        )


def _usd(market: dict[str, Any], key: str) -> Any:
    value = market.get(key)
    return value.get("usd") if isinstance(value, dict) else None


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}
