"""
Adapter tests against canned upstream payloads (httpx.MockTransport).
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from chainfeed.datasource import (
    BatchTokenDataProvider,
    BlockfrostProvider,
    CoinGeckoProvider,
    HistoricalTokenDataProvider,
    ProviderRegistry,
)
from chainfeed.datasource.blockfrost import hex_to_string, parse_transaction, transaction_type
from chainfeed.models import RecordKind, TransactionStatus, TransactionType
from chainfeed.services.client import ServiceClient
from chainfeed.services.errors import ConfigurationError, ValidationError

HOSKY = "a0028f350aaabe0545fdcb56b039bfb08e4bb4d8c4d7c3c7d481c235" + "484f534b59"

COIN = {
    "id": "cardano",
    "symbol": "ada",
    "name": "Cardano",
    "description": {"en": "Cardano is a proof-of-stake blockchain."},
    "image": {"large": "https://example.org/ada.png"},
    "market_data": {
        "current_price": {"usd": 0.45},
        "market_cap": {"usd": 16_000_000_000},
        "total_volume": {"usd": 300_000_000},
        "price_change_24h": -0.01,
        "price_change_percentage_24h": -2.1,
        "high_24h": {"usd": 0.47},
        "low_24h": {"usd": 0.44},
        "ath": {"usd": 3.09},
        "ath_date": {"usd": "2021-09-02T06:00:10.474Z"},
        "total_supply": 45_000_000_000,
        "circulating_supply": 35_000_000_000,
        "max_supply": 45_000_000_000,
        "last_updated": "2024-05-01T12:00:00.000Z",
    },
}

ASSET = {
    "asset": HOSKY,
    "policy_id": HOSKY[:56],
    "asset_name": "484f534b59",
    "quantity": "1000000000000000",
    "onchain_metadata": None,
    "metadata": {"name": "HOSKY Token", "ticker": "HOSKY", "decimals": 0},
}

TX = {
    "hash": "ab" * 32,
    "block_height": 9_000_000,
    "block_time": 1_714_564_800,
    "fees": "170000",
    "output_amount": [
        {"unit": "lovelace", "quantity": "2000000"},
        {"unit": HOSKY, "quantity": "500"},
    ],
    "asset_mint_or_burn_count": 0,
    "delegation_count": 0,
    "withdrawal_count": 0,
    "valid_contract": True,
}


def mock_client(routes: dict[str, tuple[int, object]], seen: list | None = None) -> ServiceClient:
    """ServiceClient whose transport answers by URL path."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        for suffix, (status, body) in routes.items():
            if request.url.path.endswith(suffix):
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": "Not Found"})

    return ServiceClient(transport=httpx.MockTransport(handler))


class TestCoinGecko:
    async def test_token_data_mapping(self):
        seen = []
        provider = CoinGeckoProvider(client=mock_client({"/coins/cardano": (200, COIN)}, seen))
        await provider.initialize({})

        response = await provider.get_token_data("lovelace")

        assert response.success is True
        data = response.data
        assert data["name"] == "Cardano"
        assert data["symbol"] == "ADA"
        assert data["price"] == 0.45
        assert data["market_cap"] == 16_000_000_000
        assert data["volume_24h"] == 300_000_000
        assert data["max_supply"] == 45_000_000_000
        assert data["ath_date"].year == 2021
        assert response.observed_at["price"] == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
        assert "x-cg-pro-api-key" not in seen[0].headers
        await provider.destroy()

    async def test_api_key_header(self):
        seen = []
        provider = CoinGeckoProvider(client=mock_client({"/coins/cardano": (200, COIN)}, seen))
        await provider.initialize({"api_key": "secret"})

        await provider.get_token_data("lovelace")

        assert seen[0].headers["x-cg-pro-api-key"] == "secret"

    async def test_unmapped_asset_fails(self):
        provider = CoinGeckoProvider(client=mock_client({}))
        await provider.initialize({})

        response = await provider.get_token_data(HOSKY)

        assert response.success is False
        assert "No CoinGecko mapping" in response.error

    async def test_custom_mapping(self):
        provider = CoinGeckoProvider(
            client=mock_client({"/coins/hosky": (200, {**COIN, "name": "Hosky"})}),
            coin_mappings={HOSKY: "hosky"},
        )
        await provider.initialize({})

        response = await provider.get_token_data(HOSKY)

        assert response.data["name"] == "Hosky"

    async def test_rate_limit_is_reported(self):
        provider = CoinGeckoProvider(client=mock_client({"/coins/cardano": (429, {})}))
        await provider.initialize({})

        response = await provider.get_token_data("lovelace")

        assert response.success is False
        assert response.error_category == "rate_limit"
        assert response.retryable is True

    async def test_wallet_data_unsupported(self):
        provider = CoinGeckoProvider(client=mock_client({}))
        await provider.initialize({})

        response = await provider.get_wallet_data("addr1xyz")

        assert response.success is False

    async def test_batch(self):
        rows = [{"id": "cardano", "name": "Cardano", "symbol": "ada", "current_price": 0.45}]
        provider = CoinGeckoProvider(client=mock_client({"/coins/markets": (200, rows)}))
        await provider.initialize({})

        response = await provider.get_token_data_batch(["lovelace", HOSKY])

        assert list(response.data) == ["lovelace"]
        assert response.data["lovelace"]["price"] == 0.45

    async def test_historical(self):
        end = datetime(2024, 5, 2, tzinfo=timezone.utc)
        start = end - timedelta(days=1)
        inside = int((start + timedelta(hours=6)).timestamp() * 1000)
        outside = int((start - timedelta(days=3)).timestamp() * 1000)
        chart = {
            "prices": [[outside, 0.40], [inside, 0.45]],
            "market_caps": [[inside, 16e9]],
            "total_volumes": [[inside, 3e8]],
        }
        provider = CoinGeckoProvider(
            client=mock_client({"/coins/cardano/market_chart": (200, chart)})
        )
        await provider.initialize({})

        response = await provider.get_token_data_historical("lovelace", start, end)

        points = response.data["points"]
        assert len(points) == 1
        assert points[0]["price"] == 0.45
        assert points[0]["market_cap"] == 16e9

    async def test_health_check(self):
        provider = CoinGeckoProvider(
            client=mock_client({"/ping": (200, {"gecko_says": "(V3) To the Moon!"})})
        )
        await provider.initialize({})

        health = await provider.health_check()

        assert health.healthy is True
        assert health.provider == "coingecko"

    async def test_capabilities(self):
        provider = CoinGeckoProvider()

        assert provider.supports("batch") is True
        assert provider.supports("historical") is True
        assert provider.supports("realtime") is False
        assert isinstance(provider, BatchTokenDataProvider)
        assert isinstance(provider, HistoricalTokenDataProvider)
        assert "price" in provider.capabilities.token_data
        assert provider.capabilities.wallet_data == ()

    async def test_double_initialize(self):
        provider = CoinGeckoProvider(client=mock_client({}))
        await provider.initialize({})
        with pytest.raises(ConfigurationError):
            await provider.initialize({})


class TestBlockfrost:
    async def test_project_id_is_required(self):
        provider = BlockfrostProvider(client=mock_client({}))
        with pytest.raises(ValidationError):
            await provider.initialize({})

    async def test_lovelace_is_static(self):
        seen = []
        provider = BlockfrostProvider(client=mock_client({}, seen))
        await provider.initialize({"project_id": "mainnetXYZ"})

        response = await provider.get_token_data("lovelace")

        assert response.data["symbol"] == "ADA"
        assert response.data["decimals"] == 6
        assert seen == []

    async def test_asset_mapping(self):
        seen = []
        provider = BlockfrostProvider(client=mock_client({f"/assets/{HOSKY}": (200, ASSET)}, seen))
        await provider.initialize({"project_id": "mainnetXYZ"})

        response = await provider.get_token_data(HOSKY)

        assert response.data["name"] == "HOSKY Token"
        assert response.data["symbol"] == "HOSKY"
        assert response.data["total_supply"] == 1_000_000_000_000_000
        assert seen[0].headers["project_id"] == "mainnetXYZ"

    async def test_missing_asset_is_not_retryable(self):
        provider = BlockfrostProvider(client=mock_client({}))
        await provider.initialize({"project_id": "mainnetXYZ"})

        response = await provider.get_token_data(HOSKY)

        assert response.success is False
        assert response.retryable is False

    async def test_wallet_data(self):
        address = "addr1" + "q" * 98
        routes = {
            f"/addresses/{address}/transactions": (200, [{"tx_hash": TX["hash"]}]),
            f"/addresses/{address}": (
                200,
                {"amount": [{"unit": "lovelace", "quantity": "5000000"}]},
            ),
            f"/txs/{TX['hash']}": (200, TX),
        }
        provider = BlockfrostProvider(client=mock_client(routes))
        await provider.initialize({"project_id": "mainnetXYZ"})

        response = await provider.get_wallet_data(address)

        assert response.success is True
        assert response.data["balance"] == {"lovelace": 5_000_000}
        assert response.data["portfolio"]["assets"][0]["symbol"] == "ADA"
        [tx] = response.data["transactions"]
        assert tx["hash"] == TX["hash"]
        assert tx["amount"] == 2_000_000

    async def test_failed_transaction_detail_is_skipped(self):
        address = "addr1" + "q" * 98
        routes = {
            f"/addresses/{address}/transactions": (200, [{"tx_hash": "cd" * 32}]),
            f"/addresses/{address}": (200, {"amount": []}),
        }
        provider = BlockfrostProvider(client=mock_client(routes))
        await provider.initialize({"project_id": "mainnetXYZ"})

        response = await provider.get_wallet_data(address)

        assert response.success is True
        assert response.data["transactions"] == []

    async def test_unauthorized_health_check(self):
        provider = BlockfrostProvider(client=mock_client({"/health": (403, {})}))
        await provider.initialize({"project_id": "bad"})

        health = await provider.health_check()

        assert health.healthy is False
        assert health.last_error

    def test_supports_no_extensions(self):
        provider = BlockfrostProvider()
        assert provider.supports("batch") is False
        assert provider.supports("historical") is False


class TestParsing:
    def test_parse_transaction(self):
        tx = parse_transaction(TX)

        assert tx.type == TransactionType.SEND
        assert tx.status == TransactionStatus.CONFIRMED
        assert tx.fee == 170_000
        assert tx.timestamp.tzinfo is not None
        assert [(a.asset_unit, a.amount) for a in tx.assets] == [(HOSKY, 500)]

    @pytest.mark.parametrize(
        "counts, expected",
        [
            ({"asset_mint_or_burn_count": 1}, TransactionType.MINT),
            ({"delegation_count": 1}, TransactionType.STAKE),
            ({"withdrawal_count": 1}, TransactionType.REWARD),
            ({}, TransactionType.SEND),
        ],
    )
    def test_transaction_type(self, counts, expected):
        assert transaction_type(counts) == expected

    def test_hex_to_string(self):
        assert hex_to_string("484f534b59") == "HOSKY"
        assert hex_to_string("not hex") == "not hex"
        assert hex_to_string("") == ""


class TestRegistry:
    def test_providers_for_field(self):
        registry = ProviderRegistry([CoinGeckoProvider(), BlockfrostProvider()])

        token_names = [p.name for p in registry.providers_for_field("name", RecordKind.TOKEN)]
        wallet_names = [
            p.name for p in registry.providers_for_field("balance", RecordKind.WALLET)
        ]

        assert token_names == ["coingecko", "blockfrost"]
        assert wallet_names == ["blockfrost"]
        assert len(registry) == 2
        assert "coingecko" in registry

    def test_unregister(self):
        registry = ProviderRegistry([CoinGeckoProvider()])

        assert registry.unregister("coingecko") is not None
        assert registry.unregister("coingecko") is None
        assert registry.names() == []
