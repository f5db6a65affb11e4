"""
Blockfrost API provider for on-chain Cardano data.

API Documentation: https://docs.blockfrost.io
Requires a project id (sent as the ``project_id`` header).
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from chainfeed.datasource.base import BaseProvider
from chainfeed.models import (
    PortfolioAsset,
    PortfolioData,
    ProviderCapabilities,
    ProviderFeatures,
    ProviderHealth,
    ProviderResponse,
    RateLimit,
    RequestOptions,
    TransactionAsset,
    TransactionData,
    TransactionStatus,
    TransactionType,
)
from chainfeed.services.client import ServiceClient, ServiceConfig
from chainfeed.services.errors import ServiceError, ValidationError

LOVELACE = "lovelace"
MAX_TRANSACTIONS = 10


class BlockfrostProvider(BaseProvider):
    """
    Blockfrost provider.

    Token metadata and supply come from ``/assets/{unit}``; wallet balance,
    portfolio and recent transactions from the ``/addresses`` endpoints.
    """

    BASE_URL = "https://cardano-mainnet.blockfrost.io/api/v0"

    name = "blockfrost"
    version = "1.0.0"
    capabilities = ProviderCapabilities(
        token_data=(
            "name",
            "symbol",
            "decimals",
            "description",
            "logo",
            "total_supply",
            "circulating_supply",
        ),
        wallet_data=("balance", "portfolio", "transactions"),
        features=ProviderFeatures(historical=False),
        rate_limit=RateLimit(requests_per_second=10, requests_per_day=100_000),
    )

    def __init__(self, client: ServiceClient | None = None):
        super().__init__(client)

    def is_configured(self) -> bool:
        return bool(self.config.get("project_id"))

    async def on_initialize(self) -> None:
        project_id = self.config.get("project_id")
        if not project_id:
            raise ValidationError("Blockfrost project ID is required", field="project_id")

        if self.client is None:
            self.client = ServiceClient(default_timeout=self.config.get("timeout", 10.0))
            self._owns_client = True

        self.client.register_service(
            ServiceConfig(
                service_id=self.name,
                base_url=self.config.get("base_url") or self.BASE_URL,
                timeout=self.config.get("timeout", 10.0),
                cache_ttl=self.config.get("cache_ttl", 30.0),
                headers={"project_id": project_id, "User-Agent": "chainfeed/1.0"},
            )
        )

    async def health_check(self) -> ProviderHealth:
        start = time.monotonic()
        try:
            self._require_initialized()
            await self.client.request(self.name, "/health", use_cache=False)
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
        try:
            self._require_initialized()

            if asset_unit == LOVELACE:
                return self.ok(
                    {
                        "name": "Cardano",
                        "symbol": "ADA",
                        "decimals": 6,
                        "description": "Cardano native token",
                    }
                )

            result = await self.client.request(
                self.name,
                f"/assets/{asset_unit}",
                timeout=options.timeout if options else None,
            )
            return self.ok(self._transform_asset(result.data))

        except ServiceError as e:
            logger.warning(f"[blockfrost] Token data for {asset_unit[:20]} failed: {e}")
            return self.fail(e)

    async def get_wallet_data(
        self, address: str, options: RequestOptions | None = None
    ) -> ProviderResponse:
        try:
            self._require_initialized()
            timeout = options.timeout if options else None

            info, transactions = await asyncio.gather(
                self.client.request(self.name, f"/addresses/{address}", timeout=timeout),
                self._get_transactions(address, timeout),
            )
            amounts = info.data.get("amount", [])

            return self.ok(
                {
                    "balance": parse_balance(amounts),
                    "portfolio": build_portfolio(amounts).model_dump(),
                    "transactions": [tx.model_dump() for tx in transactions],
                }
            )

        except ServiceError as e:
            logger.warning(f"[blockfrost] Wallet data for {address[:20]} failed: {e}")
            return self.fail(e)

    async def _get_transactions(
        self, address: str, timeout: float | None
    ) -> list[TransactionData]:
        result = await self.client.request(
            self.name,
            f"/addresses/{address}/transactions",
            params={"count": "20", "order": "desc"},
            timeout=timeout,
        )
        hashes = [
            row["tx_hash"] if isinstance(row, dict) else row
            for row in (result.data or [])[:MAX_TRANSACTIONS]
        ]

        details = await asyncio.gather(
            *(self.client.request(self.name, f"/txs/{h}", timeout=timeout) for h in hashes),
            return_exceptions=True,
        )

        transactions = []
        for tx_hash, detail in zip(hashes, details):
            if isinstance(detail, ServiceError):
                logger.debug(f"[blockfrost] Skipping tx {tx_hash[:16]}: {detail}")
                continue
            if isinstance(detail, BaseException):
                raise detail
            transactions.append(parse_transaction(detail.data))
        return transactions

    def _transform_asset(self, asset: dict[str, Any]) -> dict[str, Any]:
        metadata = asset.get("onchain_metadata") or asset.get("metadata") or {}
        decoded = hex_to_string(asset.get("asset_name") or "")
        quantity = int(asset.get("quantity") or 0)

        data = {
            "name": metadata.get("name") or decoded,
            "symbol": metadata.get("ticker") or decoded,
            "decimals": metadata.get("decimals") or 0,
            "description": metadata.get("description"),
            "logo": metadata.get("logo") or metadata.get("url"),
            "total_supply": quantity,
            "circulating_supply": quantity,
        }
        return {k: v for k, v in data.items() if v is not None and v != ""}


def parse_balance(amounts: list[dict[str, str]]) -> dict[str, float]:
    return {a["unit"]: int(a["quantity"]) for a in amounts}


def build_portfolio(amounts: list[dict[str, str]]) -> PortfolioData:
    return PortfolioData(
        assets=[
            PortfolioAsset(
                asset_unit=a["unit"],
                name="Cardano" if a["unit"] == LOVELACE else None,
                symbol="ADA" if a["unit"] == LOVELACE else None,
                balance=int(a["quantity"]),
            )
            for a in amounts
        ]
    )


def parse_transaction(tx: dict[str, Any]) -> TransactionData:
    outputs = tx.get("output_amount", [])
    ada = next((a for a in outputs if a["unit"] == LOVELACE), None)

    return TransactionData(
        hash=tx["hash"],
        block_height=tx.get("block_height"),
        timestamp=datetime.fromtimestamp(tx.get("block_time", 0), tz=timezone.utc),
        type=transaction_type(tx),
        amount=int(ada["quantity"]) if ada else 0,
        fee=int(tx.get("fees") or 0),
        status=(
            TransactionStatus.CONFIRMED
            if tx.get("valid_contract", True)
            else TransactionStatus.FAILED
        ),
        # direction needs UTXO inspection; outputs are reported as incoming
        assets=[
            TransactionAsset(asset_unit=a["unit"], amount=int(a["quantity"]), direction="in")
            for a in outputs
            if a["unit"] != LOVELACE
        ],
    )


def transaction_type(tx: dict[str, Any]) -> TransactionType:
    if tx.get("asset_mint_or_burn_count", 0) > 0:
        return TransactionType.MINT
    if tx.get("delegation_count", 0) > 0 or tx.get("stake_cert_count", 0) > 0:
        return TransactionType.STAKE
    if tx.get("withdrawal_count", 0) > 0:
        return TransactionType.REWARD
    return TransactionType.SEND


def hex_to_string(value: str) -> str:
    """Decode a hex asset name; non-hex input comes back unchanged."""
    if not value:
        return value
    clean = value[2:] if value.startswith("0x") else value
    try:
        raw = bytes.fromhex(clean)
    except ValueError:
        return value
    decoded = raw.replace(b"\x00", b"").decode("utf-8", errors="ignore")
    return decoded or value
