"""
Provider adapters and the registry the engine routes over.
"""

from chainfeed.datasource.base import (
    BaseProvider,
    BatchTokenDataProvider,
    HistoricalTokenDataProvider,
)
from chainfeed.datasource.registry import ProviderRegistry
from chainfeed.datasource.coingecko import CoinGeckoProvider
from chainfeed.datasource.blockfrost import BlockfrostProvider

__all__ = [
    "BaseProvider",
    "BatchTokenDataProvider",
    "HistoricalTokenDataProvider",
    "ProviderRegistry",
    "CoinGeckoProvider",
    "BlockfrostProvider",
]
