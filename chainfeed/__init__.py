"""
chainfeed - multi-provider Cardano data aggregation.
"""

from chainfeed.models import (
    ConflictStrategy,
    RequestOptions,
    RoutingStrategy,
    TokenData,
    UnifiedResponse,
    WalletData,
)
from chainfeed.sdk import ChainFeed, SDKEvent

__version__ = "0.1.0"

__all__ = [
    "ChainFeed",
    "SDKEvent",
    "ConflictStrategy",
    "RequestOptions",
    "RoutingStrategy",
    "TokenData",
    "UnifiedResponse",
    "WalletData",
]
