"""
Domain records shared by providers, the router and the aggregator.

Wire-facing records (token/wallet data, responses, options) are pydantic
models; per-request bookkeeping (plans, executions, metrics) are dataclasses.
Timestamps are timezone-aware UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordKind(str, Enum):
    TOKEN = "token"
    WALLET = "wallet"


class RoutingStrategy(str, Enum):
    """How the router picks a primary provider for a field."""

    PRIORITY = "priority"
    FASTEST = "fastest"
    RELIABILITY = "reliability"
    COST = "cost"


class ConflictStrategy(str, Enum):
    """How the aggregator picks one value when providers disagree."""

    PRIORITY = "priority"
    MAJORITY = "majority"
    NEWEST = "newest"


class TransactionType(str, Enum):
    SEND = "send"
    RECEIVE = "receive"
    SWAP = "swap"
    STAKE = "stake"
    UNSTAKE = "unstake"
    REWARD = "reward"
    MINT = "mint"
    BURN = "burn"
    CONTRACT_INTERACTION = "contract_interaction"


class TransactionStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


# Wallet sub-records


class PortfolioAsset(BaseModel):
    asset_unit: str
    balance: float
    name: str | None = None
    symbol: str | None = None
    value: float | None = None
    value_usd: float | None = None
    percentage: float | None = None


class PortfolioData(BaseModel):
    total_value: float | None = None
    total_value_usd: float | None = None
    assets: list[PortfolioAsset] = Field(default_factory=list)


class TransactionAsset(BaseModel):
    asset_unit: str
    amount: float
    direction: str  # "in" | "out"


class TransactionData(BaseModel):
    hash: str
    timestamp: datetime
    type: TransactionType = TransactionType.SEND
    status: TransactionStatus = TransactionStatus.CONFIRMED
    block_height: int | None = None
    amount: float | None = None
    fee: float | None = None
    from_address: str | None = None
    to_address: str | None = None
    assets: list[TransactionAsset] = Field(default_factory=list)


class StakingPool(BaseModel):
    pool_id: str
    staked_amount: float
    rewards: float
    pool_name: str | None = None
    apy: float | None = None


class StakingData(BaseModel):
    total_staked: float | None = None
    rewards: float | None = None
    pools: list[StakingPool] = Field(default_factory=list)


# Entity records


class TokenData(BaseModel):
    """Market and metadata record for one asset unit. Every field is optional."""

    model_config = ConfigDict(extra="allow")

    # Price and market
    price: float | None = None
    price_usd: float | None = None
    market_cap: float | None = None
    market_cap_usd: float | None = None
    volume_24h: float | None = None
    volume_24h_usd: float | None = None

    # Price changes
    price_change_24h: float | None = None
    price_change_percentage_24h: float | None = None
    price_change_7d: float | None = None
    price_change_percentage_7d: float | None = None
    price_change_30d: float | None = None
    price_change_percentage_30d: float | None = None

    # Supply and holders
    total_supply: float | None = None
    circulating_supply: float | None = None
    max_supply: float | None = None
    holders: int | None = None

    # Metadata
    name: str | None = None
    symbol: str | None = None
    decimals: int | None = None
    description: str | None = None
    logo: str | None = None

    # Trading
    high_24h: float | None = None
    low_24h: float | None = None
    ath: float | None = None
    atl: float | None = None
    ath_date: datetime | None = None
    atl_date: datetime | None = None

    # DEX
    liquidity: float | None = None
    liquidity_usd: float | None = None

    data_source: list[str] = Field(default_factory=list)
    last_updated: datetime | None = None


class WalletData(BaseModel):
    """Balance, portfolio and activity record for one address."""

    model_config = ConfigDict(extra="allow")

    balance: dict[str, float] | None = None
    balance_usd: float | None = None
    portfolio: PortfolioData | None = None
    transactions: list[TransactionData] | None = None
    staking: StakingData | None = None

    data_source: list[str] = Field(default_factory=list)
    last_updated: datetime | None = None


_PROVENANCE = ("data_source", "last_updated")

TOKEN_FIELDS: tuple[str, ...] = tuple(
    name for name in TokenData.model_fields if name not in _PROVENANCE
)
WALLET_FIELDS: tuple[str, ...] = tuple(
    name for name in WalletData.model_fields if name not in _PROVENANCE
)

RECORD_FIELDS: dict[RecordKind, tuple[str, ...]] = {
    RecordKind.TOKEN: TOKEN_FIELDS,
    RecordKind.WALLET: WALLET_FIELDS,
}


# Provider contract records


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_second: float | None = None
    requests_per_minute: float | None = None
    requests_per_hour: float | None = None
    requests_per_day: float | None = None


class ProviderFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch: bool = False
    realtime: bool = False
    historical: bool = False


class ProviderCapabilities(BaseModel):
    """Declared once at registration and never mutated."""

    model_config = ConfigDict(frozen=True)

    token_data: tuple[str, ...] = ()
    wallet_data: tuple[str, ...] = ()
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    features: ProviderFeatures = Field(default_factory=ProviderFeatures)
    cost_per_request: float = 0.0

    def fields_for(self, kind: RecordKind) -> tuple[str, ...]:
        return self.token_data if kind == RecordKind.TOKEN else self.wallet_data


class ProviderHealth(BaseModel):
    provider: str
    healthy: bool
    last_check: datetime = Field(default_factory=utcnow)
    consecutive_failures: int = 0
    response_time: float | None = None  # ms
    last_error: str | None = None


class ProviderResponse(BaseModel):
    """
    Outcome of one adapter call.

    ``observed_at`` optionally maps field names to the time the upstream
    observed that value; it feeds the ``newest`` conflict strategy.
    ``error_category`` carries the error taxonomy kind of a failure.
    """

    success: bool
    provider: str
    data: dict[str, Any] | None = None
    error: str | None = None
    error_category: str | None = None
    retryable: bool | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    observed_at: dict[str, datetime] | None = None


class RequestOptions(BaseModel):
    """Per-call knobs. Durations are in seconds."""

    timeout: float | None = None
    max_retries: int | None = None
    retry_delay: float | None = None
    preferred_providers: list[str] = Field(default_factory=list)
    fallback_providers: list[str] = Field(default_factory=list)
    use_cache: bool = True
    cache_timeout: float | None = None
    routing_strategy: RoutingStrategy | None = None


class AggregationRequest(BaseModel):
    identifier: str
    fields: list[str]
    options: RequestOptions = Field(default_factory=RequestOptions)
    strategy: ConflictStrategy = ConflictStrategy.PRIORITY


class TokenDataRequest(AggregationRequest):
    pass


class WalletDataRequest(AggregationRequest):
    pass


# Responses


class ResponseMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_sources: list[str]
    cache_status: str = "miss"  # "hit" | "miss" | "partial"
    response_time: float  # ms
    timestamp: datetime
    provider_health: dict[str, bool] = Field(default_factory=dict)


class ErrorEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    error: str
    recoverable: bool = True
    category: str | None = None


# Routing and aggregation bookkeeping


@dataclass
class ProviderMetrics:
    """Rolling per-provider statistics. Response times are in ms."""

    avg_response_time: float = 1000.0
    total_requests: int = 0
    failed_requests: int = 0
    success_rate: float = 1.0
    last_used: datetime | None = None
    cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "avg_response_time": round(self.avg_response_time, 2),
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "success_rate": self.success_rate,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "cost": self.cost,
        }


@dataclass
class RoutingPlan:
    field: str
    provider: str
    fallback_providers: list[str] = field(default_factory=list)
    estimated_response_time: float = 0.0
    estimated_success_rate: float = 0.0
    estimated_cost: float = 0.0


@dataclass
class ProviderExecution:
    provider: str
    success: bool
    data: dict[str, Any] | None = None
    error: BaseException | None = None
    response_time: float = 0.0  # ms
    fields_provided: list[str] = field(default_factory=list)
    observed_at: dict[str, datetime] | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class FieldConflict:
    provider: str
    value: Any
    count: int = 1


@dataclass
class FieldAggregationResult:
    field: str
    value: Any
    sources: list[str]
    confidence: float
    conflicts: list[FieldConflict] = field(default_factory=list)


class UnifiedResponse(BaseModel, Generic[T]):
    """
    What callers get back: data, provenance and per-provider errors.

    ``field_results`` keeps the per-field resolution (sources, confidence,
    conflicting values) behind each value in ``data``.
    """

    model_config = ConfigDict(frozen=True)

    data: T
    metadata: ResponseMetadata
    errors: list[ErrorEntry] = Field(default_factory=list)
    field_results: dict[str, FieldAggregationResult] = Field(default_factory=dict)
