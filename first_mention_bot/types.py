from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    import aiohttp
    import logging

    from .birdeye import BirdeyeClient
    from .config import Config
    from .delivery import RecommendationSender
    from .discord import DiscordClient
    from .mentions import MentionResolver
    from .performance import PerformanceResolver
    from .store import TokenStore

NEW_LISTING = "new_listing"
UPDATE = "update"
DEFAULT_CHAIN = "SOL"


@dataclass(frozen=True)
class UserRef:
    username: Optional[str]
    discord_id: Optional[str]
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "discordId": self.discord_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["UserRef"]:
        if not isinstance(data, dict):
            return None
        return cls(
            username=data.get("username"),
            discord_id=data.get("discordId"),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class TokenStats:
    market_cap: str
    percentage: str


@dataclass(frozen=True)
class MentionEvent:
    token_name: str
    ticker: str
    chain: str
    token_address: str
    pump_link: str
    update_kind: str
    stats: Optional[TokenStats] = None
    has_source_link: bool = False
    poster: Optional[UserRef] = None
    message_timestamp: Optional[str] = None


@dataclass
class UpdateEntry:
    timestamp: str
    market_cap: Optional[str]
    percentage: Optional[str]
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "marketCap": self.market_cap,
            "percentage": self.percentage,
            "type": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateEntry":
        return cls(
            timestamp=data.get("timestamp"),
            market_cap=data.get("marketCap"),
            percentage=data.get("percentage"),
            kind=data.get("type") or NEW_LISTING,
        )


@dataclass
class TokenRecord:
    token_address: str
    name: Optional[str] = None
    ticker: Optional[str] = None
    chain: str = DEFAULT_CHAIN
    pump_link: Optional[str] = None
    first_seen_at: Optional[str] = None
    msg_timestamp: Optional[str] = None
    scan_recommendation: Optional[UserRef] = None
    updates: List[UpdateEntry] = field(default_factory=list)
    first_mention: Optional[UserRef] = None
    performance: Optional[Dict[str, Any]] = None
    last_performance_update: Optional[str] = None

    @property
    def latest_update(self) -> Optional[UpdateEntry]:
        return self.updates[-1] if self.updates else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "ticker": self.ticker,
            "chain": self.chain,
            "tokenAddress": self.token_address,
            "firstSeenAt": self.first_seen_at,
            "pumpFunLink": self.pump_link,
            "msgTimestamp": self.msg_timestamp,
            "updates": [update.to_dict() for update in self.updates],
        }
        if self.scan_recommendation is not None:
            data["scanRecommendation"] = self.scan_recommendation.to_dict()
        if self.first_mention is not None:
            data["firstMention"] = self.first_mention.to_dict()
        if self.performance is not None:
            data["performance"] = dict(self.performance)
        if self.last_performance_update is not None:
            data["lastPerformanceUpdate"] = self.last_performance_update
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        updates = data.get("updates") or []
        performance = data.get("performance")
        return cls(
            token_address=data["tokenAddress"],
            name=data.get("name"),
            ticker=data.get("ticker"),
            chain=data.get("chain") or DEFAULT_CHAIN,
            pump_link=data.get("pumpFunLink"),
            first_seen_at=data.get("firstSeenAt"),
            msg_timestamp=data.get("msgTimestamp"),
            scan_recommendation=UserRef.from_dict(data.get("scanRecommendation")),
            updates=[UpdateEntry.from_dict(item) for item in updates if isinstance(item, dict)],
            first_mention=UserRef.from_dict(data.get("firstMention")),
            performance=dict(performance) if isinstance(performance, dict) else None,
            last_performance_update=data.get("lastPerformanceUpdate"),
        )


@dataclass(frozen=True)
class PerformanceSnapshot:
    token_address: str
    price_change_24h: float
    volume_change_24h: float
    trade_24h_change: float
    liquidity: float
    liquidity_change_24h: float
    holder_change_24h: float
    rug_pull: bool
    is_scam: bool
    market_cap_change_24h: float
    sustained_growth: bool
    rapid_dump: bool
    suspicious_volume: bool
    validation_trust: float
    balance: float
    initial_market_cap: float
    price: float
    volume_24h: float
    market_cap: float
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "tokenAddress": self.token_address,
            "priceChange24h": self.price_change_24h,
            "volumeChange24h": self.volume_change_24h,
            "trade_24h_change": self.trade_24h_change,
            "liquidity": self.liquidity,
            "liquidityChange24h": self.liquidity_change_24h,
            "holderChange24h": self.holder_change_24h,
            "rugPull": self.rug_pull,
            "isScam": self.is_scam,
            "marketCapChange24h": self.market_cap_change_24h,
            "sustainedGrowth": self.sustained_growth,
            "rapidDump": self.rapid_dump,
            "suspiciousVolume": self.suspicious_volume,
            "validationTrust": self.validation_trust,
            "balance": self.balance,
            "initialMarketCap": self.initial_market_cap,
            "price": self.price,
            "volume24h": self.volume_24h,
            "marketCap": self.market_cap,
        }


@dataclass(frozen=True)
class LiquidityData:
    liquidity: float
    price: float
    price_change_24h: float
    volume_24h: float
    market_cap: float


@dataclass(frozen=True)
class TokenQuery:
    chain: Optional[str] = None
    address: Optional[str] = None
    ticker: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    sort_by: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class PipelineStatus:
    last_run_at: Optional[str] = None
    success: Optional[bool] = None
    new_messages_count: int = 0
    error: Optional[str] = None
    recommendations_sent: int = 0


@dataclass
class AppContext:
    config: "Config"
    logger: "logging.Logger"
    store: "TokenStore"
    session: "aiohttp.ClientSession"
    discord: "DiscordClient"
    birdeye: "BirdeyeClient"
    performance: "PerformanceResolver"
    mentions: "MentionResolver"
    sender: "RecommendationSender"
