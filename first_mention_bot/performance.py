from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .birdeye import BirdeyeClient, BirdeyeError
from .types import LiquidityData, PerformanceSnapshot
from .utils import to_float

TIMEFRAMES = ("24h", "12h", "8h", "6h", "4h", "2h", "1h", "30m")

BATCH_CHUNK_SIZE = 5
BATCH_PAUSE_SEC = 1.0

RAPID_DUMP_1H = -20.0
RAPID_DUMP_30M = -15.0
RAPID_DUMP_24H = -50.0
SUSPICIOUS_VOLUME_24H = 1_000_000.0
SUSPICIOUS_VOLUME_6H = 500_000.0
SUSPICIOUS_VOLUME_1H = 250_000.0
SUSPICIOUS_VOLUME_CHANGE = 500.0


def _timeframe_keys(template: str) -> List[str]:
    return [template.format(tf) for tf in TIMEFRAMES]


PRICE_CHANGE_KEYS = _timeframe_keys("price_change_{}_percent")
VOLUME_CHANGE_KEYS = _timeframe_keys("volume_{}_change_percent")
TRADE_CHANGE_KEYS = _timeframe_keys("trade_{}_change_percent")
HOLDER_CHANGE_KEYS = _timeframe_keys("unique_wallet_{}_change_percent")
VOLUME_USD_KEYS = _timeframe_keys("volume_{}_usd")


def _number(metrics: Dict[str, Any], key: str) -> Optional[float]:
    value = to_float(metrics.get(key))
    if value is None or math.isnan(value):
        return None
    return value


def first_present(metrics: Dict[str, Any], keys: Sequence[str], default: float = 0.0) -> float:
    for key in keys:
        value = _number(metrics, key)
        if value:
            return value
    return default


def _below(metrics: Dict[str, Any], key: str, threshold: float) -> bool:
    value = _number(metrics, key)
    return value is not None and value < threshold


def _above(metrics: Dict[str, Any], key: str, threshold: float) -> bool:
    value = _number(metrics, key)
    return value is not None and value > threshold


def sustained_growth(metrics: Dict[str, Any]) -> bool:
    for tf in ("24h", "12h", "6h"):
        value = _number(metrics, f"price_change_{tf}_percent")
        if value and value < 0:
            return False
    return _above(metrics, "price_change_4h_percent", 0)


def rapid_dump(metrics: Dict[str, Any]) -> bool:
    return (
        _below(metrics, "price_change_1h_percent", RAPID_DUMP_1H)
        or _below(metrics, "price_change_30m_percent", RAPID_DUMP_30M)
        or _below(metrics, "price_change_24h_percent", RAPID_DUMP_24H)
    )


def suspicious_volume(metrics: Dict[str, Any]) -> bool:
    change = first_present(metrics, ("volume_24h_change_percent", "volume_1h_change_percent"))
    return (
        _above(metrics, "volume_24h_usd", SUSPICIOUS_VOLUME_24H)
        or _above(metrics, "volume_6h_usd", SUSPICIOUS_VOLUME_6H)
        or _above(metrics, "volume_1h_usd", SUSPICIOUS_VOLUME_1H)
        or abs(change) > SUSPICIOUS_VOLUME_CHANGE
    )


def market_cap_change_24h(
    price: Optional[float], price_24h_ago: Optional[float], total_supply: Optional[float]
) -> float:
    if price is None or not price_24h_ago or not total_supply:
        return 0.0
    current = price * total_supply
    previous = price_24h_ago * total_supply
    change = (current - previous) / previous * 100
    return change if math.isfinite(change) else 0.0


def build_snapshot(
    address: str,
    trade_payload: Dict[str, Any],
    security_payload: Dict[str, Any],
    liquidity: Optional[LiquidityData] = None,
) -> PerformanceSnapshot:
    metrics = trade_payload.get("data") if isinstance(trade_payload, dict) else None
    if not isinstance(metrics, dict) or not metrics:
        raise BirdeyeError("Invalid performance data received", status=400)
    security = security_payload.get("data") if isinstance(security_payload, dict) else None
    if not isinstance(security, dict):
        security = {}

    price = _number(metrics, "price")
    total_supply = _number(security, "totalSupply")
    current_market_cap = (price or 0.0) * (total_supply or 0.0)

    if liquidity is not None and liquidity.liquidity:
        liquidity_value = liquidity.liquidity
    else:
        liquidity_value = first_present(metrics, VOLUME_USD_KEYS)
    if liquidity is not None and liquidity.market_cap:
        market_cap = liquidity.market_cap
    else:
        market_cap = current_market_cap

    return PerformanceSnapshot(
        token_address=metrics.get("address") or address,
        price_change_24h=first_present(metrics, PRICE_CHANGE_KEYS),
        volume_change_24h=first_present(metrics, VOLUME_CHANGE_KEYS),
        trade_24h_change=first_present(metrics, TRADE_CHANGE_KEYS),
        liquidity=liquidity_value,
        # No liquidity history is kept, so there is nothing to diff against yet.
        liquidity_change_24h=0.0,
        holder_change_24h=first_present(metrics, HOLDER_CHANGE_KEYS),
        rug_pull=bool(security.get("fakeToken") or False),
        is_scam=not security.get("jupStrictList"),
        market_cap_change_24h=market_cap_change_24h(
            price, _number(metrics, "history_24h_price"), total_supply
        ),
        sustained_growth=sustained_growth(metrics),
        rapid_dump=rapid_dump(metrics),
        suspicious_volume=suspicious_volume(metrics),
        validation_trust=0.0,
        balance=_number(security, "creatorBalance") or 0.0,
        initial_market_cap=current_market_cap,
        price=price or 0.0,
        volume_24h=_number(metrics, "volume_24h_usd") or 0.0,
        market_cap=market_cap,
    )


class PerformanceResolver:
    def __init__(self, client: BirdeyeClient, logger):
        self.client = client
        self.logger = logger

    async def resolve_liquidity(self, address: str) -> LiquidityData:
        payload = await self.client.get_overview(address)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            data = {}
        return LiquidityData(
            liquidity=_number(data, "liquidity") or 0.0,
            price=_number(data, "price") or 0.0,
            price_change_24h=_number(data, "priceChange24h") or 0.0,
            volume_24h=_number(data, "volume24h") or 0.0,
            market_cap=_number(data, "marketCap") or 0.0,
        )

    async def resolve_performance(self, address: str) -> PerformanceSnapshot:
        trade = await self.client.get_trade_data(address)
        security = await self.client.get_security(address)
        liquidity: Optional[LiquidityData] = None
        try:
            liquidity = await self.resolve_liquidity(address)
        except BirdeyeError as exc:
            self.logger.warning(
                "liquidity_unavailable",
                extra={"token": address, "status": exc.status, "error": str(exc)},
            )
        return build_snapshot(address, trade, security, liquidity)

    async def resolve_many(
        self,
        addresses: Iterable[str],
        chunk_size: int = BATCH_CHUNK_SIZE,
        pause_sec: float = BATCH_PAUSE_SEC,
    ) -> Dict[str, Union[PerformanceSnapshot, Exception]]:
        pending = list(addresses)
        results: Dict[str, Union[PerformanceSnapshot, Exception]] = {}
        for start in range(0, len(pending), chunk_size):
            chunk = pending[start : start + chunk_size]
            outcomes = await asyncio.gather(
                *(self.resolve_performance(address) for address in chunk),
                return_exceptions=True,
            )
            for address, outcome in zip(chunk, outcomes):
                results[address] = outcome
            if start + chunk_size < len(pending):
                await asyncio.sleep(pause_sec)
        return results


async def update_token_performance(store, resolver: PerformanceResolver, address: str) -> PerformanceSnapshot:
    snapshot = await resolver.resolve_performance(address)
    await store.update_performance(address, snapshot.to_dict())
    return snapshot
