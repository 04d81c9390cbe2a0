from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .types import TokenRecord

USER_FIELDS = ("username", "discordId", "timestamp")
TOKEN_FIELDS = (
    "name",
    "ticker",
    "chain",
    "tokenAddress",
    "pumpFunLink",
    "marketCap",
    "percentage",
    "recommendationType",
    "timestamp",
)
PERFORMANCE_FIELDS = (
    "symbol",
    "tokenAddress",
    "priceChange24h",
    "volumeChange24h",
    "trade_24h_change",
    "liquidity",
    "liquidityChange24h",
    "holderChange24h",
    "rugPull",
    "isScam",
    "marketCapChange24h",
    "sustainedGrowth",
    "rapidDump",
    "suspiciousVolume",
    "validationTrust",
    "balance",
    "initialMarketCap",
)


def _has_fields(obj: Any, fields: Sequence[str]) -> bool:
    if not isinstance(obj, dict):
        return False
    return all(obj.get(name) is not None for name in fields)


def is_complete(payload: Optional[Dict[str, Any]]) -> bool:
    if not payload:
        return False
    return (
        _has_fields(payload.get("user"), USER_FIELDS)
        and _has_fields(payload.get("token"), TOKEN_FIELDS)
        and _has_fields(payload.get("performance"), PERFORMANCE_FIELDS)
    )


def build_recommendation(record: TokenRecord) -> Optional[Dict[str, Any]]:
    if record.first_mention is None or record.performance is None:
        return None
    mention = record.first_mention
    first_update = record.updates[0] if record.updates else None
    return {
        "user": mention.to_dict(),
        "token": {
            "name": record.name,
            "ticker": record.ticker,
            "chain": record.chain,
            "tokenAddress": record.token_address,
            "pumpFunLink": record.pump_link,
            "marketCap": first_update.market_cap if first_update else None,
            "percentage": first_update.percentage if first_update else None,
            "recommendationType": first_update.kind if first_update else None,
            "timestamp": mention.timestamp,
        },
        "performance": dict(record.performance),
    }
