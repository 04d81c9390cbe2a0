from __future__ import annotations

from dataclasses import dataclass
import os

from .utils import parse_bool

STORE_BACKENDS = ("json", "sqlite")


@dataclass(frozen=True)
class Config:
    discord_token: str
    discord_guild_id: str
    discord_channel_id: str
    listing_bot_username: str
    discord_timeout_sec: int

    birdeye_api_key: str
    birdeye_timeout_sec: int
    birdeye_retry_attempts: int
    birdeye_retry_base_delay_sec: float
    birdeye_max_rps: int
    birdeye_max_concurrency: int

    agent_id: str
    recommendation_base_url: str
    delivery_timeout_sec: int
    delivery_pause_sec: float

    store_backend: str
    data_path: str
    sqlite_path: str
    import_json_path: str

    log_level: str
    dry_run: bool

    ingest_interval_sec: int
    mention_interval_sec: int
    performance_interval_sec: int
    delivery_interval_sec: int
    performance_refresh_sec: int


def load_config() -> Config:
    discord_token = os.getenv("DISCORD_AUTHORIZATION_TOKEN", "").strip()
    if not discord_token:
        discord_token = os.getenv("AUTHORIZATION_TOKEN", "").strip()
    if not discord_token:
        raise RuntimeError("DISCORD_AUTHORIZATION_TOKEN is required")

    discord_guild_id = os.getenv("DISCORD_GUILD_ID", os.getenv("GUILD_ID", "")).strip()
    discord_channel_id = os.getenv("DISCORD_CHANNEL_ID", os.getenv("CHANNEL_ID", "")).strip()
    if not discord_guild_id or not discord_channel_id:
        raise RuntimeError("DISCORD_GUILD_ID and DISCORD_CHANNEL_ID are required")
    listing_bot_username = os.getenv("LISTING_BOT_USERNAME", "Rick").strip()
    discord_timeout_sec = int(os.getenv("DISCORD_TIMEOUT_SEC", "60"))

    birdeye_api_key = os.getenv("BIRDEYE_API_KEY", "").strip()
    if not birdeye_api_key:
        raise RuntimeError("BIRDEYE_API_KEY is required")
    birdeye_timeout_sec = int(os.getenv("BIRDEYE_TIMEOUT_SEC", "10"))
    birdeye_retry_attempts = int(os.getenv("BIRDEYE_RETRY_ATTEMPTS", "3"))
    birdeye_retry_base_delay_sec = float(os.getenv("BIRDEYE_RETRY_BASE_DELAY_SEC", "2.0"))
    birdeye_max_rps = int(os.getenv("BIRDEYE_MAX_RPS", "5"))
    birdeye_max_concurrency = int(os.getenv("BIRDEYE_MAX_CONCURRENCY", "2"))

    dry_run = parse_bool(os.getenv("DRY_RUN", "false"), False)
    agent_id = os.getenv("AGENT_ID", "").strip()
    if not agent_id and not dry_run:
        raise RuntimeError("AGENT_ID is required unless DRY_RUN is enabled")
    recommendation_base_url = os.getenv(
        "RECOMMENDATION_BASE_URL", "http://localhost:3000"
    ).strip().rstrip("/")
    delivery_timeout_sec = int(os.getenv("DELIVERY_TIMEOUT_SEC", "5"))
    delivery_pause_sec = float(os.getenv("DELIVERY_PAUSE_SEC", "3"))

    store_backend = os.getenv("STORE_BACKEND", "json").strip().lower()
    if store_backend not in STORE_BACKENDS:
        raise RuntimeError(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}")
    data_path = os.getenv("DATA_PATH", "").strip() or "./data/tokens.json"
    sqlite_path = os.getenv("DB_PATH", "").strip() or "./data/first_mention_bot.db"
    import_json_path = os.getenv("IMPORT_JSON_PATH", "").strip()

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    ingest_interval_sec = int(os.getenv("INGEST_INTERVAL_SEC", "2"))
    mention_interval_sec = int(os.getenv("MENTION_INTERVAL_SEC", "15"))
    performance_interval_sec = int(os.getenv("PERFORMANCE_INTERVAL_SEC", "1800"))
    delivery_interval_sec = int(os.getenv("DELIVERY_INTERVAL_SEC", "360"))
    performance_refresh_sec = int(os.getenv("PERFORMANCE_REFRESH_MINUTES", "30")) * 60

    return Config(
        discord_token=discord_token,
        discord_guild_id=discord_guild_id,
        discord_channel_id=discord_channel_id,
        listing_bot_username=listing_bot_username,
        discord_timeout_sec=discord_timeout_sec,
        birdeye_api_key=birdeye_api_key,
        birdeye_timeout_sec=birdeye_timeout_sec,
        birdeye_retry_attempts=birdeye_retry_attempts,
        birdeye_retry_base_delay_sec=birdeye_retry_base_delay_sec,
        birdeye_max_rps=birdeye_max_rps,
        birdeye_max_concurrency=birdeye_max_concurrency,
        agent_id=agent_id,
        recommendation_base_url=recommendation_base_url,
        delivery_timeout_sec=delivery_timeout_sec,
        delivery_pause_sec=delivery_pause_sec,
        store_backend=store_backend,
        data_path=data_path,
        sqlite_path=sqlite_path,
        import_json_path=import_json_path,
        log_level=log_level,
        dry_run=dry_run,
        ingest_interval_sec=ingest_interval_sec,
        mention_interval_sec=mention_interval_sec,
        performance_interval_sec=performance_interval_sec,
        delivery_interval_sec=delivery_interval_sec,
        performance_refresh_sec=performance_refresh_sec,
    )
