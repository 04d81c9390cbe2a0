import json
import logging
from datetime import datetime, timezone

import pytest

from first_mention_bot.config import load_config
from first_mention_bot.logger import JsonFormatter
from first_mention_bot.utils import coerce_ts, format_iso, normalize_iso, parse_bool

REQUIRED_ENV = {
    "DISCORD_AUTHORIZATION_TOKEN": "token",
    "DISCORD_GUILD_ID": "guild",
    "DISCORD_CHANNEL_ID": "channel",
    "BIRDEYE_API_KEY": "key",
    "AGENT_ID": "agent",
}


def _set_env(monkeypatch, **overrides):
    env = dict(REQUIRED_ENV, **overrides)
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)


def test_load_config_defaults(monkeypatch):
    _set_env(monkeypatch)
    config = load_config()
    assert config.listing_bot_username == "Rick"
    assert config.birdeye_retry_attempts == 3
    assert config.birdeye_retry_base_delay_sec == 2.0
    assert config.delivery_timeout_sec == 5
    assert config.ingest_interval_sec == 2
    assert config.performance_refresh_sec == 1800
    assert config.store_backend == "json"


def test_load_config_requires_credentials(monkeypatch):
    _set_env(monkeypatch, DISCORD_AUTHORIZATION_TOKEN=None, AUTHORIZATION_TOKEN=None)
    with pytest.raises(RuntimeError):
        load_config()


def test_load_config_agent_optional_in_dry_run(monkeypatch):
    _set_env(monkeypatch, AGENT_ID=None, DRY_RUN="true")
    assert load_config().dry_run is True
    _set_env(monkeypatch, AGENT_ID=None, DRY_RUN="false")
    with pytest.raises(RuntimeError):
        load_config()


def test_load_config_rejects_unknown_backend(monkeypatch):
    _set_env(monkeypatch, STORE_BACKEND="mongo")
    with pytest.raises(RuntimeError):
        load_config()


def test_json_formatter_includes_extra():
    record = logging.LogRecord("first_mention_bot", logging.INFO, __file__, 1, "recommendation_sent",
                               None, None)
    record.token = "ADDR123"
    data = json.loads(JsonFormatter().format(record))
    assert data["event"] == "recommendation_sent"
    assert data["service"] == "first_mention_bot"
    assert data["token"] == "ADDR123"
    assert data["level"] == "INFO"
    assert "lineno" not in data
    assert data["time"].endswith("Z")


def test_timestamp_helpers():
    dt = datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert format_iso(dt) == "2024-05-01T10:00:00.123Z"
    assert normalize_iso("2024-05-01T12:00:00+02:00") == "2024-05-01T10:00:00.000Z"
    assert normalize_iso("not a date") is None
    assert coerce_ts(1714557600000) == 1714557600
    assert coerce_ts("2024-05-01T10:00:00Z") == 1714557600
    assert coerce_ts(True) is None
    assert parse_bool("yes") is True
    assert parse_bool("maybe", True) is True
