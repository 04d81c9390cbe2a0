import asyncio

import pytest

from helpers import LOGGER, make_config, make_event, make_listing, make_snapshot

from first_mention_bot.birdeye import BirdeyeError, TokenNotFoundError
from first_mention_bot.discord import DiscordError
from first_mention_bot.mentions import MentionResolver
from first_mention_bot.scheduler import Pipeline, TokenState, derive_state
from first_mention_bot.store import JsonFileStore, build_record
from first_mention_bot.types import AppContext

LISTING = "🆕💊 **[One](https://pump.fun/ADDR1) [20K/5%] - ONE/SOL**"
UPDATE_MSG = "🚀💊 **[Two](https://pump.fun/ADDR2) [50K/10%] - TWO/SOL**"


def _rick(content, timestamp, **extra):
    message = {
        "author": {"id": "999", "username": "Rick", "bot": True},
        "content": content,
        "timestamp": timestamp,
        "mentions": [],
    }
    message.update(extra)
    return message


CHANNEL = [
    _rick(UPDATE_MSG, "2024-05-01T10:05:00Z",
          referenced_message={"author": {"id": "222", "username": "bob"}}),
    {"author": {"id": "222", "username": "bob"}, "content": "ADDR2 looks good",
     "timestamp": "2024-05-01T10:04:00Z"},
    _rick(LISTING, "2024-05-01T10:00:00Z", mentions=[{"id": "111", "username": "alice"}]),
]


class FakeDiscord:
    def __init__(self, channel=None, search=None, error=None):
        self.channel = channel if channel is not None else []
        self.search = search if search is not None else []
        self.error = error
        self.fetches = 0

    async def fetch_channel_messages(self, limit=50):
        self.fetches += 1
        if self.error:
            raise self.error
        return list(self.channel)

    async def search_messages(self, query):
        if self.error:
            raise self.error
        return list(self.search)


class FakeResolver:
    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    async def resolve_performance(self, address):
        self.calls.append(address)
        outcome = self.outcomes.get(address)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or make_snapshot(address)

    async def resolve_many(self, addresses):
        results = {}
        for address in addresses:
            try:
                results[address] = await self.resolve_performance(address)
            except Exception as exc:
                results[address] = exc
        return results


class FakeSender:
    def __init__(self, ok=True):
        self.ok = ok
        self.payloads = []

    async def send(self, payload):
        self.payloads.append(payload)
        return self.ok


def make_pipeline(store, discord=None, resolver=None, sender=None):
    config = make_config()
    discord = discord or FakeDiscord()
    ctx = AppContext(
        config=config,
        logger=LOGGER,
        store=store,
        session=None,
        discord=discord,
        birdeye=None,
        performance=resolver or FakeResolver(),
        mentions=MentionResolver(discord, config.listing_bot_username, LOGGER),
        sender=sender or FakeSender(),
    )
    return Pipeline(ctx)


def run_with_store(open_store, scenario):
    async def _run():
        store = await open_store()
        try:
            await scenario(store)
        finally:
            await store.close()

    asyncio.run(_run())


def test_ingest_saves_listings_and_queues_updates(open_store):
    async def scenario(store):
        pipeline = make_pipeline(store, discord=FakeDiscord(channel=CHANNEL))
        await pipeline.ingest_once()
        assert pipeline.status.success is True
        assert pipeline.status.new_messages_count == 2
        listing = await store.get_by_address("ADDR1")
        assert listing.first_mention.username == "alice"
        update = await store.get_by_address("ADDR2")
        assert update.first_mention is None
        assert update.scan_recommendation.username == "bob"
        assert await store.pending_mention_jobs() == ["ADDR2"]

        await pipeline.ingest_once()
        assert pipeline.status.new_messages_count == 0
        assert len((await store.get_by_address("ADDR1")).updates) == 1

    run_with_store(open_store, scenario)


def test_ingest_failure_updates_status(tmp_path):
    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        discord = FakeDiscord(error=DiscordError("status 500", status=500))
        pipeline = make_pipeline(store, discord=discord)
        with pytest.raises(DiscordError):
            await pipeline.ingest_once()
        assert pipeline.status.success is False
        assert pipeline.status.error == "status 500"
        await pipeline.ingest_job()
        assert discord.fetches == 2

    asyncio.run(scenario())


def test_overlapping_tick_is_skipped(tmp_path):
    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        discord = FakeDiscord(channel=CHANNEL)
        pipeline = make_pipeline(store, discord=discord)
        async with pipeline._ingest_lock:
            await pipeline.ingest_job()
        assert discord.fetches == 0

    asyncio.run(scenario())


def test_mention_job_resolves_and_fetches_initial_performance(open_store):
    async def scenario(store):
        search = [
            _rick(UPDATE_MSG, "2024-05-01T10:05:00Z"),
            {"author": {"id": "333", "username": "carol", "bot": False},
             "content": "ADDR2 send it", "timestamp": "2024-05-01T09:00:00Z"},
        ]
        resolver = FakeResolver()
        pipeline = make_pipeline(
            store, discord=FakeDiscord(channel=CHANNEL, search=search), resolver=resolver
        )
        await pipeline.ingest_once()
        await pipeline.mention_once()

        record = await store.get_by_address("ADDR2")
        assert record.first_mention.username == "carol"
        assert record.first_mention.timestamp == "2024-05-01T09:00:00Z"
        assert await store.pending_mention_jobs() == []
        assert sorted(resolver.calls) == ["ADDR1", "ADDR2"]
        assert record.performance["symbol"] == "TICK"
        assert await store.should_refresh_performance("ADDR2") is False

        await pipeline.mention_once()
        assert len(resolver.calls) == 2

    run_with_store(open_store, scenario)


def test_failed_mention_job_is_dropped(tmp_path):
    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        await store.save([make_event("ADDR2")])
        discord = FakeDiscord(error=DiscordError("status 429", status=429))
        pipeline = make_pipeline(store, discord=discord)
        await pipeline.mention_once()
        assert await store.pending_mention_jobs() == []
        assert (await store.get_by_address("ADDR2")).first_mention is None

    asyncio.run(scenario())


def test_malformed_search_response_drops_job(tmp_path, caplog):
    caplog.set_level("WARNING", logger=LOGGER.name)

    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        await store.save([make_event("ADDR2"), make_event("ADDR3")])
        resolver = FakeResolver()
        pipeline = make_pipeline(store, discord=FakeDiscord(error=ValueError("bad json")),
                                 resolver=resolver)
        await pipeline.mention_once()
        assert await store.pending_mention_jobs() == ["ADDR3"]
        assert (await store.get_by_address("ADDR2")).first_mention is None
        assert resolver.calls == ["ADDR2", "ADDR3"]

    asyncio.run(scenario())
    assert "mention_job_dropped" in caplog.messages


def test_initial_performance_not_found_waits_for_throttle(tmp_path):
    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        await store.save([make_listing("GONE")])
        resolver = FakeResolver({"GONE": TokenNotFoundError("Token not found", status=404)})
        pipeline = make_pipeline(store, resolver=resolver)
        await pipeline.mention_once()
        await pipeline.mention_once()
        assert resolver.calls == ["GONE"]
        assert (await store.get_by_address("GONE")).performance is None

    asyncio.run(scenario())


def test_refresh_batch_marks_only_definitive_outcomes(open_store):
    async def scenario(store):
        await store.save([make_listing("OK"), make_listing("GONE"), make_listing("FLAKY")])
        resolver = FakeResolver({
            "GONE": TokenNotFoundError("Token not found", status=404),
            "FLAKY": BirdeyeError("status 500", status=500),
        })
        pipeline = make_pipeline(store, resolver=resolver)
        await pipeline.refresh_performance_batch()

        assert (await store.get_by_address("OK")).performance is not None
        assert await store.last_performance_refresh("OK") is not None
        assert await store.last_performance_refresh("GONE") is not None
        assert await store.last_performance_refresh("FLAKY") is None
        due = await store.get_tokens_needing_performance_update()
        assert [record.token_address for record in due] == ["FLAKY"]

    run_with_store(open_store, scenario)


async def _ready_store(store):
    await store.save([make_listing("A"), make_listing("B"), make_event("C")])
    for address in ("A", "B", "C"):
        await store.update_performance(address, make_snapshot(address).to_dict())


def test_delivery_sends_each_token_once(open_store):
    async def scenario(store):
        await _ready_store(store)
        sender = FakeSender()
        pipeline = make_pipeline(store, sender=sender)
        await pipeline.deliver_once()
        sent = [payload["token"]["tokenAddress"] for payload in sender.payloads]
        assert sent == ["A", "B"]
        assert pipeline.status.recommendations_sent == 2
        assert await store.is_sent("A") is True
        assert await store.is_sent("C") is False

        await store.update_performance("A", make_snapshot("A", price=1.0).to_dict())
        await pipeline.deliver_once()
        assert len(sender.payloads) == 2

        restarted = make_pipeline(store)
        await restarted.load_status()
        assert restarted.status.recommendations_sent == 2

    run_with_store(open_store, scenario)


def test_failed_delivery_is_retried_next_tick(tmp_path):
    async def scenario():
        store = await JsonFileStore.open(str(tmp_path / "tokens.json"))
        await _ready_store(store)
        sender = FakeSender(ok=False)
        pipeline = make_pipeline(store, sender=sender)
        await pipeline.deliver_once()
        await pipeline.deliver_once()
        assert len(sender.payloads) == 4
        assert await store.count_sent() == 0
        assert pipeline.status.recommendations_sent == 0

    asyncio.run(scenario())


def test_derive_state():
    now = "2024-05-01T10:00:00.000Z"
    update = build_record(make_event(), now)
    assert derive_state(update, sent=False) is TokenState.DISCOVERED
    assert derive_state(update, sent=False, queued=True) is TokenState.MENTION_PENDING

    listing = build_record(make_listing(), now)
    assert derive_state(listing, sent=False) is TokenState.PERFORMANCE_PENDING
    assert derive_state(listing, sent=False, refresh_due=False) is TokenState.MENTION_RESOLVED

    listing.performance = make_snapshot().to_dict()
    assert derive_state(listing, sent=False) is TokenState.READY
    assert derive_state(listing, sent=True) is TokenState.SENT

    listing.performance["liquidity"] = None
    assert derive_state(listing, sent=False) is TokenState.MENTION_RESOLVED
