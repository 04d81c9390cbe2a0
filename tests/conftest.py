import pytest

from first_mention_bot.db import SqliteStore
from first_mention_bot.store import JsonFileStore


@pytest.fixture(params=["json", "sqlite"])
def open_store(request, tmp_path):
    async def _open():
        if request.param == "json":
            return await JsonFileStore.open(str(tmp_path / "tokens.json"))
        store = await SqliteStore.connect(str(tmp_path / "tokens.db"))
        await store.init()
        return store

    return _open
