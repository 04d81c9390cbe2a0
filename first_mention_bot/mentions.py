from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from .discord import DiscordClient
from .store import TokenStore
from .types import UserRef


def pick_first_mention(
    messages: Iterable[Dict[str, Any]], address: str, bot_username: str
) -> Optional[UserRef]:
    for message in messages:
        author = message.get("author") or {}
        if author.get("username") == bot_username or author.get("bot"):
            continue
        content = message.get("content") or ""
        if address not in content:
            continue
        user_id = author.get("id")
        return UserRef(
            username=author.get("username"),
            discord_id=str(user_id) if user_id is not None else None,
            timestamp=message.get("timestamp"),
        )
    return None


class MentionResolver:
    def __init__(self, discord: DiscordClient, bot_username: str, logger):
        self.discord = discord
        self.bot_username = bot_username
        self.logger = logger

    async def find_first_mention(self, address: str) -> Optional[UserRef]:
        messages = await self.discord.search_messages(address)
        return pick_first_mention(messages, address, self.bot_username)

    async def update_token_mention(self, store: TokenStore, address: str) -> Optional[UserRef]:
        record = await store.get_by_address(address)
        if record is None:
            self.logger.info("mention_token_missing", extra={"token": address})
            return None
        if record.first_mention is not None:
            return record.first_mention

        mention = await self.find_first_mention(address)
        if mention is None:
            self.logger.info("mention_not_found", extra={"token": address})
            return None
        await store.set_first_mention(address, mention)
        self.logger.info(
            "mention_resolved",
            extra={"token": address, "username": mention.username},
        )
        return mention
