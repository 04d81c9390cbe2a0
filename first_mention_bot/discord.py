from __future__ import annotations

from typing import Any, Dict, List, Optional

import aiohttp

from .config import Config

DISCORD_API = "https://discord.com/api/v9"
CHANNEL_HISTORY_LIMIT = 50


class DiscordError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.data = data


def flatten_search_results(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    messages: List[Dict[str, Any]] = []
    for item in payload.get("messages") or []:
        # Search groups each hit with its surrounding context as a nested list.
        if isinstance(item, list):
            messages.extend(msg for msg in item if isinstance(msg, dict))
        elif isinstance(item, dict):
            messages.append(item)
    return messages


class DiscordClient:
    def __init__(self, session: aiohttp.ClientSession, config: Config, logger):
        self.session = session
        self.logger = logger
        self.base_url = DISCORD_API
        self.guild_id = config.discord_guild_id
        self.channel_id = config.discord_channel_id
        self.headers = {
            "Authorization": config.discord_token,
            "Content-Type": "application/json",
            "Accept": "*/*",
        }
        self.timeout = aiohttp.ClientTimeout(total=config.discord_timeout_sec)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        resp = await self.session.get(url, params=params, headers=self.headers, timeout=self.timeout)
        try:
            if resp.status < 200 or resp.status >= 300:
                text = await resp.text()
                self.logger.warning("discord_non_200", extra={"status": resp.status, "url": url})
                raise DiscordError(f"status {resp.status}", status=resp.status, data=text)
            return await resp.json()
        finally:
            resp.release()

    async def fetch_channel_messages(self, limit: int = CHANNEL_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        data = await self._get_json(
            f"/channels/{self.channel_id}/messages", params={"limit": str(limit)}
        )
        if not isinstance(data, list):
            return []
        return [msg for msg in data if isinstance(msg, dict)]

    async def search_messages(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get_json(
            f"/guilds/{self.guild_id}/messages/search",
            params={"channel_id": self.channel_id, "content": query},
        )
        return flatten_search_results(data)
