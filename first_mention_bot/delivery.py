from __future__ import annotations

import asyncio
from typing import Any, Dict

import aiohttp

from .config import Config


class RecommendationSender:
    def __init__(self, session: aiohttp.ClientSession, config: Config, logger):
        self.session = session
        self.logger = logger
        self.agent_id = config.agent_id
        self.url = f"{config.recommendation_base_url}/recommendation/{config.agent_id}/set"
        self.timeout = aiohttp.ClientTimeout(total=config.delivery_timeout_sec)
        self.pause_sec = config.delivery_pause_sec
        self.dry_run = config.dry_run

    async def send(self, payload: Dict[str, Any]) -> bool:
        token = (payload.get("token") or {}).get("tokenAddress")
        if self.dry_run:
            self.logger.info("delivery_dry_run", extra={"token": token, "payload": payload})
            return False
        try:
            resp = await self.session.post(
                self.url,
                json=payload,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            try:
                if resp.status == 401:
                    self.logger.warning(
                        "delivery_unauthorized", extra={"token": token, "agent_id": self.agent_id}
                    )
                    return False
                if resp.status < 200 or resp.status >= 300:
                    text = await resp.text()
                    self.logger.warning(
                        "delivery_non_2xx",
                        extra={"token": token, "status": resp.status, "body": text[:500]},
                    )
                    return False
            finally:
                resp.release()
        except aiohttp.ClientConnectorError as exc:
            self.logger.warning(
                "delivery_connection_refused", extra={"token": token, "url": self.url, "error": str(exc)}
            )
            return False
        except Exception:
            self.logger.exception("delivery_failed", extra={"token": token})
            return False

        self.logger.info("recommendation_sent", extra={"token": token, "agent_id": self.agent_id})
        if self.pause_sec > 0:
            await asyncio.sleep(self.pause_sec)
        return True
