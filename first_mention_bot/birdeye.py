from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp

from .config import Config

BIRDEYE_API = "https://public-api.birdeye.so"
TRADE_DATA_PATH = "/defi/v3/token/trade-data/single"
SECURITY_PATH = "/defi/token_security"
OVERVIEW_PATH = "/defi/token_overview"


class BirdeyeError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.data = data


class TokenNotFoundError(BirdeyeError):
    pass


class AsyncRateLimiter:
    def __init__(self, max_rps: int, max_concurrency: int):
        self.min_interval = 1.0 / max(1, max_rps)
        self.sem = asyncio.Semaphore(max(1, max_concurrency))
        self.lock = asyncio.Lock()
        self.last_ts = 0.0

    async def run(self, coro_fn):
        async with self.sem:
            async with self.lock:
                now = time.monotonic()
                wait = self.min_interval - (now - self.last_ts)
                if wait > 0:
                    await asyncio.sleep(wait)
                self.last_ts = time.monotonic()
            return await coro_fn()


class BirdeyeClient:
    def __init__(self, session: aiohttp.ClientSession, config: Config, logger):
        self.session = session
        self.logger = logger
        self.base_url = BIRDEYE_API
        self.headers = {
            "Accept": "application/json",
            "x-chain": "solana",
            "X-API-KEY": config.birdeye_api_key,
        }
        self.timeout = aiohttp.ClientTimeout(total=config.birdeye_timeout_sec)
        self.limiter = AsyncRateLimiter(config.birdeye_max_rps, config.birdeye_max_concurrency)
        self.retry_attempts = max(1, config.birdeye_retry_attempts)
        self.base_delay = config.birdeye_retry_base_delay_sec

    async def fetch_json(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        last_error: Optional[BirdeyeError] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                async def _do_request():
                    return await self.session.get(
                        url, params=params, headers=self.headers, timeout=self.timeout
                    )

                resp = await self.limiter.run(_do_request)
                try:
                    if resp.status == 404:
                        raise TokenNotFoundError("Token not found", status=404)
                    if resp.status < 200 or resp.status >= 300:
                        text = await resp.text()
                        raise BirdeyeError(f"status {resp.status}", status=resp.status, data=text)
                    data = await resp.json()
                finally:
                    resp.release()
                if not isinstance(data, dict):
                    raise BirdeyeError("unexpected payload", status=resp.status, data=data)
                return data
            except TokenNotFoundError:
                self.logger.info("birdeye_not_found", extra={"path": path, "params": params})
                raise
            except BirdeyeError as exc:
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                last_error = BirdeyeError(str(exc) or exc.__class__.__name__)

            if attempt >= self.retry_attempts:
                break
            if last_error.status == 429:
                delay = self.base_delay * attempt
            else:
                delay = self.base_delay
            self.logger.warning(
                "birdeye_retry",
                extra={
                    "path": path,
                    "attempt": attempt,
                    "status": last_error.status,
                    "delay_sec": delay,
                    "error": str(last_error),
                },
            )
            await asyncio.sleep(delay)

        self.logger.warning(
            "birdeye_retry_exhausted",
            extra={"path": path, "params": params, "error": str(last_error)},
        )
        assert last_error is not None
        raise last_error

    async def get_trade_data(self, address: str) -> Dict[str, Any]:
        return await self.fetch_json(TRADE_DATA_PATH, {"address": address})

    async def get_security(self, address: str) -> Dict[str, Any]:
        return await self.fetch_json(SECURITY_PATH, {"address": address})

    async def get_overview(self, address: str) -> Dict[str, Any]:
        return await self.fetch_json(OVERVIEW_PATH, {"address": address})
