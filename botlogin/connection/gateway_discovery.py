# Gateway Discovery - REST lookup of the gateway URL
# GET /gateway/bot with the bot token

"""
Gateway Discovery Module

Responsibilities:
- Ask the REST API for the current gateway URL
- Authenticate with the bot token ("Bot <token>")
- Turn every failure into DiscoveryError with a readable message

REST API:
- Base URL: https://discord.com/api/v10
- Auth: Authorization: Bot <token>
- GET /gateway/bot

Response format:
{
  "url": "wss://gateway.discord.gg",
  "shards": 1,
  "session_start_limit": {"total": 1000, "remaining": 999, ...}
}
Error responses carry {"message": "401: Unauthorized", "code": 0}.
"""

import asyncio
from typing import Optional

import aiohttp

from .errors import DiscoveryError
from ..utils.helpers import authorization_token
from ..utils.logger import setup_logger

class GatewayDiscovery:
    """
    Resolves the gateway URL for a bot token

    A new HTTP session is opened per lookup unless one is passed in; lookups
    happen once per fresh login, so there is nothing to pool.
    """

    BASE_URL = "https://discord.com/api/v10"

    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize discovery client

        Args:
            base_url: REST API base URL
            timeout: Total request timeout in seconds
            session: Optional shared aiohttp session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self.logger = setup_logger("GatewayDiscovery", "INFO")
        self._stats = {"lookups": 0, "errors": 0}

    async def fetch_gateway_url(self, token: str) -> str:
        """
        Fetch the gateway URL

        Args:
            token: Bot token (with or without prefix)

        Returns:
            Gateway URL string

        Raises:
            DiscoveryError: network failure, non-2xx response, or no URL
        """
        self._stats["lookups"] += 1
        url = f"{self.base_url}/gateway/bot"
        headers = {
            "Authorization": authorization_token(token),
            "Content-Type": "application/json",
        }

        try:
            if self._session is not None:
                data = await self._request(self._session, url, headers)
            else:
                async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as session:
                    data = await self._request(session, url, headers)
        except DiscoveryError:
            self._stats["errors"] += 1
            raise
        except asyncio.TimeoutError as e:
            self._stats["errors"] += 1
            raise DiscoveryError("Gateway lookup timed out") from e
        except aiohttp.ClientError as e:
            self._stats["errors"] += 1
            raise DiscoveryError(f"Gateway lookup failed: {e}") from e

        gateway_url = data.get("url") if isinstance(data, dict) else None
        if not gateway_url:
            self._stats["errors"] += 1
            raise DiscoveryError("No gateway URL in response")

        self.logger.info(f"Gateway URL: {gateway_url}")
        return gateway_url

    async def _request(self, session: aiohttp.ClientSession, url: str, headers: dict):
        async with session.get(url, headers=headers) as resp:
            if not 200 <= resp.status < 300:
                raise DiscoveryError(await self._error_message(resp))
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise DiscoveryError("Invalid JSON in gateway response") from e

    async def _error_message(self, resp: aiohttp.ClientResponse) -> str:
        try:
            body = await resp.json(content_type=None)
        except (ValueError, aiohttp.ClientError):
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {resp.status}"

    def get_stats(self) -> dict:
        """Get discovery statistics"""
        return dict(self._stats)
