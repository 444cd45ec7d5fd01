from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Protocol

import redis.asyncio as aioredis

from fleetauth.logging import get_logger

logger = get_logger(__name__)


class SessionNotifier(Protocol):
    async def force_logout(self, identity_key: str, reason: str) -> None: ...


class LoggingNotifier:
    """Fallback when no realtime channel is configured."""

    async def force_logout(self, identity_key: str, reason: str) -> None:
        logger.info("force_logout_not_delivered", identity=identity_key, reason=reason)


class RedisSessionNotifier:
    """Publishes force-logout events for the websocket tier to fan out.

    Messages go to ``<prefix>:<identity>``; subscribers push them to every
    connection that identity holds.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[aioredis.Redis] = None,
        channel_prefix: str = "session_events",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.channel_prefix = channel_prefix

    def channel_for(self, identity_key: str) -> str:
        return f"{self.channel_prefix}:{identity_key}"

    async def force_logout(self, identity_key: str, reason: str) -> None:
        message = {
            "type": "force_logout",
            "identity": identity_key,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        receivers = await self.client.publish(
            self.channel_for(identity_key), json.dumps(message)
        )
        logger.info("force_logout_published", identity=identity_key, receivers=receivers)

    async def close(self) -> None:
        await self.client.aclose()
