"""Redis connection + pub/sub broadcast bus.

Learn: Redis pub/sub is fire-and-forget. If no process is subscribed the
message is lost. That's fine for live pushes — the notification record is
already persisted and clients can always query for what they missed.

Channel naming: herald:tenants:{tenant_id}
Every API process runs relay_broadcasts(), PSUBSCRIBEd to
herald:tenants:*, and re-delivers each message into its own registry.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from fastapi.encoders import jsonable_encoder

from herald.config import settings
from herald.realtime.registry import ConnectionRegistry

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    client = aioredis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def tenant_channel(prefix: str, tenant_id: str) -> str:
    return f"{prefix}:tenants:{tenant_id}"


class RedisBroadcaster:
    """Publish tenant broadcasts to the shared bus instead of delivering locally."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "herald"):
        self.redis = redis
        self.prefix = prefix

    async def broadcast_to_tenant(self, tenant_id: str, notification: Any) -> dict:
        payload = json.dumps({
            "tenant_id": tenant_id,
            "notification": jsonable_encoder(notification),
        })
        receivers = await self.redis.publish(tenant_channel(self.prefix, tenant_id), payload)
        return {"published": receivers}


async def relay_broadcasts(
    redis: aioredis.Redis,
    registry: ConnectionRegistry,
    prefix: str = "herald",
) -> None:
    """Forward bus messages into the local registry until cancelled."""
    pubsub = redis.pubsub()
    pattern = tenant_channel(prefix, "*")
    await pubsub.psubscribe(pattern)
    logger.info("herald.realtime.relay_started", pattern=pattern)
    try:
        async for message in pubsub.listen():
            if message["type"] != "pmessage":
                continue
            try:
                event = json.loads(message["data"])
                await registry.broadcast_to_tenant(event["tenant_id"], event["notification"])
            except (KeyError, TypeError, json.JSONDecodeError):
                logger.warning("herald.realtime.relay_bad_message", channel=message.get("channel"))
            except Exception:
                logger.exception("herald.realtime.relay_failed")
    except asyncio.CancelledError:
        pass
    finally:
        await pubsub.punsubscribe(pattern)
        await pubsub.aclose()
