"""Notification core — one object wiring every component together.

Learn: build_core() is the only place that reads Settings. It picks the
backends (memory or Redis job broker, local or Redis broadcast), sizes
the worker pools, and connects the queue tiers to the processor.

The API process keeps the result on app.state.core; route handlers reach
it through herald.deps.get_core(). The standalone worker process builds
the same core and just runs the queue.

Choosing a Redis backend without a reachable Redis is a configuration
error and fails right away, rather than silently falling back.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import redis.asyncio as aioredis
import structlog

from herald.config import Settings
from herald.dispatcher.broker import JobBroker, MemoryJobBroker
from herald.dispatcher.jobs import DEFAULT_TIER_POLICIES, Tier, TierPolicy
from herald.dispatcher.queue import NotificationQueue
from herald.dispatcher.redis_broker import RedisJobBroker
from herald.middleware.rate_limit import RateLimiter, RateLimitPolicy, default_policies
from herald.realtime.broadcast import Broadcaster, LocalBroadcaster
from herald.realtime.pubsub import RedisBroadcaster, get_redis, relay_broadcasts
from herald.realtime.registry import ConnectionRegistry
from herald.schemas.subscriber import ExternalApp, SubscriberConfig
from herald.services.collaborators import (
    ApiKeyLookup,
    InMemoryApiKeyLookup,
    InMemoryNotificationStore,
    InMemorySubscriberDirectory,
    NotificationStore,
    SubscriberDirectory,
)
from herald.services.notification_processor import NotificationProcessor
from herald.services.webhook_service import WebhookService

logger = structlog.get_logger()


class CoreConfigError(Exception):
    pass


@dataclass
class NotificationCore:
    config: Settings
    rate_limiter: RateLimiter
    policies: dict[str, RateLimitPolicy]
    queue: NotificationQueue
    webhooks: WebhookService
    registry: ConnectionRegistry
    broadcaster: Broadcaster
    processor: NotificationProcessor
    store: NotificationStore
    subscribers: SubscriberDirectory
    api_keys: ApiKeyLookup
    redis: Optional[aioredis.Redis] = None
    _relay_task: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self, *, run_workers: Optional[bool] = None, relay: bool = True) -> None:
        """Start worker pools and, with the Redis bus, the broadcast relay."""
        if run_workers is None:
            run_workers = self.config.queue_autostart
        if run_workers:
            await self.queue.start()
        if relay and self.redis is not None and self.config.broadcast_backend == "redis":
            self._relay_task = asyncio.create_task(
                relay_broadcasts(self.redis, self.registry, self.config.redis_prefix)
            )
        logger.info(
            "herald.core.started",
            workers=run_workers,
            queue_backend=self.config.queue_backend,
            broadcast_backend=self.config.broadcast_backend,
        )

    async def stop(self) -> None:
        await self.queue.stop()
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
        await self.queue.broker.close()
        await self.webhooks.aclose()
        logger.info("herald.core.stopped")


def tier_policies(config: Settings) -> dict[Tier, TierPolicy]:
    concurrency = {
        Tier.IMMEDIATE: config.queue_immediate_concurrency,
        Tier.BULK: config.queue_bulk_concurrency,
        Tier.SCHEDULED: config.queue_scheduled_concurrency,
    }
    return {
        tier: TierPolicy(
            concurrency=concurrency[tier],
            max_attempts=policy.max_attempts,
            backoff_base=policy.backoff_base,
            backoff_cap=policy.backoff_cap,
        )
        for tier, policy in DEFAULT_TIER_POLICIES.items()
    }


def build_core(
    config: Settings,
    *,
    redis: Optional[aioredis.Redis] = None,
    store: Optional[NotificationStore] = None,
    subscribers: Optional[SubscriberDirectory] = None,
    api_keys: Optional[ApiKeyLookup] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    counter_store: Any = None,
    broker: Optional[JobBroker] = None,
    clock: Callable[[], float] = time.time,
    webhook_sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> NotificationCore:
    """Assemble a NotificationCore from settings and optional collaborators."""
    if redis is None and (
        (config.queue_backend == "redis" and broker is None)
        or config.broadcast_backend == "redis"
    ):
        raise CoreConfigError(
            "Redis is required for the redis queue/broadcast backend but is not available"
        )

    store = store or InMemoryNotificationStore()
    if subscribers is None:
        subscribers = InMemorySubscriberDirectory(audit_cap=config.webhook_audit_cap)
        for app_id, seed in config.subscribers.items():
            subscribers.register(SubscriberConfig(app_id=app_id, **seed))
    if api_keys is None:
        api_keys = InMemoryApiKeyLookup()
        for api_key, app_id in config.api_keys.items():
            api_keys.register(api_key, ExternalApp(app_id=app_id, app_name=app_id))

    # Counters resolve lazily so a Redis outage is just a store error
    if counter_store is not None:
        counter_source = lambda: counter_store  # noqa: E731
    elif redis is not None:
        counter_source = lambda: redis  # noqa: E731
    else:
        counter_source = get_redis
    rate_limiter = RateLimiter(
        counter_source,
        skip_on_error=config.rate_limit_skip_on_error,
        prefix=f"{config.redis_prefix}:rl",
        clock=clock,
    )

    registry = ConnectionRegistry(
        heartbeat_interval=config.ws_heartbeat_interval_seconds,
        heartbeat_timeout=config.ws_heartbeat_timeout_seconds,
    )
    if config.broadcast_backend == "redis":
        broadcaster: Broadcaster = RedisBroadcaster(redis, config.redis_prefix)
    else:
        broadcaster = LocalBroadcaster(registry)

    webhook_kwargs = {}
    if webhook_sleep is not None:
        webhook_kwargs["sleep"] = webhook_sleep
    webhooks = WebhookService(
        subscribers,
        client=http_client,
        max_retries=config.webhook_max_retries,
        base_delay=config.webhook_base_delay_seconds,
        timeout=config.webhook_timeout_seconds,
        **webhook_kwargs,
    )

    processor = NotificationProcessor(
        store, broadcaster, webhooks, chunk_size=config.queue_bulk_chunk_size
    )

    if broker is None:
        if config.queue_backend == "redis":
            broker = RedisJobBroker(redis, prefix=config.redis_prefix)
        else:
            broker = MemoryJobBroker()

    queue = NotificationQueue(
        broker,
        {
            Tier.IMMEDIATE: processor.process_single,
            Tier.BULK: processor.process_bulk,
            Tier.SCHEDULED: processor.process_scheduled,
        },
        policies=tier_policies(config),
        clock=clock,
        visibility_timeout=config.queue_visibility_timeout_seconds,
        poll_interval=config.queue_poll_interval_seconds,
        completed_retention=config.queue_completed_retention_seconds,
        failed_retention=config.queue_failed_retention_seconds,
        bulk_chunk_size=config.queue_bulk_chunk_size,
        bulk_max_items=config.queue_bulk_max_items,
        on_failure=processor.report_failure,
    )

    return NotificationCore(
        config=config,
        rate_limiter=rate_limiter,
        policies=default_policies(config),
        queue=queue,
        webhooks=webhooks,
        registry=registry,
        broadcaster=broadcaster,
        processor=processor,
        store=store,
        subscribers=subscribers,
        api_keys=api_keys,
        redis=redis,
    )
