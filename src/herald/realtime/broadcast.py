"""Broadcast sinks — where the queue worker sends new notifications.

Learn: the worker never talks to the registry directly. It hands each
record to a Broadcaster:

- LocalBroadcaster delivers straight into this process's registry.
  Right for a single API process running its own worker pools.
- RedisBroadcaster (pubsub.py) publishes to a shared channel so every
  API process delivers to the subset of users it holds connections for.
"""

from typing import Any, Protocol

from herald.realtime.registry import ConnectionRegistry


class Broadcaster(Protocol):
    async def broadcast_to_tenant(self, tenant_id: str, notification: Any) -> dict: ...


class LocalBroadcaster:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def broadcast_to_tenant(self, tenant_id: str, notification: Any) -> dict:
        return await self.registry.broadcast_to_tenant(tenant_id, notification)
