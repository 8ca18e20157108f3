"""Connection registry — who is connected right now, per user and tenant.

Learn: Two maps are kept in step:

  _user_channels:  user_id   → {channel: tenant_id}
  _tenant_users:   tenant_id → {user_id, ...}

A user may hold many channels (browser tabs). A tenant's user set is
exactly the users with at least one open channel in that tenant, so when
a user's last channel for a tenant closes the user leaves that tenant's
set, and an empty tenant set is dropped entirely. No orphaned entries.

Mutations take a threading.Lock and never await while holding it. The
event loop alone would make them atomic, but the lock also covers
callers on other threads (e.g. the Starlette TestClient portal).
Sends happen on a snapshot taken under the lock, so a disconnect in
the middle of a broadcast never disturbs delivery to anyone else.

State is process-local. Cross-process fan-out goes through the
RedisBroadcaster in pubsub.py, which feeds each process's registry.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

import structlog
from fastapi.encoders import jsonable_encoder

from herald.events.types import WS_NOTIFICATION

logger = structlog.get_logger()


class Channel(Protocol):
    async def send_json(self, data: Any) -> None: ...


def make_message(message_type: str, data: Any = None) -> dict:
    """Wire envelope for everything pushed over a realtime channel."""
    return {
        "type": message_type,
        "data": jsonable_encoder(data) if data is not None else {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class ConnectionRegistry:
    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        heartbeat_timeout: float = 90.0,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self._lock = threading.Lock()
        self._user_channels: dict[str, dict[Channel, str]] = {}
        self._tenant_users: dict[str, set[str]] = {}

    # ─── Registration ─────────────────────────────────────

    def register_connection(self, user_id: str, tenant_id: str, channel: Channel) -> None:
        with self._lock:
            self._user_channels.setdefault(user_id, {})[channel] = tenant_id
            self._tenant_users.setdefault(tenant_id, set()).add(user_id)
        logger.info(
            "herald.realtime.connected",
            user_id=user_id,
            tenant_id=tenant_id,
            users=len(self._user_channels),
        )

    def unregister_connection(self, user_id: str, tenant_id: str, channel: Channel) -> None:
        with self._lock:
            channels = self._user_channels.get(user_id)
            if channels is None:
                return
            channels.pop(channel, None)

            if tenant_id not in channels.values():
                tenant_users = self._tenant_users.get(tenant_id)
                if tenant_users is not None:
                    tenant_users.discard(user_id)
                    if not tenant_users:
                        del self._tenant_users[tenant_id]

            if not channels:
                del self._user_channels[user_id]
        logger.info(
            "herald.realtime.disconnected",
            user_id=user_id,
            tenant_id=tenant_id,
            users=len(self._user_channels),
        )

    # ─── Delivery ─────────────────────────────────────────

    async def send_to_user(
        self, user_id: str, notification: Any, tenant_id: Optional[str] = None
    ) -> bool:
        """Push to the user's open channels. True if any send succeeded.

        With tenant_id, only channels bound to that tenant receive it; a
        user signed in to two tenants never sees one tenant's traffic on
        the other's socket.
        """
        with self._lock:
            channels = [
                channel
                for channel, bound_tenant in self._user_channels.get(user_id, {}).items()
                if tenant_id is None or bound_tenant == tenant_id
            ]
        if not channels:
            return False

        message = make_message(WS_NOTIFICATION, notification)
        delivered = False
        for channel in channels:
            try:
                await channel.send_json(message)
                delivered = True
            except Exception as e:
                logger.warning("herald.realtime.send_failed", user_id=user_id, error=str(e))
        return delivered

    async def broadcast_to_tenant(self, tenant_id: str, notification: Any) -> dict:
        with self._lock:
            users = list(self._tenant_users.get(tenant_id, ()))
        if not users:
            return {"sent": 0, "total": 0}

        results = await asyncio.gather(
            *(self.send_to_user(user_id, notification, tenant_id) for user_id in users)
        )
        sent = sum(1 for ok in results if ok)
        logger.debug(
            "herald.realtime.broadcast", tenant_id=tenant_id, sent=sent, total=len(users)
        )
        return {"sent": sent, "total": len(users)}

    async def broadcast_to_tenants(self, tenant_ids: Iterable[str], notification: Any) -> dict:
        tenant_ids = list(dict.fromkeys(tenant_ids))
        results = await asyncio.gather(
            *(self.broadcast_to_tenant(t, notification) for t in tenant_ids)
        )
        return {
            "tenants": len(tenant_ids),
            "sent": sum(r["sent"] for r in results),
            "total": sum(r["total"] for r in results),
        }

    # ─── Introspection ────────────────────────────────────

    def get_connection_count(self) -> int:
        """Number of distinct users with at least one open channel."""
        with self._lock:
            return len(self._user_channels)

    def get_channel_count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._user_channels.values())

    def get_tenant_user_count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._tenant_users.get(tenant_id, ()))

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._user_channels
