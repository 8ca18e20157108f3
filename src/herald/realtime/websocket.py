"""WebSocket endpoint — live notification push to connected users.

Learn: Each client connects to /ws?user_id=...&tenant_id=... The handler:
1. Registers the socket in the ConnectionRegistry
2. Sends a "connected" message
3. Runs two concurrent tasks:
   - heartbeat: sends "ping" every interval, gives up once nothing has
     been heard from the client for longer than the timeout
   - client listener: answers "ping" with "pong", records liveness,
     replies "error" to malformed frames
4. When either task ends (disconnect or dead peer) the socket is
   unregistered — exactly the same cleanup as an explicit close.

Identity comes from query params. Authenticating the user is the job of
the gateway in front of this service.
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from herald.deps import get_core
from herald.events.types import WS_CONNECTED, WS_ERROR, WS_PING, WS_PONG
from herald.realtime.registry import make_message

logger = structlog.get_logger()
router = APIRouter()


@router.websocket("/ws")
async def notifications_websocket(websocket: WebSocket):
    user_id = websocket.query_params.get("user_id")
    tenant_id = websocket.query_params.get("tenant_id")
    if not user_id or not tenant_id:
        await websocket.close(code=4001, reason="user_id and tenant_id are required")
        return

    registry = get_core(websocket).registry
    await websocket.accept()
    registry.register_connection(user_id, tenant_id, websocket)

    loop = asyncio.get_running_loop()
    last_seen = loop.time()

    async def heartbeat():
        while True:
            await asyncio.sleep(registry.heartbeat_interval)
            if loop.time() - last_seen > registry.heartbeat_timeout:
                logger.info("herald.realtime.heartbeat_timeout", user_id=user_id)
                return
            await websocket.send_json(make_message(WS_PING))

    async def client_listener():
        nonlocal last_seen
        try:
            while True:
                data = await websocket.receive_text()
                last_seen = loop.time()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_json(make_message(WS_ERROR, {"message": "Invalid JSON"}))
                    continue
                if isinstance(msg, dict) and msg.get("type") == WS_PING:
                    await websocket.send_json(make_message(WS_PONG))
        except WebSocketDisconnect:
            pass

    try:
        await websocket.send_json(
            make_message(WS_CONNECTED, {"user_id": user_id, "tenant_id": tenant_id})
        )
        heartbeat_task = asyncio.create_task(heartbeat())
        client_task = asyncio.create_task(client_listener())

        # Wait for either to finish (client disconnect or dead peer)
        done, pending = await asyncio.wait(
            [heartbeat_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    "herald.realtime.channel_error",
                    user_id=user_id,
                    error=str(task.exception()),
                )
    except WebSocketDisconnect:
        pass
    finally:
        registry.unregister_connection(user_id, tenant_id, websocket)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
