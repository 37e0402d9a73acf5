"""
WebSocket endpoint for live production updates.

Envelopes published on the production Redis channel (ticker totals, operation
and status events) are relayed by one background task per process to every
registered socket interested in the envelope's machine.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from core.config import get_settings
from core.security import decode_access_token
from realtime.connections import ConnectionRegistry

settings = get_settings()
logger = structlog.get_logger()
router = APIRouter()

HEARTBEAT_SECONDS = 30
RELAY_RETRY_SECONDS = 5


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {"sub": "dev-user", "operator_id": "00000000-0000-0000-0000-000000000001", "role": "ADMIN"}
    return decode_access_token(token)


def envelope_machine_id(message: str) -> str | None:
    try:
        payload = json.loads(message).get("payload") or {}
    except (ValueError, AttributeError):
        return None
    return payload.get("machine_id") if isinstance(payload, dict) else None


async def relay_production_channel(registry: ConnectionRegistry, redis_url: str | None = None, channel: str | None = None):
    """Forward every envelope on the production channel to the registry, reconnecting on failure."""
    channel = channel or settings.production_channel
    while True:
        try:
            await _relay(registry, redis_url or settings.redis_url, channel)
        except Exception as exc:  # noqa: BLE001
            logger.warning("realtime.relay_failed", channel=channel, error=str(exc))
            await asyncio.sleep(RELAY_RETRY_SECONDS)


async def _relay(registry: ConnectionRegistry, redis_url: str, channel: str):
    redis = aioredis.from_url(redis_url)
    pubsub = redis.pubsub()
    try:
        await pubsub.subscribe(channel)
        logger.info("realtime.relay_started", channel=channel)
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            data = message["data"]
            text = data.decode() if isinstance(data, bytes) else str(data)
            await registry.fan_out(text, machine_id=envelope_machine_id(text))
    finally:
        await pubsub.aclose()
        await redis.aclose()
        logger.info("realtime.relay_stopped", channel=channel)


async def send_heartbeats(websocket, user_id: str | None = None, interval: float = HEARTBEAT_SECONDS):
    """Keep-alive frames until the socket stops accepting them."""
    while True:
        await asyncio.sleep(interval)
        try:
            await websocket.send_json({"type": "heartbeat", "payload": {}})
        except Exception as exc:  # noqa: BLE001
            logger.warning("realtime.heartbeat_failed", user_id=user_id, error_type=type(exc).__name__, error=str(exc))
            return


@router.websocket("/ws/production")
async def websocket_production(
    websocket: WebSocket,
    token: str = Query(...),
    machines: str | None = Query(None),
):
    """
    Stream production updates.

    Connect: ws://host/ws/production?token=<jwt>&machines=<id>,<id>

    Messages sent to client:
        {"type": "production:update", "payload": {...}}
        {"type": "operation:started", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    registry: ConnectionRegistry = websocket.app.state.connections
    await websocket.accept()
    machine_ids = [m.strip() for m in machines.split(",") if m.strip()] if machines else None
    await registry.register(websocket, user_id=str(user.get("sub")), machine_ids=machine_ids)

    heartbeat = asyncio.create_task(send_heartbeats(websocket, user_id=str(user.get("sub"))))
    try:
        # Client messages are ignored; receiving detects disconnects.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        heartbeat.cancel()
        await registry.unregister(websocket)
