"""WebSocket endpoint for per-user realtime notifications."""

import json
import logging
import uuid as uuid_mod

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from greia_platform.app.routes.auth import decode_token
from greia_platform.infra.realtime import manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str = Query("")):
    """Subscribe the caller to ``private-user-<id>``.

    Browsers cannot set headers on a WebSocket, so the bearer token comes
    in the query string. Supported incoming messages:
        {"type": "ping"}  ->  server replies {"type": "pong"}
    """
    payload = decode_token(token) if token else None
    if not payload or "sub" not in payload:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = payload["sub"]
    client_id = f"user_{user_id}_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id, group=f"private-user-{user_id}")
    logger.info("Notification socket connected: %s", client_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if msg.get("type") == "ping":
                await manager.send_json(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(client_id)
        logger.info("Notification socket disconnected: %s", client_id)
    except Exception as e:
        logger.error("Notification socket error for %s: %s", client_id, e)
        manager.disconnect(client_id)
