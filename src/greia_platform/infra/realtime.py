"""In-process realtime bus over WebSocket connection groups.

Each user's sockets join the group ``private-user-<id>``; publishing to a
channel broadcasts to every socket in that group.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RealtimeBus(Protocol):
    async def publish(self, channel: str, event: str, payload: dict) -> None: ...


class ConnectionManager:
    """Manages WebSocket connections with group support."""

    def __init__(self):
        # client_id -> WebSocket
        self.active_connections: dict[str, WebSocket] = {}
        # group (channel) -> client_ids
        self.groups: dict[str, set[str]] = {}

    async def connect(self, websocket: WebSocket, client_id: str, group: Optional[str] = None):
        await websocket.accept()
        self.active_connections[client_id] = websocket
        if group:
            self.groups.setdefault(group, set()).add(client_id)

    def disconnect(self, client_id: str):
        self.active_connections.pop(client_id, None)
        for group, members in list(self.groups.items()):
            members.discard(client_id)
            if not members:
                del self.groups[group]

    async def send_json(self, client_id: str, data: dict):
        ws = self.active_connections.get(client_id)
        if ws:
            try:
                await ws.send_json(data)
            except Exception:
                logger.warning("Failed to send to client %s, removing", client_id)
                self.disconnect(client_id)

    async def broadcast_to_group(self, group: str, data: dict) -> int:
        """Send to every client in a group. Returns the number reached."""
        delivered = 0
        dead: list[str] = []
        for cid in list(self.groups.get(group, set())):
            ws = self.active_connections.get(cid)
            if ws is None:
                continue
            try:
                await ws.send_json(data)
                delivered += 1
            except Exception:
                logger.warning("Broadcast to %s failed, removing", cid)
                dead.append(cid)
        for cid in dead:
            self.disconnect(cid)
        return delivered


manager = ConnectionManager()


class WebSocketBus:
    """RealtimeBus that pushes onto locally connected WebSockets."""

    def __init__(self, connections: Optional[ConnectionManager] = None):
        self.connections = connections or manager

    async def publish(self, channel: str, event: str, payload: dict) -> None:
        message = {
            "type": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = await self.connections.broadcast_to_group(channel, message)
        logger.debug("Published %s to %s (%d sockets)", event, channel, delivered)


_bus = WebSocketBus()


def get_realtime_bus() -> RealtimeBus:
    """FastAPI dependency: the in-process WebSocket bus."""
    return _bus
