from typing import Set
from fastapi import WebSocket
import asyncio

class ConnectionManager:
    """Fan-out of live tracker events (locations, alerts, commands) to dashboards."""

    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.active_connections.discard(websocket)

    async def broadcast_text(self, message: str):
        async with self._lock:
            targets = list(self.active_connections)
        if targets:
            await asyncio.gather(*(self._safe_send(ws, message) for ws in targets))

    async def _safe_send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception:
            # dead socket
            await self.disconnect(ws)
