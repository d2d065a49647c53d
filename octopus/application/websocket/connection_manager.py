from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections watching runs"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str, run_id: str, owner_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[connection_id] = websocket
            self.connection_metadata[connection_id] = {
                "run_id": run_id,
                "owner_id": owner_id,
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        await self.send_event(connection_id, ConnectionEvent(status="connected", run_id=run_id))

        logger.info("WebSocket connected", connection_id=connection_id, run_id=run_id)

    async def disconnect(self, connection_id: str):
        """Drop and close a connection"""
        async with self._lock:
            ws = self.active_connections.pop(connection_id, None)
            self.connection_metadata.pop(connection_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("WebSocket already closed", connection_id=connection_id, error=str(e))

        logger.info("WebSocket disconnected", connection_id=connection_id)

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to one connection"""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected client", connection_id=connection_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if connection_id in self.connection_metadata:
                self.connection_metadata[connection_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a connection"""
        metadata = self.connection_metadata.get(connection_id) or {}
        await self.send_event(
            connection_id,
            ErrorEvent(payload={"message": error_message}, error_code=error_code, run_id=metadata.get("run_id"))
        )

    def get_active_connections(self, run_id: Optional[str] = None) -> Set[str]:
        """Connection ids, optionally filtered by run"""
        if run_id:
            return {
                connection_id
                for connection_id, metadata in self.connection_metadata.items()
                if metadata.get("run_id") == run_id
            }
        return set(self.active_connections.keys())
