"""WebSocket support for real-time export progress notifications.

This module provides:
- WebSocketManager: Manages WebSocket connections per topic
- ExportProgressNotifier: Relays the coordinator's progress channel and
  session outcomes to connected clients
- Message creation helpers: Standardized message formats
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket

from renderfleet.export.coordinator import ExportSession, SessionState
from renderfleet.export.models import ProgressEvent
from renderfleet.export.progress import LatestValueChannel

logger = logging.getLogger(__name__)

EXPORT_TOPIC = "export"


class WebSocketManager:
    """Manages WebSocket connections for export progress updates.

    Supports multiple clients watching the same topic.
    """

    def __init__(self):
        # topic -> list of connected websockets
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, topic: str = EXPORT_TOPIC) -> None:
        """Accept and register a WebSocket connection for a topic."""
        await websocket.accept()
        if topic not in self._connections:
            self._connections[topic] = []
        self._connections[topic].append(websocket)

    def disconnect(self, websocket: WebSocket, topic: str = EXPORT_TOPIC) -> None:
        """Remove a WebSocket connection."""
        if topic in self._connections:
            if websocket in self._connections[topic]:
                self._connections[topic].remove(websocket)
            if not self._connections[topic]:
                del self._connections[topic]

    async def broadcast(self, topic: str, message: dict[str, Any]) -> None:
        """Broadcast a message to all clients watching a topic."""
        if topic not in self._connections:
            return

        disconnected = []
        for websocket in list(self._connections[topic]):
            try:
                await websocket.send_json(message)
            except Exception:
                # Client disconnected
                disconnected.append(websocket)

        for ws in disconnected:
            self.disconnect(ws, topic)

    def get_connection_count(self, topic: str = EXPORT_TOPIC) -> int:
        """Get the number of connected clients for a topic."""
        return len(self._connections.get(topic, []))


class ExportProgressNotifier:
    """Relays export progress and session outcomes to WebSocket clients.

    Progress comes from a latest-wins channel, so a slow client only ever
    receives the newest value.
    """

    def __init__(self, manager: WebSocketManager, topic: str = EXPORT_TOPIC):
        self._manager = manager
        self._topic = topic
        self._relay_task: Optional[asyncio.Task] = None
        self.session_id: Optional[str] = None

    def start(self, channel: LatestValueChannel[ProgressEvent]) -> None:
        """Begin relaying ``channel`` in the background."""
        if self._relay_task is not None and not self._relay_task.done():
            return
        self._relay_task = asyncio.create_task(self._relay(channel))

    async def stop(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            await asyncio.gather(self._relay_task, return_exceptions=True)
            self._relay_task = None

    async def _relay(self, channel: LatestValueChannel[ProgressEvent]) -> None:
        async for event in channel.subscribe():
            await self._manager.broadcast(self._topic, create_progress_message(self.session_id, event))

    async def watch_session(self, session: ExportSession) -> None:
        """Wait for ``session`` to settle and announce its outcome."""
        self.session_id = session.id
        await session.settled.wait()
        if session.state is SessionState.SUCCEEDED:
            await self.notify_complete(session.id, session.output_path or "")
        elif session.state is SessionState.CANCELLED:
            await self.notify_cancelled(session.id)
        else:
            error = session.error
            await self.notify_error(
                session.id,
                error.message if error else "Export failed",
                error_code=error.code if error else None,
                error_kind=error.kind if error else None,
            )

    async def notify_complete(self, session_id: str, output_path: str) -> None:
        """Send a completion notification to all connected clients."""
        await self._manager.broadcast(self._topic, create_complete_message(session_id, output_path))

    async def notify_error(
        self,
        session_id: str,
        error_message: str,
        error_code: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        """Send an error notification to all connected clients."""
        message = create_error_message(session_id, error_message, error_code, error_kind)
        await self._manager.broadcast(self._topic, message)

    async def notify_cancelled(self, session_id: str) -> None:
        """Send a cancellation notification to all connected clients."""
        message = {
            "type": "cancelled",
            "session_id": session_id,
            "status": "cancelled",
        }
        await self._manager.broadcast(self._topic, message)


def create_progress_message(session_id: Optional[str], event: ProgressEvent) -> dict[str, Any]:
    """Create a standardized progress message."""
    return {
        "type": "progress",
        "session_id": session_id,
        **event.to_dict(),
    }


def create_complete_message(session_id: str, output_path: str) -> dict[str, Any]:
    """Create a standardized completion message."""
    return {
        "type": "complete",
        "session_id": session_id,
        "status": "completed",
        "progress": 100.0,
        "output_path": output_path,
    }


def create_error_message(
    session_id: str,
    error_message: str,
    error_code: Optional[str] = None,
    error_kind: Optional[str] = None,
) -> dict[str, Any]:
    """Create a standardized error message."""
    return {
        "type": "error",
        "session_id": session_id,
        "status": "failed",
        "error_message": error_message,
        "error_code": error_code,
        "error_kind": error_kind,
    }
