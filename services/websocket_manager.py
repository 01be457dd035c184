"""WebSocket connection manager for real-time download progress."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket

from core.config import Settings, get_settings
from db.models import DownloadStatus

if TYPE_CHECKING:
    from services.download_engine import ProgressUpdate

ALL_DOWNLOADS_CHANNEL = "downloads"


class WebSocketManager:
    """
    Manages WebSocket connections and broadcasts.

    Features:
    - Connection tracking per job id, plus a ``downloads`` channel for all jobs
    - Progress ticks buffered and flushed in batches
    - Best-effort delivery; sockets that fail a send are dropped
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize WebSocket manager."""
        self.settings = settings or get_settings()
        self._connections: dict[str, set[WebSocket]] = {}
        self._buffers: dict[str, list[dict[str, Any]]] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}
        self._buffer_interval = self.settings.ws_log_buffer_ms / 1000.0

    async def connect(self, websocket: WebSocket, resource_id: str) -> None:
        """
        Accept and register a WebSocket connection.

        Args:
            websocket: The WebSocket connection
            resource_id: Job id, or ``downloads`` for the global feed
        """
        await websocket.accept()
        self._connections.setdefault(resource_id, set()).add(websocket)
        self._buffers.setdefault(resource_id, [])

    def disconnect(self, websocket: WebSocket, resource_id: str) -> None:
        """Remove a WebSocket connection."""
        conns = self._connections.get(resource_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self._connections[resource_id]

        # If no listeners remain, clean up buffers/tasks for that resource id.
        if resource_id not in self._connections:
            self._buffers.pop(resource_id, None)
            task = self._flush_tasks.pop(resource_id, None)
            if task is not None:
                task.cancel()

    def is_connected(self, resource_id: str) -> bool:
        """Check if a resource has an active connection."""
        return bool(self._connections.get(resource_id))

    @property
    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    async def send_personal_message(
        self,
        message: dict[str, Any],
        resource_id: str,
    ) -> bool:
        """
        Send a message to every socket subscribed to ``resource_id``.

        Returns:
            True if at least one socket received it
        """
        websockets = list(self._connections.get(resource_id, set()))
        if not websockets:
            return False

        sent_any = False
        to_drop: list[WebSocket] = []
        for ws in websockets:
            try:
                await ws.send_json(message)
                sent_any = True
            except Exception:
                to_drop.append(ws)

        for ws in to_drop:
            self.disconnect(ws, resource_id)

        return sent_any

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        for resource_id in list(self._connections.keys()):
            await self.send_personal_message(message, resource_id)

    async def publish_progress(self, update: ProgressUpdate) -> None:
        """
        Deliver a job progress update to the job channel and the global feed.

        Status changes are sent immediately. Plain percentage ticks from a
        running download are batched through :meth:`buffer_message`.
        """
        message = update.to_message()
        if update.status == DownloadStatus.DOWNLOADING and update.message is None:
            self.buffer_message(message, str(update.job_id))
            self.buffer_message(message, ALL_DOWNLOADS_CHANNEL)
            return
        await self.send_personal_message(message, str(update.job_id))
        await self.send_personal_message(message, ALL_DOWNLOADS_CHANNEL)

    def buffer_message(self, message: dict[str, Any], resource_id: str) -> None:
        """
        Buffer a message for batched sending.

        Progress ticks arrive far faster than a UI can render them; they are
        collected and flushed at ``ws_log_buffer_ms`` intervals.
        """
        if resource_id not in self._connections:
            return

        self._buffers.setdefault(resource_id, []).append(message)

        # Start flush task if not already running
        task = self._flush_tasks.get(resource_id)
        if task is None or task.done():
            self._flush_tasks[resource_id] = asyncio.create_task(self._flush_buffer(resource_id))

    async def _flush_buffer(self, resource_id: str) -> None:
        await asyncio.sleep(self._buffer_interval)

        if resource_id not in self._buffers or resource_id not in self._connections:
            return

        messages = self._buffers[resource_id]
        if not messages:
            return

        self._buffers[resource_id] = []
        await self.send_personal_message(
            {"type": "batch", "messages": messages, "count": len(messages)},
            resource_id,
        )

    async def close_all(self) -> None:
        for task in self._flush_tasks.values():
            task.cancel()
        self._flush_tasks.clear()
        for resource_id, conns in list(self._connections.items()):
            for ws in list(conns):
                try:
                    await ws.close()
                except Exception:
                    pass
            self._connections.pop(resource_id, None)
        self._buffers.clear()
