"""Live incident feed over WebSocket.

Each connection holds one standing incident query. Every time its result
changes the client receives:

    {"type": "snapshot", "view": "...", "data": [...], "timestamp": "ISO 8601"}

A failed query sends one ``{"type": "error", ...}`` frame and closes the
socket; the client reconnects to resubscribe.
"""

import asyncio
import json
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ...dependencies import get_app_config, get_live_views, resolve_session
from ...errors import IncidentDeskError
from ...live.views import incident_query_for_view
from ...utils.logging import get_logger

logger = get_logger("websocket.live")

router = APIRouter()

CLOSE_UNAUTHORIZED = 4001
CLOSE_FORBIDDEN = 4003
CLOSE_QUERY_FAILED = 1011


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Per-connection outbound queues with backpressure and heartbeat."""

    def __init__(self, max_connections: int = 200, queue_size: int = 50, heartbeat_interval: int = 30):
        self._connections: dict[WebSocket, asyncio.Queue] = {}
        self._writer_tasks: dict[WebSocket, asyncio.Task] = {}
        self._max_connections = max_connections
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval

    async def connect(self, websocket: WebSocket) -> bool:
        """Accept connection if under limit. Returns False if rejected."""
        if len(self._connections) >= self._max_connections:
            await websocket.close(code=1013)  # Try Again Later
            logger.warning("ws_connection_rejected", reason="max_connections", total=len(self._connections))
            return False
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._connections[websocket] = queue
        self._writer_tasks[websocket] = asyncio.create_task(self._writer(websocket, queue))
        logger.info("ws_client_connected", total=len(self._connections))
        return True

    def send(self, websocket: WebSocket, message: dict) -> bool:
        """Enqueue a frame for one connection. False if it could not keep up."""
        queue = self._connections.get(websocket)
        if queue is None:
            return False
        try:
            queue.put_nowait(json.dumps(message))
        except asyncio.QueueFull:
            logger.warning("ws_client_backpressure_disconnect")
            asyncio.ensure_future(self.disconnect(websocket))
            return False
        return True

    async def disconnect(self, websocket: WebSocket, code: int = 1000) -> None:
        """Remove connection and cancel its writer task."""
        if self._connections.pop(websocket, None) is None:
            return
        task = self._writer_tasks.pop(websocket, None)
        if task and not task.done():
            task.cancel()
        try:
            await websocket.close(code=code)
        except Exception as e:
            logger.debug("ws_close_failed", error=str(e))
        logger.info("ws_client_disconnected", total=len(self._connections))

    async def close_all(self) -> None:
        for ws in list(self._connections.keys()):
            await self.disconnect(ws)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def _writer(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Drain the queue, sending a heartbeat when idle."""
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    message = json.dumps({"type": "heartbeat", "timestamp": _now()})
                await websocket.send_text(message)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.debug("ws_writer_error", error=str(e))


manager = ConnectionManager(heartbeat_interval=get_app_config().ws_heartbeat_interval)


@router.websocket("/ws/incidents")
async def websocket_incidents(websocket: WebSocket):
    """Stream snapshots of one incident view (``mine``, ``assigned``, ``unassigned`` or ``all``)."""
    try:
        session = await resolve_session(websocket.query_params.get("token"))
    except HTTPException:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    view = websocket.query_params.get("view", "mine")
    try:
        query = incident_query_for_view(view, session)
    except IncidentDeskError as exc:
        logger.warning("ws_view_refused", view=view, user_id=session.user_id, error=exc.message)
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    if not await manager.connect(websocket):
        return

    def on_update(incidents: list[dict]) -> None:
        manager.send(websocket, {"type": "snapshot", "view": view, "data": incidents, "timestamp": _now()})

    async def on_error(error: IncidentDeskError) -> None:
        manager.send(websocket, {"type": "error", **error.to_dict(), "timestamp": _now()})
        # Let the writer flush the error frame before closing
        await asyncio.sleep(0)
        await manager.disconnect(websocket, code=CLOSE_QUERY_FAILED)

    cancel = get_live_views().subscribe_incidents(query, on_update, on_error)
    logger.info("ws_incident_feed_opened", view=view, user_id=session.user_id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if msg.get("type") == "ping":
                manager.send(websocket, {"type": "pong", "timestamp": _now()})
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # receive on a socket we already closed after a query failure
        logger.debug("ws_receive_after_close", error=str(e))
    finally:
        cancel()
        await manager.disconnect(websocket)
