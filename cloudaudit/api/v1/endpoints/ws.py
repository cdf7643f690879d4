"""
WebSocket transport for the progress hub.
"""
import asyncio
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from cloudaudit.core.dependencies import get_progress_hub
from cloudaudit.services.progress_hub import ProgressHub

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketConnection:
    """
    Adapts a FastAPI WebSocket to the hub's connection interface.

    ``send`` and ``close`` may be called from run worker threads, so frames
    are handed to the event loop and written by a single writer task.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.connection_id = str(uuid.uuid4())
        self.websocket = websocket
        self.loop = loop
        # None asks the writer to close the socket
        self.queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self.closed = False
        self.writer_task: Optional[asyncio.Task] = None

    def send(self, data: bytes) -> bool:
        if self.closed:
            return False
        self.loop.call_soon_threadsafe(self.queue.put_nowait, data)
        return True

    def close(self) -> None:
        """Close the socket from the server side once queued frames are written."""
        if self.closed:
            return
        self.closed = True
        self.loop.call_soon_threadsafe(self.queue.put_nowait, None)

    async def writer(self) -> None:
        while True:
            data = await self.queue.get()
            if data is None:
                await self.websocket.close()
                return
            await self.websocket.send_text(data.decode("utf-8"))

    def start_writer(self, hub: ProgressHub) -> asyncio.Task:
        self.writer_task = asyncio.create_task(self.writer())
        self.writer_task.add_done_callback(lambda task: self._writer_done(task, hub))
        return self.writer_task

    def _writer_done(self, task: asyncio.Task, hub: ProgressHub) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.warning(f"WebSocket {self.connection_id} write failed: {error}")
        self.closed = True
        hub.disconnect(self)


@router.websocket("/ws/inspections")
async def inspection_progress(websocket: WebSocket, hub: ProgressHub = Depends(get_progress_hub)):
    await websocket.accept()
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    writer = connection.start_writer(hub)
    hub.register(connection)
    try:
        while True:
            message = await websocket.receive_text()
            hub.handle_message(connection, message)
    except WebSocketDisconnect:
        logger.info(f"WebSocket {connection.connection_id} closed by client")
    finally:
        connection.closed = True
        hub.disconnect(connection)
        writer.cancel()
