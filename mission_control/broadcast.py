"""
Live broadcast channel for the dashboard's SSE stream.

Each open client is a LiveConnection: a bounded frame queue drained by the
client's streaming response, plus a heartbeat task owned by the channel.
The channel keeps the set of OPEN connections and fans every activity out
to all of them. A connection whose write fails is dropped on the spot;
the failure never reaches the publisher or the other connections.

The registry is process-local. Running several server instances needs an
external pub/sub layer in front of this channel.
"""
import asyncio
import json
import logging
import threading
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Optional

from mission_control.config import SSE_HEARTBEAT_INTERVAL, SSE_QUEUE_SIZE
from mission_control.db.models import Activity
from mission_control.errors import DeliveryChannelError

logger = logging.getLogger(__name__)


def encode_event(payload: dict[str, Any]) -> str:
    """Serialize one event as an SSE `data:` frame."""
    return f"data: {json.dumps(payload)}\n\n"


CONNECTED_FRAME = encode_event({"type": "connected"})
HEARTBEAT_FRAME = encode_event({"type": "heartbeat"})


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class LiveConnection:
    """One observing client. Only the channel changes its state."""

    def __init__(self, queue_size: int = SSE_QUEUE_SIZE, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.state = ConnectionState.CONNECTING
        self.heartbeat_task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=queue_size)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def send(self, frame: str) -> None:
        """Queue a frame for the client without blocking."""
        if not self.is_open:
            raise DeliveryChannelError(self.id, f"connection is {self.state.value}")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise DeliveryChannelError(self.id, "send buffer full") from None

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the connection is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def _open(self) -> None:
        self.state = ConnectionState.OPEN

    def _close(self, errored: bool = False) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.ERRORED):
            return
        self.state = ConnectionState.ERRORED if errored else ConnectionState.CLOSED
        # Wake the consumer; pending frames are dropped if the buffer is full.
        while True:
            try:
                self._queue.put_nowait(None)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def __repr__(self) -> str:
        return f"<LiveConnection {self.id[:8]} {self.state.value}>"


class LiveBroadcastChannel:
    """Registry of open live connections plus fan-out."""

    def __init__(self, heartbeat_interval: float = SSE_HEARTBEAT_INTERVAL) -> None:
        self._connections: set[LiveConnection] = set()
        self._lock = threading.Lock()
        self._heartbeat_interval = heartbeat_interval
        self._shut_down = False

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def connections(self) -> list[LiveConnection]:
        """Snapshot of the registered connections."""
        with self._lock:
            return list(self._connections)

    def is_registered(self, conn: LiveConnection) -> bool:
        with self._lock:
            return conn in self._connections

    def register(self, conn: LiveConnection) -> LiveConnection:
        """Open the connection, send the `connected` sentinel and start its heartbeat."""
        if self._shut_down:
            raise DeliveryChannelError(conn.id, "channel is shut down")
        with self._lock:
            conn._open()
            self._connections.add(conn)
        try:
            conn.send(CONNECTED_FRAME)
        except DeliveryChannelError as e:
            logger.warning(f"Live connection failed on connect: {e}")
            self.unregister(conn, errored=True)
            return conn
        if self._heartbeat_interval > 0:
            conn.heartbeat_task = asyncio.get_running_loop().create_task(
                self._heartbeat(conn), name=f"sse-heartbeat-{conn.id[:8]}"
            )
        logger.info(f"Live connection {conn.id[:8]} registered ({self.connection_count} open)")
        return conn

    def unregister(self, conn: LiveConnection, errored: bool = False) -> bool:
        """Remove and close a connection. Safe to call any number of times.

        Returns True if the connection was still registered.
        """
        with self._lock:
            present = conn in self._connections
            self._connections.discard(conn)
        task, conn.heartbeat_task = conn.heartbeat_task, None
        if task is not None and task is not _current_task():
            task.cancel()
        conn._close(errored=errored)
        if present:
            logger.info(f"Live connection {conn.id[:8]} {conn.state.value} ({self.connection_count} open)")
        return present

    def broadcast(self, event: dict[str, Any]) -> int:
        """Write one event to every open connection. Returns how many accepted it."""
        frame = encode_event(event)
        delivered = 0
        for conn in self.connections():
            if not conn.is_open:
                continue
            try:
                conn.send(frame)
            except DeliveryChannelError as e:
                logger.warning(f"Failed to send to live connection: {e}")
                self.unregister(conn, errored=True)
                continue
            delivered += 1
        return delivered

    def broadcast_activity(self, activity: Activity) -> int:
        return self.broadcast({"type": "activity", "activity": activity.to_dict()})

    def close_all(self) -> None:
        """Close every connection and refuse new ones."""
        self._shut_down = True
        for conn in self.connections():
            self.unregister(conn)
        logger.info("Live broadcast channel closed.")

    async def _heartbeat(self, conn: LiveConnection) -> None:
        while conn.is_open:
            await asyncio.sleep(self._heartbeat_interval)
            if not conn.is_open:
                break
            try:
                conn.send(HEARTBEAT_FRAME)
            except DeliveryChannelError as e:
                logger.warning(f"Heartbeat failed: {e}")
                self.unregister(conn, errored=True)
                break


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
