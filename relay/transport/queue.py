"""
Outbound Queues

Every socket the relay (or the agent host) writes to is fed by one bounded
outbox and one writer task. Producers never await a socket: they enqueue a
serialized frame and return, and the writer sends frames in enqueue order.

A full outbox is the slow-consumer signal. put_nowait() raises
QueueFullError and the caller drops that frame for that connection only.
A failed socket write ends the writer; the connection's own receive loop
notices the close and removes the outbox.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]


class QueueFullError(Exception):
    """The connection's outbox is at capacity."""
    def __init__(self, conn_id: str, limit: int):
        self.conn_id = conn_id
        self.limit = limit
        super().__init__(f"Outbox full for {conn_id} (limit={limit})")


class ConnectionQueue:
    """Bounded outbox plus the single task that writes it to the socket."""

    def __init__(self, conn_id: str, send_fn: SendFn, max_size: int = 200):
        self.conn_id = conn_id
        self._send = send_fn
        self._limit = max_size
        self._frames: asyncio.Queue[str] = asyncio.Queue(maxsize=max_size)
        self._writer: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._writer is None and not self._closed:
            self._writer = asyncio.create_task(self._write_frames(), name=f"outbox_{self.conn_id}")

    async def stop(self) -> None:
        """Close the outbox; frames not yet written are discarded."""
        self._closed = True
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass

    def put_nowait(self, frame: str) -> None:
        """
        Enqueue a frame without waiting.

        Raises:
            RuntimeError: The outbox was stopped
            QueueFullError: The outbox is at capacity
        """
        if self._closed:
            raise RuntimeError(f"Outbox closed for {self.conn_id}")
        try:
            self._frames.put_nowait(frame)
        except asyncio.QueueFull:
            raise QueueFullError(self.conn_id, self._limit) from None

    async def _write_frames(self) -> None:
        while True:
            frame = await self._frames.get()
            try:
                await self._send(frame)
            except Exception as e:
                logger.warning(f"Write failed for {self.conn_id}, closing outbox: {e}")
                self._closed = True
                return


class ConnectionQueueManager:
    """Outboxes keyed by connection id."""

    def __init__(self, max_queue_size: int = 200):
        self._max_queue_size = max_queue_size
        self._queues: dict[str, ConnectionQueue] = {}

    async def get_or_create(self, conn_id: str, send_fn: SendFn) -> ConnectionQueue:
        queue = self._queues.get(conn_id)
        if queue is None:
            queue = ConnectionQueue(conn_id, send_fn, self._max_queue_size)
            self._queues[conn_id] = queue
            await queue.start()
        return queue

    async def remove(self, conn_id: str) -> None:
        queue = self._queues.pop(conn_id, None)
        if queue is not None:
            await queue.stop()

    def send(self, conn_id: str, frame: str) -> bool:
        """
        Enqueue a frame for one connection.

        Returns:
            False if the connection has no open outbox

        Raises:
            QueueFullError: The connection's outbox is at capacity
        """
        queue = self._queues.get(conn_id)
        if queue is None or queue.closed:
            return False
        queue.put_nowait(frame)
        return True

    async def shutdown(self) -> None:
        queues = list(self._queues.values())
        self._queues.clear()
        for queue in queues:
            await queue.stop()
