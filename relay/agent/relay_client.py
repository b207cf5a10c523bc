"""
Relay Client

The agent host's connection to the relay (agent route), kept alive with
exponential reconnect backoff.

Design:
- Outbound frames go through a ConnectionQueue with a single writer task,
  so frames leave in the order the sessions produced them
- Sends while disconnected are dropped (the relay has no state to resume
  into: the host's sessions were torn down when the connection dropped)
- After every (re)connect the registrations of live sessions are re-sent
- Reconnect delay starts at reconnect_min and doubles up to reconnect_max
"""

import asyncio
import json
import logging
from typing import Any, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from relay.protocol.messages import (
    SessionStatus,
    SessionUnregister,
    WireModel,
    create_claude_output,
    create_input_required,
    create_session_status,
)
from relay.transport.queue import ConnectionQueue, QueueFullError

logger = logging.getLogger(__name__)


class RelayClient:
    """WebSocket client for the relay's agent route."""

    def __init__(
        self,
        relay_url: str,
        auth_token: str,
        on_message: Callable[[dict[str, Any]], None] | None = None,
        registrations: Callable[[], list[WireModel]] | None = None,
        reconnect_min: float = 1.0,
        reconnect_max: float = 30.0,
        max_queue_size: int = 200,
    ):
        """
        Initialize the client.

        Args:
            relay_url: Base WebSocket URL of the relay (ws://host:port)
            auth_token: Bearer credential
            on_message: Receives every decoded JSON object from the relay
            registrations: Returns the session_register messages to re-send on connect
            reconnect_min: First reconnect delay (seconds)
            reconnect_max: Reconnect delay cap (seconds)
            max_queue_size: Outbound queue depth
        """
        self._url = f"{relay_url.rstrip('/')}/ws/agent?{urlencode({'token': auth_token})}"
        self.on_message = on_message
        self.registrations = registrations
        self._reconnect_min = reconnect_min
        self._reconnect_max = max(reconnect_min, reconnect_max)
        self._max_queue_size = max_queue_size

        self._queue: ConnectionQueue | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._queue is not None and not self._queue.closed

    async def start(self) -> None:
        """Start the connect/reconnect loop in the background."""
        if self._task is None:
            self._stopping = False
            self._task = asyncio.create_task(self._run(), name="relay_client")

    async def stop(self) -> None:
        self._stopping = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_queue()

    async def _run(self) -> None:
        delay = self._reconnect_min
        while not self._stopping:
            try:
                async with websockets.connect(self._url) as ws:
                    delay = self._reconnect_min
                    await self._on_open(ws)
                    async for raw in ws:
                        self._handle_frame(raw)
                logger.info("Disconnected from relay")
            except (OSError, WebSocketException) as e:
                logger.warning(f"Relay connection failed: {e}")
            except Exception as e:
                logger.error(f"Relay connection error: {e!r}")
            finally:
                await self._close_queue()

            if self._stopping:
                break
            logger.info(f"Reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max)

    async def _on_open(self, ws) -> None:
        queue = ConnectionQueue("relay", ws.send, self._max_queue_size)
        await queue.start()
        self._queue = queue
        logger.info("Connected to relay")

        if self.registrations is not None:
            for registration in self.registrations():
                self.send(registration)

    async def _close_queue(self) -> None:
        queue = self._queue
        self._queue = None
        if queue is not None:
            await queue.stop()

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.debug("Dropping undecodable frame from relay")
            return
        if not isinstance(message, dict):
            return
        if message.get("type") == "error":
            logger.warning(f"Relay error: {message.get('error')}")
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception as e:
            logger.error(f"Message handler failed for {message.get('type')}: {e}")

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, message: WireModel) -> bool:
        """Queue a message for the relay; dropped while disconnected."""
        queue = self._queue
        if queue is None or queue.closed:
            logger.debug(f"Not connected, dropped {message.type}")
            return False
        try:
            queue.put_nowait(message.to_json())
        except QueueFullError as e:
            logger.warning(f"Backpressure, dropped {message.type}: {e}")
            return False
        return True

    def unregister_session(self, session_id: str) -> bool:
        return self.send(SessionUnregister(session_id=session_id))

    def send_claude_output(self, session_id: str, message: dict[str, Any]) -> bool:
        return self.send(create_claude_output(session_id, message))

    def send_status(self, session_id: str, status: SessionStatus) -> bool:
        return self.send(create_session_status(session_id, status))

    def send_input_required(self, session_id: str, prompt: str) -> bool:
        return self.send(create_input_required(session_id, prompt))

