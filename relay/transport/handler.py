"""
WebSocket Handler

The Transport/Auth Gate of the relay. Every agent and client connection
flows through here.

Connection lifecycle:
1. Credentials are read from the handshake query string (token, or
   sessionId + sessionToken for paired clients)
2. Unauthenticated handshakes are refused before accept with an HTTP 401
   (or a 1008 close where the server cannot send a denial response), so no
   session state is ever touched
3. Accepted connections get an id, an outbound queue and a router entry;
   the role is fixed by the route the connection arrived on
4. Each inbound frame is parsed into a typed message and dispatched to the
   router; malformed frames and unknown types are dropped and the
   connection stays open
5. On close the router forgets the connection (an agent takes its sessions
   down with it) and the queue is stopped

Frames are handled one at a time per connection and router calls never
await, which keeps every registry mutation serialized on the event loop.
"""

import logging
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from relay.protocol.messages import (
    ConnectionRole,
    parse_agent_message,
    parse_client_message,
)
from relay.routing import Connection, FanoutRouter
from relay.transport.auth import AuthGate
from relay.transport.queue import ConnectionQueueManager

logger = logging.getLogger(__name__)

# Policy violation close code, for servers without the denial response extension
CLOSE_UNAUTHORIZED = 1008

DENIAL_RESPONSE_EXTENSION = "websocket.http.response"


class WebSocketHandler:
    """
    Accepts connections and pumps their frames into the router.

    One instance serves every connection of the relay.
    """

    def __init__(
        self,
        router: FanoutRouter,
        auth: AuthGate,
        queue_manager: ConnectionQueueManager,
    ):
        """
        Initialize the handler.

        Args:
            router: Fan-out router receiving parsed messages
            auth: Credential checks for the handshake
            queue_manager: Per-connection outbound queues
        """
        self._router = router
        self._auth = auth
        self._queues = queue_manager

    async def handle_connection(self, websocket: WebSocket, role: ConnectionRole) -> None:
        """
        Handle one WebSocket connection from handshake to close.

        Args:
            websocket: The WebSocket connection (not yet accepted)
            role: Role implied by the route
        """
        params = websocket.query_params
        principal = self._auth.authenticate(
            role,
            token=params.get("token"),
            session_id=params.get("sessionId"),
            session_token=params.get("sessionToken"),
        )
        if principal is None:
            await self._reject(websocket)
            return

        await websocket.accept()

        conn_id = f"{role.value}-{uuid4().hex[:12]}"
        await self._queues.get_or_create(conn_id, websocket.send_text)
        self._router.connect(Connection(
            conn_id=conn_id,
            role=principal.role,
            scope_session_id=principal.scope_session_id,
        ))

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break

                data = frame.get("text")
                if data is None:
                    data = frame.get("bytes")
                if data is None:
                    continue

                self._dispatch(conn_id, role, data)

        except WebSocketDisconnect:
            pass

        except Exception as e:
            logger.error(f"WebSocket error on {conn_id}: {e}")

        finally:
            self._router.disconnect(conn_id)
            await self._queues.remove(conn_id)

    async def _reject(self, websocket: WebSocket) -> None:
        if DENIAL_RESPONSE_EXTENSION in (websocket.scope.get("extensions") or {}):
            await websocket.send_denial_response(
                JSONResponse(status_code=401, content={"detail": "Unauthorized"})
            )
        else:
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")

    def _dispatch(self, conn_id: str, role: ConnectionRole, data: str | bytes) -> None:
        if role == ConnectionRole.AGENT:
            message = parse_agent_message(data)
        else:
            message = parse_client_message(data)

        if message is None:
            logger.debug(f"Dropped unparseable or unknown frame from {conn_id}")
            return

        try:
            if role == ConnectionRole.AGENT:
                self._router.handle_agent_message(conn_id, message)
            else:
                self._router.handle_client_message(conn_id, message)
        except Exception as e:
            logger.error(f"Error routing {message.type} from {conn_id}: {e}")
