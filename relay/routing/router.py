"""
Fan-out Router

Bidirectional multiplexing between each session's owning agent connection
and its subscriber connections, plus session-agnostic broadcasts for the
session-list view.

Routing rules:
- agent claude_output -> recorded in history, then sent to every
  subscriber of the session (zero subscribers is fine: the record is kept
  for replay)
- agent session_status / input_required -> sent to the session's
  subscribers, then the whole session list is broadcast to every client
- client user_message -> forwarded to the owning agent, recorded as a
  user-role record, echoed to every subscriber (originator included); an
  explicit error goes back when no live agent owns the session
- subscribe_session -> membership plus a history replay since a watermark
- agent disconnect -> every session it owns is torn down

Every handler runs to completion without awaiting, and every outbound
frame goes through the per-connection queue, so the order in which one
agent emits events is the order in which every subscriber receives them.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable

from relay.protocol.messages import (
    ClaudeOutput,
    InputRequired,
    MessageType,
    SessionRegister,
    SessionStatus,
    SessionStatusUpdate,
    SessionSummary,
    SessionUnregister,
    SubscribeSession,
    UnsubscribeSession,
    UserMessage,
    WireModel,
    create_claude_output,
    create_error,
    create_input_required,
    create_message_history,
    create_session_status,
    create_sessions_updated,
    create_user_message,
)
from relay.routing.connection import Connection
from relay.session.manager import SessionRegistry
from relay.session.session import Session
from relay.transport.queue import ConnectionQueueManager, QueueFullError

if TYPE_CHECKING:
    from relay.push.notifier import PushNotifier

logger = logging.getLogger(__name__)

AGENT_NOT_CONNECTED = "Agent not connected for this session"
SESSION_NOT_FOUND = "Session not found"
NOT_AUTHORIZED = "Not authorized for this session"


class FanoutRouter:
    """
    Routes messages between agent and client connections.

    The router holds connection ids and roles only; sockets stay with the
    transport, which feeds parsed messages in and drains the outbound queues.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        queue_manager: ConnectionQueueManager,
        notifier: "PushNotifier | None" = None,
    ):
        """
        Initialize the router.

        Args:
            registry: Session registry (status, history, membership)
            queue_manager: Per-connection outbound queues
            notifier: Optional push dispatch for register/input-required
        """
        self._registry = registry
        self._queues = queue_manager
        self._notifier = notifier

        # conn_id -> Connection, for every accepted connection
        self._connections: dict[str, Connection] = {}

        # Global subscriber set: every connected client, subscribed or not
        self._clients: set[str] = set()

        self._agent_handlers: dict[MessageType, Callable[[Connection, Any], None]] = {
            MessageType.SESSION_REGISTER: self._handle_session_register,
            MessageType.SESSION_UNREGISTER: self._handle_session_unregister,
            MessageType.CLAUDE_OUTPUT: self._handle_claude_output,
            MessageType.SESSION_STATUS: self._handle_session_status,
            MessageType.INPUT_REQUIRED: self._handle_input_required,
        }
        self._client_handlers: dict[MessageType, Callable[[Connection, Any], None]] = {
            MessageType.SUBSCRIBE_SESSION: self._handle_subscribe,
            MessageType.UNSUBSCRIBE_SESSION: self._handle_unsubscribe,
            MessageType.USER_MESSAGE: self._handle_user_message,
        }

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def agent_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_agent)

    def get_connection(self, conn_id: str) -> Connection | None:
        return self._connections.get(conn_id)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self, connection: Connection) -> None:
        """
        Track a newly accepted connection.

        Clients join the global subscriber set and immediately receive the
        current session list.
        """
        self._connections[connection.conn_id] = connection

        if connection.is_agent:
            logger.info(f"Agent connected: {connection.conn_id}")
            return

        self._clients.add(connection.conn_id)
        logger.info(
            f"Client connected: {connection.conn_id}"
            + (f" (scoped to {connection.scope_session_id})" if connection.scope_session_id else "")
        )
        self._send(connection.conn_id, create_sessions_updated(self._summaries_for(connection)))

    def disconnect(self, conn_id: str) -> None:
        """
        Forget a closed connection.

        An agent takes every session it owns down with it; a client only
        leaves the subscriber sets.
        """
        connection = self._connections.pop(conn_id, None)
        if connection is None:
            return

        if connection.is_agent:
            for session_id in list(connection.owned_session_ids):
                session = self._registry.get_session(session_id)
                if session is not None and session.owner_conn_id == conn_id:
                    self._teardown_session(session)
            connection.owned_session_ids.clear()
            logger.info(f"Agent disconnected: {conn_id}")
            self.broadcast_sessions()
            return

        self._clients.discard(conn_id)
        self._registry.remove_subscriber(connection.subscribed_session_id, conn_id)
        connection.subscribed_session_id = None
        logger.info(f"Client disconnected: {conn_id}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    def handle_agent_message(self, conn_id: str, message: WireModel) -> None:
        """Route a parsed message received on an agent connection."""
        connection = self._connections.get(conn_id)
        if connection is None or not connection.is_agent:
            logger.warning(f"Agent message from unknown connection {conn_id}")
            return

        handler = self._agent_handlers.get(MessageType(message.type))
        if handler:
            handler(connection, message)

    def handle_client_message(self, conn_id: str, message: WireModel) -> None:
        """Route a parsed message received on a client connection."""
        connection = self._connections.get(conn_id)
        if connection is None or connection.is_agent:
            logger.warning(f"Client message from unknown connection {conn_id}")
            return

        handler = self._client_handlers.get(MessageType(message.type))
        if handler:
            handler(connection, message)

    # =========================================================================
    # Agent -> Relay
    # =========================================================================

    def _handle_session_register(self, connection: Connection, message: SessionRegister) -> None:
        session_id = message.session_id
        session = self._registry.get_session(session_id)

        if session is None:
            session = self._registry.create_session(
                session_id,
                project_name=message.project_name,
                project_path=message.project_path,
                session_token=message.session_token,
                owner_conn_id=connection.conn_id,
            )
            if session is None:
                return
            self._notify(
                session_id,
                "Session Shared",
                f'Claude session "{message.project_name}" is now shared',
                {"type": "session-shared"},
            )
        else:
            # Re-registration of a known id updates it in place
            previous_owner = session.owner_conn_id
            if previous_owner and previous_owner != connection.conn_id:
                previous = self._connections.get(previous_owner)
                if previous is not None:
                    previous.owned_session_ids.discard(session_id)
                logger.warning(
                    f"Session {session_id} taken over by {connection.conn_id} "
                    f"(was {previous_owner})"
                )
            session.project_name = message.project_name
            session.project_path = message.project_path
            if message.session_token is not None:
                session.session_token = message.session_token
            self._registry.set_owner(session_id, connection.conn_id)
            session.touch()
            logger.info(f"Session re-registered: {session_id}")

        connection.owned_session_ids.add(session_id)
        self.broadcast_sessions()

    def _handle_session_unregister(self, connection: Connection, message: SessionUnregister) -> None:
        session = self._owned_session(connection, message.session_id)
        if session is None:
            return

        connection.owned_session_ids.discard(session.session_id)
        self._teardown_session(session)
        self.broadcast_sessions()

    def _handle_claude_output(self, connection: Connection, message: ClaudeOutput) -> None:
        session = self._owned_session(connection, message.session_id)
        if session is None:
            return

        # The relay stamps receipt time itself
        event = dict(message.message)
        event.pop("timestamp", None)

        record = self._registry.append_message(session.session_id, event)
        if record is None:
            return

        self._send_to_session(session, create_claude_output(session.session_id, record))
        logger.debug(f"claude_output {event.get('type')} fanned out for {session.session_id}")

    def _handle_session_status(self, connection: Connection, message: SessionStatusUpdate) -> None:
        session = self._owned_session(connection, message.session_id)
        if session is None:
            return

        self._registry.update_status(session.session_id, message.status)
        self._send_to_session(session, create_session_status(session.session_id, message.status))
        self.broadcast_sessions()

    def _handle_input_required(self, connection: Connection, message: InputRequired) -> None:
        session = self._owned_session(connection, message.session_id)
        if session is None:
            return

        self._registry.update_status(session.session_id, SessionStatus.INPUT_REQUIRED)
        self._notify(
            session.session_id,
            "Input Required",
            f'Claude needs your input on "{session.project_name or session.session_id}"',
            {"type": "input-required"},
        )
        self._send_to_session(session, create_input_required(session.session_id, message.prompt))
        self.broadcast_sessions()

    # =========================================================================
    # Client -> Relay
    # =========================================================================

    def _handle_subscribe(self, connection: Connection, message: SubscribeSession) -> None:
        session_id = message.session_id
        if not connection.can_access(session_id):
            self._send(connection.conn_id, create_error(NOT_AUTHORIZED))
            return

        session = self._registry.get_session(session_id)
        if session is None:
            self._send(connection.conn_id, create_error(SESSION_NOT_FOUND))
            return

        previous = connection.subscribed_session_id
        if previous is not None and previous != session_id:
            self._registry.remove_subscriber(previous, connection.conn_id)

        connection.subscribed_session_id = session_id
        self._registry.add_subscriber(session_id, connection.conn_id)

        messages = self._registry.get_messages_since(session_id, message.since or 0)
        self._send(connection.conn_id, create_message_history(session_id, messages))
        logger.debug(f"{connection.conn_id} subscribed to {session_id} ({len(messages)} replayed)")

    def _handle_unsubscribe(self, connection: Connection, message: UnsubscribeSession) -> None:
        self._registry.remove_subscriber(connection.subscribed_session_id, connection.conn_id)
        connection.subscribed_session_id = None

    def _handle_user_message(self, connection: Connection, message: UserMessage) -> None:
        session_id = message.session_id
        if not connection.can_access(session_id):
            self._send(connection.conn_id, create_error(NOT_AUTHORIZED))
            return

        session = self._registry.get_session(session_id)
        owner = session.owner_conn_id if session is not None else None
        if session is None or owner is None or owner not in self._connections:
            self._send(connection.conn_id, create_error(AGENT_NOT_CONNECTED))
            return

        if not self._send(owner, create_user_message(session_id, message.content)):
            self._send(connection.conn_id, create_error(AGENT_NOT_CONNECTED))
            return

        record = self._registry.append_message(session_id, {
            "type": "user_message",
            "role": "user",
            "content": message.content,
        })
        if record is not None:
            self._send_to_session(session, create_claude_output(session_id, record))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _owned_session(self, connection: Connection, session_id: str) -> Session | None:
        session = self._registry.get_session(session_id)
        if session is None:
            logger.warning(f"Agent {connection.conn_id} referenced unknown session {session_id}")
            return None
        if session.owner_conn_id != connection.conn_id:
            logger.warning(f"Agent {connection.conn_id} does not own session {session_id}, ignored")
            return None
        return session

    def _teardown_session(self, session: Session) -> None:
        for conn_id in session.subscriber_conn_ids:
            subscriber = self._connections.get(conn_id)
            if subscriber is not None and subscriber.subscribed_session_id == session.session_id:
                subscriber.subscribed_session_id = None
        self._registry.remove_session(session.session_id)

    def _notify(self, session_id: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(session_id, title, body, metadata)
        except Exception as e:
            logger.error(f"Push dispatch failed for {session_id}: {e}")

    def _summaries_for(self, connection: Connection) -> list[SessionSummary]:
        summaries = self._registry.list_sessions()
        if connection.scope_session_id is None:
            return summaries
        return [s for s in summaries if s.id == connection.scope_session_id]

    def broadcast_sessions(self) -> None:
        """Send the full session list to every connected client."""
        summaries = self._registry.list_sessions()
        full = create_sessions_updated(summaries).to_json()

        for conn_id in list(self._clients):
            connection = self._connections.get(conn_id)
            if connection is None:
                continue
            if connection.scope_session_id is None:
                self._send_raw(conn_id, full)
            else:
                scoped = [s for s in summaries if s.id == connection.scope_session_id]
                self._send_raw(conn_id, create_sessions_updated(scoped).to_json())

    def _send_to_session(self, session: Session, message: WireModel) -> None:
        data = message.to_json()
        for conn_id in list(session.subscriber_conn_ids):
            self._send_raw(conn_id, data)

    def _send(self, conn_id: str, message: WireModel) -> bool:
        return self._send_raw(conn_id, message.to_json())

    def _send_raw(self, conn_id: str, data: str) -> bool:
        try:
            return self._queues.send(conn_id, data)
        except QueueFullError as e:
            logger.warning(f"Backpressure, frame dropped: {e}")
            return False
