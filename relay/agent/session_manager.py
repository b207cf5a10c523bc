"""
Local Session Manager

The agent host's table of shared sessions. Each entry owns one AgentBridge
and wires its output to two destinations:

- the relay (claude_output / session_status / input_required agent messages)
- the local mirror socket used by the editor on the same machine

User input arrives from either side:
- relay-originated: the relay has already recorded and echoed it, so it is
  only mirrored locally
- local-originated: it is sent to the relay as a user-role claude_output
  record (so remote viewers see it) and mirrored locally

Input is handed to the bridge in a background task per message, keeping the
relay client's receive loop free while a turn runs.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from relay.agent.bridge import AgentBridge, AssistantEngine
from relay.agent.relay_client import RelayClient
from relay.events.models import BaseOutputEvent, ErrorEvent
from relay.protocol.messages import (
    MessageType,
    SessionRegister,
    SessionStatus,
    UserMessage,
)
from relay.session.session import now_ms

logger = logging.getLogger(__name__)

PAIRING_TOKEN_BYTES = 32


@dataclass
class LocalSession:
    """A session shared from this host."""
    id: str
    project_path: str
    project_name: str
    session_token: str
    bridge: AgentBridge

    @property
    def status(self) -> SessionStatus:
        return self.bridge.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectName": self.project_name,
            "projectPath": self.project_path,
            "sessionToken": self.session_token,
            "status": self.status.value,
        }

    def registration(self) -> SessionRegister:
        return SessionRegister(
            session_id=self.id,
            project_name=self.project_name,
            project_path=self.project_path,
            session_token=self.session_token,
        )


class LocalSessionManager:
    """
    Creates, tracks and removes the sessions shared from this host.

    Attach to the relay client by passing ``handle_relay_message`` as its
    on_message and ``registrations`` as its registrations provider.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        engine: AssistantEngine,
        local_broadcast: Callable[[dict[str, Any]], None] | None = None,
    ):
        """
        Initialize the manager.

        Args:
            relay_client: Connection to the relay
            engine: Assistant engine shared by every session's bridge
            local_broadcast: Sink for the local mirror socket
        """
        self._relay = relay_client
        self._engine = engine
        self.local_broadcast = local_broadcast or (lambda message: None)
        self._sessions: dict[str, LocalSession] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> LocalSession | None:
        return self._sessions.get(session_id)

    def find_by_path(self, project_path: str) -> LocalSession | None:
        for session in self._sessions.values():
            if session.project_path == project_path:
                return session
        return None

    def list_sessions(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self._sessions.values()]

    def registrations(self) -> list[SessionRegister]:
        """session_register messages for every live session (re-sent on reconnect)."""
        return [session.registration() for session in self._sessions.values()]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_session(self, project_path: str, project_name: str) -> LocalSession:
        """Share a project: build its bridge and register it with the relay."""
        session_id = str(uuid4())
        session_token = secrets.token_urlsafe(PAIRING_TOKEN_BYTES)

        bridge = AgentBridge(
            self._engine,
            project_path,
            on_event=lambda event: self._on_event(session_id, event),
            on_status=lambda status: self._on_status(session_id, status),
            on_input_required=lambda prompt: self._on_input_required(session_id, prompt),
        )
        session = LocalSession(
            id=session_id,
            project_path=project_path,
            project_name=project_name,
            session_token=session_token,
            bridge=bridge,
        )
        self._sessions[session_id] = session

        self._relay.send(session.registration())
        self._broadcast_sessions()

        logger.info(f"Session created: {session_id} for {project_name!r} at {project_path}")
        return session

    def remove_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.bridge.abort()
        self._relay.unregister_session(session_id)
        self._broadcast_sessions()

        logger.info(f"Session removed: {session_id}")
        return True

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            self.remove_session(session_id)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # =========================================================================
    # User input
    # =========================================================================

    def handle_relay_message(self, message: dict[str, Any]) -> asyncio.Task | None:
        """on_message hook of the relay client."""
        if message.get("type") != MessageType.USER_MESSAGE.value:
            return None
        try:
            user_message = UserMessage.model_validate(message)
        except ValidationError:
            logger.warning("Malformed user_message from relay dropped")
            return None
        return self.submit(user_message.session_id, user_message.content, from_local=False)

    def submit(self, session_id: str, content: str, from_local: bool = False) -> asyncio.Task:
        """Hand user input to a session without waiting for the turn."""
        task = asyncio.get_running_loop().create_task(
            self.handle_user_message(session_id, content, from_local)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_user_message(self, session_id: str, content: str, from_local: bool = False) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.error(f"Unknown session: {session_id}")
            return

        logger.info(
            f"User message for {session_id} (from {'local' if from_local else 'relay'}): {content[:100]}"
        )

        record = {"type": "user_message", "role": "user", "content": content}
        if from_local:
            self._relay.send_claude_output(session_id, record)
        self._mirror_output(session_id, {**record, "timestamp": now_ms()})

        try:
            await session.bridge.send_message(content)
        except Exception as e:
            logger.error(f"Turn failed for {session_id}: {e}")
            self._on_event(session_id, ErrorEvent(content=f"Error: {e}"))

    # =========================================================================
    # Bridge sinks
    # =========================================================================

    def _on_event(self, session_id: str, event: BaseOutputEvent) -> None:
        message = event.to_wire()
        self._relay.send_claude_output(session_id, message)
        self._mirror_output(session_id, message)

    def _on_status(self, session_id: str, status: SessionStatus) -> None:
        self._relay.send_status(session_id, status)
        self.local_broadcast({"type": "session_status", "sessionId": session_id, "status": status.value})

    def _on_input_required(self, session_id: str, prompt: str) -> None:
        self._relay.send_input_required(session_id, prompt)
        self.local_broadcast({"type": "input_required", "sessionId": session_id, "prompt": prompt})

    def _mirror_output(self, session_id: str, message: dict[str, Any]) -> None:
        self.local_broadcast({"type": "claude_output", "sessionId": session_id, "message": message})

    def _broadcast_sessions(self) -> None:
        self.local_broadcast({"type": "sessions_updated", "sessions": self.list_sessions()})
