"""
Session Registry

CRUD over relayed sessions plus bounded history management.

All methods are synchronous and never await, so under the relay's single
event loop every call runs to completion without interleaving; no lock is
needed as long as callers stay on the loop thread.

History:
- Each record receives a receipt timestamp (ms) unless it already has one
- Assigned timestamps are strictly increasing across the registry, so a
  "since T" replay never loses a record that shares T's millisecond
- Capacity is bounded; the oldest records are evicted first, and evicted
  records are gone for good (replay may have gaps)
"""

import logging
from typing import Any, TYPE_CHECKING

from relay.protocol.messages import SessionStatus, SessionSummary, create_session_closed
from relay.session.session import DEFAULT_HISTORY_LIMIT, Session, now_ms
from relay.transport.queue import QueueFullError

if TYPE_CHECKING:
    from relay.transport.queue import ConnectionQueueManager

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Authoritative in-memory table of sessions.

    Iteration order is insertion order.
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        queue_manager: "ConnectionQueueManager | None" = None,
    ):
        """
        Initialize the registry.

        Args:
            history_limit: Max retained records per session
            queue_manager: Outbound queues, used to notify subscribers on removal
        """
        self._history_limit = max(1, history_limit)
        self._queues = queue_manager
        self._sessions: dict[str, Session] = {}
        self._last_timestamp = 0

    @property
    def history_limit(self) -> int:
        return self._history_limit

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def _next_timestamp(self) -> int:
        timestamp = max(now_ms(), self._last_timestamp + 1)
        self._last_timestamp = timestamp
        return timestamp

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_session(
        self,
        session_id: str,
        project_name: str = "",
        project_path: str = "",
        session_token: str | None = None,
        owner_conn_id: str | None = None,
    ) -> Session | None:
        """
        Create a session.

        Callers wanting idempotent re-registration check get_session() first
        and update the existing entry instead.

        Returns:
            The new Session, or None if the id is already registered
        """
        if session_id in self._sessions:
            logger.warning(f"Session {session_id} already registered, create ignored")
            return None

        session = Session(
            session_id=session_id,
            project_name=project_name,
            project_path=project_path,
            session_token=session_token,
            owner_conn_id=owner_conn_id,
        )
        self._sessions[session_id] = session

        logger.info(f"Session created: {session_id} ({project_name or 'unnamed'})")
        return session

    def get_session(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of all sessions, in registration order."""
        return [session.to_summary() for session in self._sessions.values()]

    def remove_session(self, session_id: str) -> Session | None:
        """
        Remove a session.

        Every current subscriber receives session_closed exactly once before
        the session and its history are discarded.

        Returns:
            The removed Session, or None if it was not registered
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(f"Remove ignored, session {session_id} not found")
            return None

        if self._queues is not None and session.subscriber_conn_ids:
            closed = create_session_closed(session_id).to_json()
            for conn_id in list(session.subscriber_conn_ids):
                try:
                    self._queues.send(conn_id, closed)
                except QueueFullError as e:
                    logger.warning(f"session_closed dropped: {e}")

        del self._sessions[session_id]
        session.subscriber_conn_ids.clear()
        session.history.clear()

        logger.info(f"Session removed: {session_id}")
        return session

    # =========================================================================
    # State
    # =========================================================================

    def update_status(self, session_id: str, status: SessionStatus) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Status update ignored, session {session_id} not found")
            return False

        session.status = status
        session.touch()
        return True

    def append_message(self, session_id: str, message: dict[str, Any]) -> dict[str, Any] | None:
        """
        Append a record to a session's history.

        Returns:
            The stored record (with its timestamp), or None if the session
            is not registered
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Message dropped, session {session_id} not found")
            return None

        record = dict(message)
        timestamp = record.get("timestamp")
        if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
            self._last_timestamp = max(self._last_timestamp, int(timestamp))
        else:
            record["timestamp"] = self._next_timestamp()

        session.history.append(record)
        overflow = len(session.history) - self._history_limit
        if overflow > 0:
            del session.history[:overflow]

        session.touch()
        return record

    def get_messages_since(self, session_id: str, since: float = 0) -> list[dict[str, Any]]:
        """Retained records with timestamp strictly greater than ``since``, in order."""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return [m for m in session.history if m["timestamp"] > since]

    # =========================================================================
    # Connection membership
    # =========================================================================

    def set_owner(self, session_id: str, conn_id: str | None) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.owner_conn_id = conn_id
        return True

    def add_subscriber(self, session_id: str, conn_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.subscriber_conn_ids.add(conn_id)
        return session

    def remove_subscriber(self, session_id: str | None, conn_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None or conn_id not in session.subscriber_conn_ids:
            return False
        session.subscriber_conn_ids.discard(conn_id)
        return True
