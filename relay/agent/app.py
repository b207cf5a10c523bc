"""
Agent Host Application

Loopback FastAPI application run next to the editor. It owns the shared
sessions of this machine, keeps the connection to the relay alive, and
mirrors every session event to local editor connections.

Configuration is read from environment variables (see relay.config):
- RELAY_URL / RELAY_AUTH_TOKEN: Relay to connect to
- AGENT_HTTP_HOST / AGENT_HTTP_PORT: Loopback bind address
- AGENT_ENGINE: "module:attribute" of the assistant engine
- RELAY_PUBLIC_URL: Relay URL shown to the editor on share

Routes:
- GET    /health
- GET    /sessions
- POST   /sessions/share   {projectPath, projectName?}
- DELETE /sessions/{id}
- WS     /ws               local event mirror (accepts user_message)
"""

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

# Load environment variables from .env file
load_dotenv()

from relay import __version__
from relay.agent.bridge import AssistantEngine, load_engine
from relay.agent.relay_client import RelayClient
from relay.agent.session_manager import LocalSessionManager
from relay.config import AgentHostSettings, agent_settings_from_env
from relay.protocol.messages import MessageType
from relay.transport.queue import ConnectionQueueManager, QueueFullError

logger = logging.getLogger(__name__)


class ShareRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: str | None = Field(default=None, alias="projectPath")
    project_name: str | None = Field(default=None, alias="projectName")


def default_project_name(project_path: str) -> str:
    """Last segment of a POSIX or Windows path."""
    segments = [s for s in re.split(r"[/\\]", project_path) if s]
    return segments[-1] if segments else project_path


class LocalMirror:
    """
    Fans session events out to the editor's local WebSocket connections.

    Each connection gets its own outbound queue, like relay connections do.
    """

    def __init__(self, queue_manager: ConnectionQueueManager):
        self._queues = queue_manager
        self._conn_ids: set[str] = set()

    async def attach(self, websocket: WebSocket) -> str:
        conn_id = f"local-{uuid4().hex[:12]}"
        await self._queues.get_or_create(conn_id, websocket.send_text)
        self._conn_ids.add(conn_id)
        logger.info(f"Local client connected: {conn_id}")
        return conn_id

    async def detach(self, conn_id: str) -> None:
        self._conn_ids.discard(conn_id)
        await self._queues.remove(conn_id)
        logger.info(f"Local client disconnected: {conn_id}")

    def send(self, conn_id: str, message: dict[str, Any]) -> None:
        try:
            self._queues.send(conn_id, json.dumps(message))
        except QueueFullError as e:
            logger.warning(f"Backpressure on local mirror: {e}")

    def broadcast(self, message: dict[str, Any]) -> None:
        data = json.dumps(message)
        for conn_id in list(self._conn_ids):
            try:
                self._queues.send(conn_id, data)
            except QueueFullError as e:
                logger.warning(f"Backpressure on local mirror: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to the relay on startup; stop sessions and queues on shutdown."""
    logger.info(f"Agent host starting, relay: {app.state.settings.relay_url}")
    await app.state.relay_client.start()

    yield

    logger.info("Shutting down agent host...")
    await app.state.sessions.shutdown()
    await app.state.relay_client.stop()
    await app.state.queue_manager.shutdown()
    logger.info("Agent host stopped")


def create_app(
    settings: AgentHostSettings | None = None,
    engine: AssistantEngine | None = None,
    relay_client: RelayClient | None = None,
) -> FastAPI:
    """
    Create the agent host application.

    Args:
        settings: Host settings, read from the environment if omitted
        engine: Assistant engine, loaded from settings.engine if omitted
        relay_client: Relay connection, built from settings if omitted
    """
    settings = settings or agent_settings_from_env()

    if engine is None:
        if not settings.engine:
            raise RuntimeError("AGENT_ENGINE is not set (expected 'module:attribute')")
        engine = load_engine(settings.engine)

    if relay_client is None:
        relay_client = RelayClient(
            settings.relay_url,
            settings.auth_token,
            reconnect_min=settings.reconnect_min,
            reconnect_max=settings.reconnect_max,
        )

    queue_manager = ConnectionQueueManager(max_queue_size=200)
    mirror = LocalMirror(queue_manager)
    sessions = LocalSessionManager(relay_client, engine, local_broadcast=mirror.broadcast)
    relay_client.on_message = sessions.handle_relay_message
    relay_client.registrations = sessions.registrations

    app = FastAPI(
        title="Session Relay Agent Host",
        description="Loopback control surface for sharing local assistant sessions",
        version=__version__,
        lifespan=lifespan,
    )

    # Editor webviews call from their own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.state.settings = settings
    app.state.relay_client = relay_client
    app.state.queue_manager = queue_manager
    app.state.mirror = mirror
    app.state.sessions = sessions

    @app.get("/health")
    async def health_check(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "relayConnected": state.relay_client.connected,
            "sessions": state.sessions.session_count,
        }

    @app.get("/sessions")
    async def list_sessions(request: Request):
        return {"sessions": request.app.state.sessions.list_sessions()}

    @app.post("/sessions/share")
    async def share_session(request: Request, body: ShareRequest | None = None):
        state = request.app.state
        public_url = state.settings.public_url or ""

        if body is None or not body.project_path:
            return JSONResponse(status_code=400, content={"error": "projectPath is required"})

        existing = state.sessions.find_by_path(body.project_path)
        if existing is not None:
            return {"session": existing.to_dict(), "alreadyShared": True, "relayPublicUrl": public_url}

        name = body.project_name or default_project_name(body.project_path)
        session = state.sessions.create_session(body.project_path, name)
        return {"session": session.to_dict(), "relayPublicUrl": public_url}

    @app.delete("/sessions/{session_id}")
    async def unshare_session(request: Request, session_id: str):
        if not request.app.state.sessions.remove_session(session_id):
            return JSONResponse(status_code=404, content={"error": "Session not found"})
        return {"success": True}

    @app.websocket("/ws")
    async def mirror_endpoint(websocket: WebSocket):
        """Local event mirror for the editor."""
        state = websocket.app.state
        await websocket.accept()
        conn_id = await state.mirror.attach(websocket)
        state.mirror.send(conn_id, {
            "type": MessageType.SESSIONS_UPDATED.value,
            "sessions": state.sessions.list_sessions(),
        })

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except ValueError:
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("type") == MessageType.USER_MESSAGE.value and message.get("sessionId"):
                    content = message.get("content")
                    state.sessions.submit(
                        message["sessionId"],
                        content if isinstance(content, str) else "",
                        from_local=True,
                    )
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Local WebSocket error on {conn_id}: {e}")
        finally:
            await state.mirror.detach(conn_id)

    return app


def main() -> None:
    """Run the agent host with uvicorn."""
    import uvicorn

    settings = agent_settings_from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logger.info(f"Agent host listening on http://{settings.http_host}:{settings.http_port}")
    uvicorn.run(create_app(settings), host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    main()
