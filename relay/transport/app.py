"""
Relay Application

FastAPI application exposing the relay: the agent and client WebSocket
routes plus a small HTTP surface (health, session list, push setup).
This is the main entry point for running the relay server.

Configuration is read from environment variables (see relay.config):
- RELAY_AUTH_TOKEN: Bearer credential for agents, clients and HTTP
- RELAY_HOST / RELAY_PORT: Bind address
- RELAY_HISTORY_LIMIT: Per-session history capacity
- RELAY_MAX_QUEUE_SIZE: Per-connection outbound queue depth
- RELAY_VAPID_PUBLIC_KEY / RELAY_VAPID_PRIVATE_KEY: Enable Web Push
- RELAY_PUSH_TRANSPORT=webhook: Post plain JSON to subscription endpoints instead
- RELAY_LOG_LEVEL: Logging level

Environment variables can be loaded from a .env file in the project root.

Routes:
- WS  /ws/agent   agent connections (?token=...)
- WS  /ws/client  viewer connections (?token=... or ?sessionId=...&sessionToken=...)
- GET /health
- GET /api/sessions                (bearer)
- GET /api/push/vapid-key
- POST /api/push/subscribe         (bearer)
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from relay import __version__
from relay.config import RelaySettings, relay_settings_from_env
from relay.protocol.messages import ConnectionRole
from relay.push import PushNotifier, push_transport_from_settings
from relay.routing import FanoutRouter
from relay.session import SessionRegistry
from relay.transport.auth import AuthGate
from relay.transport.handler import WebSocketHandler
from relay.transport.queue import ConnectionQueueManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Components are built by create_app(); this only logs startup and tears
    down queues and in-flight push deliveries on shutdown.
    """
    logger.info(f"Relay started (history_limit={app.state.settings.history_limit})")

    yield

    logger.info("Shutting down relay...")
    await app.state.queue_manager.shutdown()
    await app.state.notifier.shutdown()
    logger.info("Relay stopped")


def create_app(settings: RelaySettings | None = None) -> FastAPI:
    """
    Create the relay application.

    Every component is constructed once here and injected; nothing is kept
    in module globals, so tests can build as many isolated relays as they
    need.

    Args:
        settings: Relay settings, read from the environment if omitted
    """
    settings = settings or relay_settings_from_env()

    queue_manager = ConnectionQueueManager(max_queue_size=settings.max_queue_size)
    registry = SessionRegistry(
        history_limit=settings.history_limit,
        queue_manager=queue_manager,
    )
    notifier = PushNotifier(
        transport=push_transport_from_settings(settings),
        vapid_public_key=settings.vapid_public_key,
    )
    router = FanoutRouter(registry, queue_manager, notifier=notifier)
    auth = AuthGate(settings.auth_token, registry)
    handler = WebSocketHandler(router=router, auth=auth, queue_manager=queue_manager)

    app = FastAPI(
        title="Session Relay",
        description="Relays interactive assistant sessions from an agent host to remote viewers",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.queue_manager = queue_manager
    app.state.registry = registry
    app.state.notifier = notifier
    app.state.router = router
    app.state.auth = auth
    app.state.handler = handler
    app.state.started_at = time.monotonic()

    def require_bearer(request: Request) -> None:
        if not request.app.state.auth.validate_bearer(request.headers.get("authorization")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.websocket("/ws/agent")
    async def agent_endpoint(websocket: WebSocket):
        """WebSocket endpoint for agent hosts."""
        await websocket.app.state.handler.handle_connection(websocket, ConnectionRole.AGENT)

    @app.websocket("/ws/client")
    async def client_endpoint(websocket: WebSocket):
        """WebSocket endpoint for viewers."""
        await websocket.app.state.handler.handle_connection(websocket, ConnectionRole.CLIENT)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        state = request.app.state
        return {
            "status": "ok",
            "uptime": round(time.monotonic() - state.started_at, 3),
            "sessions": state.registry.session_count,
            "clients": state.router.client_count,
            "agents": state.router.agent_count,
        }

    @app.get("/api/sessions", dependencies=[Depends(require_bearer)])
    async def list_sessions(request: Request):
        return {
            "sessions": [s.to_wire() for s in request.app.state.registry.list_sessions()]
        }

    @app.get("/api/push/vapid-key")
    async def vapid_key(request: Request):
        key = request.app.state.notifier.vapid_public_key
        if not key:
            return JSONResponse(status_code=503, content={"error": "Push not configured"})
        return {"vapidPublicKey": key}

    @app.post("/api/push/subscribe", dependencies=[Depends(require_bearer)])
    async def push_subscribe(request: Request, subscription: Any = Body(default=None)):
        if not isinstance(subscription, dict) or not subscription.get("endpoint"):
            return JSONResponse(status_code=400, content={"error": "Invalid subscription"})
        request.app.state.notifier.add_subscription(subscription)
        return {"success": True}

    return app


def main() -> None:
    """Run the relay with uvicorn."""
    import uvicorn

    settings = relay_settings_from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logger.info(f"Relay listening on {settings.host}:{settings.port}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
