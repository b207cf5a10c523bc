import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse

from relay.config import RelaySettings
from relay.protocol.messages import ConnectionRole
from relay.routing import FanoutRouter
from relay.session import SessionRegistry
from relay.transport.app import create_app
from relay.transport.auth import AuthGate
from relay.transport.handler import WebSocketHandler
from relay.transport.queue import ConnectionQueueManager

TOKEN = "test-token"


@pytest.fixture
def client():
    app = create_app(RelaySettings(auth_token=TOKEN, vapid_public_key="vapid-pub"))
    with TestClient(app) as test_client:
        yield test_client


def _register(agent_ws, session_id: str = "s1", name: str = "demo", token: str | None = None) -> None:
    message = {"type": "session_register", "sessionId": session_id, "projectName": name, "projectPath": f"/w/{name}"}
    if token:
        message["sessionToken"] = token
    agent_ws.send_json(message)


# =============================================================================
# Auth gate
# =============================================================================

def test_auth_gate_bearer_and_pairing() -> None:
    registry = SessionRegistry()
    registry.create_session("s1", session_token="pair")
    registry.create_session("s2")
    gate = AuthGate("secret", registry)

    assert gate.authenticate(ConnectionRole.AGENT, token="secret").scope_session_id is None
    assert gate.authenticate(ConnectionRole.AGENT, token="wrong") is None
    assert gate.authenticate(ConnectionRole.CLIENT, session_id="s1", session_token="pair").scope_session_id == "s1"
    assert gate.authenticate(ConnectionRole.CLIENT, session_id="s1", session_token="nope") is None
    assert gate.authenticate(ConnectionRole.CLIENT, session_id="s2", session_token="") is None
    # Pairing is a viewer credential only
    assert gate.authenticate(ConnectionRole.AGENT, session_id="s1", session_token="pair") is None


def test_auth_gate_bearer_header() -> None:
    gate = AuthGate("secret")

    assert gate.validate_bearer("Bearer secret")
    assert gate.validate_bearer("bearer secret")
    assert not gate.validate_bearer("Basic secret")
    assert not gate.validate_bearer(None)


def test_unauthenticated_websocket_is_rejected(client: TestClient) -> None:
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect("/ws/agent?token=wrong"):
            pass
    assert exc.value.status_code == 401
    assert exc.value.json() == {"detail": "Unauthorized"}

    with pytest.raises(WebSocketDenialResponse):
        with client.websocket_connect("/ws/client"):
            pass

    assert client.app.state.registry.session_count == 0


class HandshakeOnlySocket:
    """A handshake from a server that cannot send denial responses."""

    def __init__(self, query: dict[str, str]) -> None:
        self.scope = {"type": "websocket", "extensions": {}}
        self.query_params = query
        self.closed_with: tuple[int, str] | None = None
        self.accepted = False

    async def close(self, code: int, reason: str = "") -> None:
        self.closed_with = (code, reason)

    async def accept(self) -> None:
        self.accepted = True


@pytest.mark.asyncio
async def test_rejection_falls_back_to_policy_close() -> None:
    registry = SessionRegistry()
    queues = ConnectionQueueManager()
    handler = WebSocketHandler(FanoutRouter(registry, queues), AuthGate(TOKEN, registry), queues)
    websocket = HandshakeOnlySocket({"token": "wrong"})

    await handler.handle_connection(websocket, ConnectionRole.AGENT)

    assert websocket.closed_with == (1008, "Unauthorized")
    assert not websocket.accepted


# =============================================================================
# WebSocket end to end
# =============================================================================

def test_session_stream_end_to_end(client: TestClient) -> None:
    with client.websocket_connect(f"/ws/client?token={TOKEN}") as viewer:
        assert viewer.receive_json() == {"type": "sessions_updated", "sessions": []}

        with client.websocket_connect(f"/ws/agent?token={TOKEN}") as agent:
            _register(agent)
            listed = viewer.receive_json()
            assert [s["id"] for s in listed["sessions"]] == ["s1"]

            viewer.send_json({"type": "subscribe_session", "sessionId": "s1", "since": 0})
            assert viewer.receive_json() == {"type": "message_history", "sessionId": "s1", "messages": []}

            for event in (
                {"type": "assistant_delta", "text": "A"},
                {"type": "assistant_delta", "text": "B"},
                {"type": "result", "subtype": "success"},
            ):
                agent.send_json({"type": "claude_output", "sessionId": "s1", "message": event})

            received = [viewer.receive_json() for _ in range(3)]
            assert [m["message"]["type"] for m in received] == ["assistant_delta", "assistant_delta", "result"]

            viewer.send_json({"type": "user_message", "sessionId": "s1", "content": "next"})
            assert agent.receive_json() == {"type": "user_message", "sessionId": "s1", "content": "next"}
            echo = viewer.receive_json()
            assert echo["message"]["role"] == "user"

            history = client.app.state.registry.get_messages_since("s1")
            assert len(history) == 4

        assert viewer.receive_json() == {"type": "session_closed", "sessionId": "s1"}
        assert viewer.receive_json() == {"type": "sessions_updated", "sessions": []}


def test_malformed_frames_keep_connection_open(client: TestClient) -> None:
    with client.websocket_connect(f"/ws/client?token={TOKEN}") as viewer:
        viewer.receive_json()

        with client.websocket_connect(f"/ws/agent?token={TOKEN}") as agent:
            agent.send_text("not json")
            agent.send_text("[1, 2, 3]")
            agent.send_json({"type": "bogus"})
            agent.send_json({"type": "session_register"})
            _register(agent)

            listed = viewer.receive_json()
            assert [s["id"] for s in listed["sessions"]] == ["s1"]

            viewer.send_text("{broken")
            viewer.send_json({"type": "subscribe_session", "sessionId": "missing"})
            assert viewer.receive_json() == {"type": "error", "error": "Session not found"}


def test_paired_viewer_is_scoped(client: TestClient) -> None:
    with client.websocket_connect(f"/ws/client?token={TOKEN}") as watcher:
        watcher.receive_json()

        with client.websocket_connect(f"/ws/agent?token={TOKEN}") as agent:
            _register(agent, "s1", "one", token="pair-1")
            watcher.receive_json()
            _register(agent, "s2", "two")
            watcher.receive_json()

            with client.websocket_connect("/ws/client?sessionId=s1&sessionToken=pair-1") as paired:
                snapshot = paired.receive_json()
                assert [s["id"] for s in snapshot["sessions"]] == ["s1"]

                paired.send_json({"type": "subscribe_session", "sessionId": "s2"})
                assert paired.receive_json()["type"] == "error"

            with pytest.raises(WebSocketDenialResponse):
                with client.websocket_connect("/ws/client?sessionId=s1&sessionToken=wrong"):
                    pass


# =============================================================================
# HTTP surface
# =============================================================================

def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["sessions"] == 0
    assert body["clients"] == 0
    assert body["agents"] == 0
    assert body["uptime"] >= 0


def test_sessions_endpoint_requires_bearer(client: TestClient) -> None:
    assert client.get("/api/sessions").status_code == 401
    assert client.get("/api/sessions", headers={"Authorization": "Bearer nope"}).json() == {
        "detail": "Unauthorized"
    }

    response = client.get("/api/sessions", headers={"Authorization": f"Bearer {TOKEN}"})
    assert response.status_code == 200
    assert response.json() == {"sessions": []}


def test_push_endpoints(client: TestClient) -> None:
    assert client.get("/api/push/vapid-key").json() == {"vapidPublicKey": "vapid-pub"}

    headers = {"Authorization": f"Bearer {TOKEN}"}
    bad = client.post("/api/push/subscribe", json={"keys": {}}, headers=headers)
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid subscription"}

    subscription = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}}
    assert client.post("/api/push/subscribe", json=subscription, headers=headers).status_code == 200
    assert client.post("/api/push/subscribe", json=subscription, headers=headers).status_code == 200
    assert client.app.state.notifier.subscription_count == 1

    assert client.post("/api/push/subscribe", json=subscription).status_code == 401


def test_vapid_key_unconfigured() -> None:
    app = create_app(RelaySettings(auth_token=TOKEN))
    with TestClient(app) as test_client:
        response = test_client.get("/api/push/vapid-key")

    assert response.status_code == 503
    assert response.json() == {"error": "Push not configured"}
