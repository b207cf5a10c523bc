import json

import pytest

from relay.protocol.messages import (
    ClaudeOutput,
    ConnectionRole,
    InputRequired,
    SessionRegister,
    SessionStatus,
    SessionStatusUpdate,
    SessionUnregister,
    SubscribeSession,
    UnsubscribeSession,
    UserMessage,
)
from relay.routing import AGENT_NOT_CONNECTED, SESSION_NOT_FOUND, Connection, FanoutRouter
from relay.session import SessionRegistry
from relay.transport.queue import QueueFullError


class FakeQueues:
    """Per-connection outboxes standing in for the real queue manager."""

    def __init__(self) -> None:
        self.outbox: dict[str, list[dict]] = {}
        self.full: set[str] = set()

    def open(self, conn_id: str) -> None:
        self.outbox[conn_id] = []

    def send(self, conn_id: str, message: str) -> bool:
        if conn_id not in self.outbox:
            return False
        if conn_id in self.full:
            raise QueueFullError(conn_id, 0)
        self.outbox[conn_id].append(json.loads(message))
        return True

    def take(self, conn_id: str) -> list[dict]:
        messages = self.outbox[conn_id]
        self.outbox[conn_id] = []
        return messages


class FakeNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, dict]] = []

    def notify(self, session_id, title, body, metadata=None):
        self.calls.append((session_id, title, body, metadata or {}))


class Relay:
    def __init__(self) -> None:
        self.queues = FakeQueues()
        self.registry = SessionRegistry(queue_manager=self.queues)
        self.notifier = FakeNotifier()
        self.router = FanoutRouter(self.registry, self.queues, notifier=self.notifier)

    def connect(self, conn_id: str, role: ConnectionRole, scope: str | None = None) -> str:
        self.queues.open(conn_id)
        self.router.connect(Connection(conn_id=conn_id, role=role, scope_session_id=scope))
        return conn_id

    def agent(self, conn_id: str = "agent-1") -> str:
        return self.connect(conn_id, ConnectionRole.AGENT)

    def client(self, conn_id: str, scope: str | None = None) -> str:
        conn_id = self.connect(conn_id, ConnectionRole.CLIENT, scope)
        self.queues.take(conn_id)  # connect snapshot
        return conn_id

    def disconnect(self, conn_id: str) -> None:
        self.router.disconnect(conn_id)
        self.queues.outbox.pop(conn_id, None)

    def register(self, agent: str, session_id: str, name: str = "demo", token: str | None = None) -> None:
        self.router.handle_agent_message(agent, SessionRegister(
            session_id=session_id, project_name=name, project_path=f"/work/{name}", session_token=token,
        ))

    def output(self, agent: str, session_id: str, event: dict) -> None:
        self.router.handle_agent_message(agent, ClaudeOutput(session_id=session_id, message=event))

    def subscribe(self, client: str, session_id: str, since: float = 0) -> None:
        self.router.handle_client_message(client, SubscribeSession(session_id=session_id, since=since))


@pytest.fixture
def relay() -> Relay:
    return Relay()


def _types(messages: list[dict]) -> list[str]:
    return [m["type"] for m in messages]


# =============================================================================
# Registration and session list
# =============================================================================

def test_client_connect_receives_snapshot(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")

    conn_id = relay.connect("client-a", ConnectionRole.CLIENT)
    [snapshot] = relay.queues.take(conn_id)

    assert snapshot["type"] == "sessions_updated"
    assert [s["id"] for s in snapshot["sessions"]] == ["s1"]
    assert "sessionToken" not in snapshot["sessions"][0]


def test_register_broadcasts_and_notifies(relay: Relay) -> None:
    agent = relay.agent()
    client = relay.client("client-a")

    relay.register(agent, "s1", name="demo")

    [update] = relay.queues.take(client)
    assert update["type"] == "sessions_updated"
    assert update["sessions"][0]["projectName"] == "demo"
    assert relay.notifier.calls == [
        ("s1", "Session Shared", 'Claude session "demo" is now shared', {"type": "session-shared"})
    ]


def test_reregister_updates_in_place(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1", name="demo")
    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})

    relay.register(agent, "s1", name="renamed")

    session = relay.registry.get_session("s1")
    assert session.project_name == "renamed"
    assert len(session.history) == 1
    assert len(relay.notifier.calls) == 1


# =============================================================================
# Fan-out
# =============================================================================

def test_end_to_end_stream(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1", name="demo")
    client = relay.client("client-a")
    relay.queues.take(client)

    relay.subscribe(client, "s1", since=0)
    [history] = relay.queues.take(client)
    assert history == {"type": "message_history", "sessionId": "s1", "messages": []}

    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})
    relay.output(agent, "s1", {"type": "assistant_delta", "text": "B"})
    relay.output(agent, "s1", {"type": "result", "subtype": "success"})

    received = relay.queues.take(client)
    assert _types(received) == ["claude_output"] * 3
    assert [m["message"]["type"] for m in received] == ["assistant_delta", "assistant_delta", "result"]
    assert [m["message"].get("text") for m in received] == ["A", "B", None]

    stored = relay.registry.get_messages_since("s1")
    assert [m["type"] for m in stored] == ["assistant_delta", "assistant_delta", "result"]
    assert [m["message"] for m in received] == stored


def test_output_with_zero_subscribers_is_recorded(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")

    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})

    assert len(relay.registry.get_messages_since("s1")) == 1


def test_relay_stamps_receipt_time(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")

    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A", "timestamp": 5})

    [stored] = relay.registry.get_messages_since("s1")
    assert stored["timestamp"] > 5


def test_fanout_reaches_only_session_subscribers(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1", name="one")
    relay.register(agent, "s2", name="two")
    a = relay.client("client-a")
    b = relay.client("client-b")
    relay.subscribe(a, "s1")
    relay.subscribe(b, "s2")
    relay.queues.take(a)
    relay.queues.take(b)

    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})

    assert _types(relay.queues.take(a)) == ["claude_output"]
    assert relay.queues.take(b) == []


def test_subscribe_replays_since_watermark(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    for text in ("A", "B", "C"):
        relay.output(agent, "s1", {"type": "assistant_delta", "text": text})
    watermark = relay.registry.get_messages_since("s1")[0]["timestamp"]
    client = relay.client("client-a")

    relay.subscribe(client, "s1", since=watermark)

    [history] = relay.queues.take(client)
    assert [m["text"] for m in history["messages"]] == ["B", "C"]


def test_subscribe_to_unknown_session_errors(relay: Relay) -> None:
    client = relay.client("client-a")

    relay.subscribe(client, "missing")

    assert relay.queues.take(client) == [{"type": "error", "error": SESSION_NOT_FOUND}]


def test_resubscribe_moves_membership(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    relay.register(agent, "s2")
    client = relay.client("client-a")

    relay.subscribe(client, "s1")
    relay.subscribe(client, "s2")

    assert client not in relay.registry.get_session("s1").subscriber_conn_ids
    assert client in relay.registry.get_session("s2").subscriber_conn_ids


def test_unsubscribe_stops_delivery(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    client = relay.client("client-a")
    relay.subscribe(client, "s1")
    relay.queues.take(client)

    relay.router.handle_client_message(client, UnsubscribeSession())
    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})

    assert relay.queues.take(client) == []


def test_backpressure_drops_only_for_full_connection(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    a = relay.client("client-a")
    b = relay.client("client-b")
    relay.subscribe(a, "s1")
    relay.subscribe(b, "s1")
    relay.queues.take(a)
    relay.queues.take(b)
    relay.queues.full.add(a)

    relay.output(agent, "s1", {"type": "assistant_delta", "text": "A"})

    assert relay.queues.outbox[a] == []
    assert _types(relay.queues.take(b)) == ["claude_output"]


# =============================================================================
# Status and input required
# =============================================================================

def test_status_goes_to_subscribers_and_everyone(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    watcher = relay.client("client-a")
    bystander = relay.client("client-b")
    relay.subscribe(watcher, "s1")
    relay.queues.take(watcher)
    relay.queues.take(bystander)

    relay.router.handle_agent_message(
        agent, SessionStatusUpdate(session_id="s1", status=SessionStatus.PROCESSING)
    )

    assert _types(relay.queues.take(watcher)) == ["session_status", "sessions_updated"]
    [update] = relay.queues.take(bystander)
    assert update["type"] == "sessions_updated"
    assert update["sessions"][0]["status"] == "processing"


def test_input_required_sets_status_and_notifies(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1", name="demo")
    client = relay.client("client-a")
    relay.subscribe(client, "s1")
    relay.queues.take(client)

    relay.router.handle_agent_message(agent, InputRequired(session_id="s1", prompt="Which DB?"))

    received = relay.queues.take(client)
    assert received[0] == {"type": "input_required", "sessionId": "s1", "prompt": "Which DB?"}
    assert relay.registry.get_session("s1").status == SessionStatus.INPUT_REQUIRED
    assert relay.notifier.calls[-1][1:3] == ("Input Required", 'Claude needs your input on "demo"')


# =============================================================================
# User messages
# =============================================================================

def test_user_message_forwarded_recorded_and_echoed(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    sender = relay.client("client-a")
    other = relay.client("client-b")
    relay.subscribe(sender, "s1")
    relay.subscribe(other, "s1")
    relay.queues.take(sender)
    relay.queues.take(other)
    relay.queues.take(agent)

    relay.router.handle_client_message(sender, UserMessage(session_id="s1", content="hello"))

    assert relay.queues.take(agent) == [{"type": "user_message", "sessionId": "s1", "content": "hello"}]
    for conn_id in (sender, other):
        [echo] = relay.queues.take(conn_id)
        assert echo["message"]["role"] == "user"
        assert echo["message"]["content"] == "hello"
    [record] = relay.registry.get_messages_since("s1")
    assert record["type"] == "user_message"


def test_user_message_without_live_agent_errors_once(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    sender = relay.client("client-a")
    subscriber = relay.client("client-b")
    relay.subscribe(subscriber, "s1")
    relay.queues.take(subscriber)

    # Owner slot points at a connection the router no longer knows
    relay.registry.set_owner("s1", "agent-gone")
    relay.router.handle_client_message(sender, UserMessage(session_id="s1", content="hi"))

    assert relay.queues.take(sender) == [{"type": "error", "error": AGENT_NOT_CONNECTED}]
    assert relay.queues.take(subscriber) == []
    assert relay.registry.get_messages_since("s1") == []


def test_user_message_for_unknown_session_errors(relay: Relay) -> None:
    sender = relay.client("client-a")

    relay.router.handle_client_message(sender, UserMessage(session_id="nope", content="hi"))

    assert relay.queues.take(sender) == [{"type": "error", "error": AGENT_NOT_CONNECTED}]


# =============================================================================
# Ownership and teardown
# =============================================================================

def test_agent_disconnect_tears_down_owned_sessions(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    relay.register(agent, "s2")
    client = relay.client("client-a")
    relay.subscribe(client, "s1")
    relay.queues.take(client)

    relay.disconnect(agent)

    received = relay.queues.take(client)
    assert received[0] == {"type": "session_closed", "sessionId": "s1"}
    assert received[-1] == {"type": "sessions_updated", "sessions": []}
    assert relay.registry.session_count == 0
    assert relay.router.get_connection(client).subscribed_session_id is None


def test_unregister_by_owner_only(relay: Relay) -> None:
    owner = relay.agent("agent-1")
    intruder = relay.agent("agent-2")
    relay.register(owner, "s1")

    relay.router.handle_agent_message(intruder, SessionUnregister(session_id="s1"))
    assert relay.registry.get_session("s1") is not None

    relay.router.handle_agent_message(owner, SessionUnregister(session_id="s1"))
    assert relay.registry.get_session("s1") is None


def test_output_from_non_owner_is_dropped(relay: Relay) -> None:
    owner = relay.agent("agent-1")
    intruder = relay.agent("agent-2")
    relay.register(owner, "s1")

    relay.output(intruder, "s1", {"type": "assistant_delta", "text": "spoof"})

    assert relay.registry.get_messages_since("s1") == []


def test_client_disconnect_leaves_session(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    client = relay.client("client-a")
    relay.subscribe(client, "s1")

    relay.disconnect(client)

    assert relay.registry.get_session("s1").subscriber_conn_ids == set()
    assert relay.router.client_count == 0
    assert relay.router.agent_count == 1


# =============================================================================
# Pairing scope
# =============================================================================

def test_scoped_client_sees_only_its_session(relay: Relay) -> None:
    agent = relay.agent()
    relay.register(agent, "s1")
    relay.register(agent, "s2")

    conn_id = relay.connect("client-p", ConnectionRole.CLIENT, scope="s2")
    [snapshot] = relay.queues.take(conn_id)
    assert [s["id"] for s in snapshot["sessions"]] == ["s2"]

    relay.subscribe(conn_id, "s1")
    [reply] = relay.queues.take(conn_id)
    assert reply["type"] == "error"

    relay.router.handle_client_message(conn_id, UserMessage(session_id="s1", content="x"))
    [reply] = relay.queues.take(conn_id)
    assert reply["type"] == "error"
