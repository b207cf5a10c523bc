"""
Configuration

Environment-based settings for the relay server and the agent host.
A .env file is loaded by the application entry points before these are read.

Usage:
    # From environment
    settings = relay_settings_from_env()

    # Explicit
    settings = RelaySettings(auth_token="secret", history_limit=50)
    app = create_app(settings)

Invalid numeric values fall back to the defaults with a warning; loading
never raises.
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TOKEN = "dev-token-change-me"
DEFAULT_VAPID_SUBJECT = "mailto:relay@example.com"


@dataclass
class RelaySettings:
    """
    Relay server configuration.

    Attributes:
        auth_token: Bearer credential shared by agents and clients
        host: Bind address
        port: Bind port
        history_limit: Max retained history records per session
        max_queue_size: Outbound queue depth per connection
        push_timeout: Seconds allowed per push delivery
        push_transport: "webhook" to post plain JSON instead of Web Push
        vapid_public_key: Key advertised to web push clients
        vapid_private_key: Signing key for Web Push (push disabled unless both keys are set)
        vapid_subject: Contact claim sent with Web Push (mailto: or https: URL)
        log_level: Root logging level
    """
    auth_token: str = DEFAULT_AUTH_TOKEN
    host: str = "0.0.0.0"
    port: int = 3001
    history_limit: int = 200
    max_queue_size: int = 200
    push_timeout: float = 10.0
    push_transport: str | None = None
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = DEFAULT_VAPID_SUBJECT
    log_level: str = "INFO"


@dataclass
class AgentHostSettings:
    """
    Agent host configuration.

    Attributes:
        relay_url: Base WebSocket URL of the relay
        auth_token: Bearer credential for the relay
        http_host: Loopback bind address of the local control surface
        http_port: Port of the local control surface
        engine: "module:attribute" path of the assistant engine factory
        public_url: Relay URL shown to the editor on share
        reconnect_min: First reconnect delay (seconds)
        reconnect_max: Reconnect delay cap (seconds)
        log_level: Root logging level
    """
    relay_url: str = "ws://localhost:3001"
    auth_token: str = DEFAULT_AUTH_TOKEN
    http_host: str = "127.0.0.1"
    http_port: int = 9680
    engine: str | None = None
    public_url: str | None = None
    reconnect_min: float = 1.0
    reconnect_max: float = 30.0
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using {default}")
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using {default}")
        return default
    return value


def relay_settings_from_env() -> RelaySettings:
    """
    Create RelaySettings from environment variables.

    Environment variables:
        RELAY_AUTH_TOKEN: Bearer credential
        RELAY_HOST / RELAY_PORT: Bind address and port
        RELAY_HISTORY_LIMIT: Per-session history capacity
        RELAY_MAX_QUEUE_SIZE: Per-connection outbound queue depth
        RELAY_PUSH_TIMEOUT: Seconds per push delivery
        RELAY_PUSH_TRANSPORT: "webhook" selects plain JSON delivery
        RELAY_VAPID_PUBLIC_KEY / RELAY_VAPID_PRIVATE_KEY: Web Push key pair
        RELAY_VAPID_SUBJECT: Web Push contact claim
        RELAY_LOG_LEVEL: Logging level
    """
    return RelaySettings(
        auth_token=os.getenv("RELAY_AUTH_TOKEN") or DEFAULT_AUTH_TOKEN,
        host=os.getenv("RELAY_HOST", "0.0.0.0"),
        port=_env_int("RELAY_PORT", 3001),
        history_limit=_env_int("RELAY_HISTORY_LIMIT", 200),
        max_queue_size=_env_int("RELAY_MAX_QUEUE_SIZE", 200),
        push_timeout=_env_float("RELAY_PUSH_TIMEOUT", 10.0),
        push_transport=(os.getenv("RELAY_PUSH_TRANSPORT") or "").strip().lower() or None,
        vapid_public_key=os.getenv("RELAY_VAPID_PUBLIC_KEY") or None,
        vapid_private_key=os.getenv("RELAY_VAPID_PRIVATE_KEY") or None,
        vapid_subject=os.getenv("RELAY_VAPID_SUBJECT") or DEFAULT_VAPID_SUBJECT,
        log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
    )


def agent_settings_from_env() -> AgentHostSettings:
    """
    Create AgentHostSettings from environment variables.

    Environment variables:
        RELAY_URL: Relay base WebSocket URL
        RELAY_AUTH_TOKEN: Bearer credential
        AGENT_HTTP_HOST / AGENT_HTTP_PORT: Local control surface address
        AGENT_ENGINE: "module:attribute" engine factory path
        RELAY_PUBLIC_URL: Relay URL shown to the editor
        RELAY_RECONNECT_MIN / RELAY_RECONNECT_MAX: Backoff bounds (seconds)
        RELAY_LOG_LEVEL: Logging level
    """
    reconnect_min = _env_float("RELAY_RECONNECT_MIN", 1.0)
    reconnect_max = _env_float("RELAY_RECONNECT_MAX", 30.0)
    if reconnect_max < reconnect_min:
        logger.warning("RELAY_RECONNECT_MAX below RELAY_RECONNECT_MIN, using the minimum")
        reconnect_max = reconnect_min

    return AgentHostSettings(
        relay_url=os.getenv("RELAY_URL", "ws://localhost:3001").rstrip("/"),
        auth_token=os.getenv("RELAY_AUTH_TOKEN") or DEFAULT_AUTH_TOKEN,
        http_host=os.getenv("AGENT_HTTP_HOST", "127.0.0.1"),
        http_port=_env_int("AGENT_HTTP_PORT", 9680),
        engine=os.getenv("AGENT_ENGINE") or None,
        public_url=os.getenv("RELAY_PUBLIC_URL") or None,
        reconnect_min=reconnect_min,
        reconnect_max=reconnect_max,
        log_level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
    )
