#!/usr/bin/env python3
"""
Demo Viewer

A terminal viewer for the relay. It:
1. Connects to the client route with the bearer token
2. Prints the session list as it changes
3. Subscribes to the first session that appears (or --session)
4. Prints every event of that session
5. Sends each line typed on stdin as a user_message

Usage:
    python scripts/demo_viewer.py [--session ID]

Environment:
    RELAY_URL (default ws://localhost:3001)
    RELAY_AUTH_TOKEN (default dev-token-change-me)
"""

import argparse
import asyncio
import json
import os
import sys
from urllib.parse import urlencode

import websockets

RELAY_URL = os.getenv("RELAY_URL", "ws://localhost:3001").rstrip("/")
AUTH_TOKEN = os.getenv("RELAY_AUTH_TOKEN", "dev-token-change-me")


def render(message: dict) -> str | None:
    """One printable line per relay message (None to stay quiet)."""
    msg_type = message.get("type")

    if msg_type == "sessions_updated":
        rows = [f"{s['id'][:8]} {s['projectName']} [{s['status']}]" for s in message["sessions"]]
        return "📋 Sessions: " + (", ".join(rows) if rows else "(none)")
    if msg_type == "message_history":
        return f"📜 History: {len(message['messages'])} event(s)"
    if msg_type == "session_status":
        return f"🔄 Status: {message['status']}"
    if msg_type == "input_required":
        return f"❓ {message['prompt']}"
    if msg_type == "session_closed":
        return "🛑 Session closed"
    if msg_type == "error":
        return f"❌ {message['error']}"
    if msg_type != "claude_output":
        return None

    event = message["message"]
    kind = event.get("type")
    if kind == "assistant_delta":
        sys.stdout.write(event.get("text", ""))
        sys.stdout.flush()
        return None
    if kind == "assistant_message":
        return f"🤖 {event.get('text', '')}"
    if kind == "user_message":
        return f"\n👤 {event.get('content', '')}"
    if kind in ("tool_use_start", "tool_use_update"):
        return f"🔧 {event.get('toolName')}: {event.get('summary', '')}"
    if kind == "tool_result":
        return f"   ↳ {'error' if event.get('isError') else 'ok'}"
    if kind == "ask_question":
        lines = []
        for question in event.get("questions", []):
            lines.append(f"❓ {question.get('question', '')}")
            lines.extend(f"   - {o.get('label', '')}" for o in question.get("options", []))
        return "\n".join(lines)
    if kind == "result":
        return f"\n✅ Turn finished ({event.get('subtype', '')})"
    if kind == "error":
        return f"❌ {event.get('content', '')}"
    return None


async def read_stdin(queue: asyncio.Queue) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        await queue.put(line.rstrip("\n"))


async def main(session_id: str | None) -> None:
    url = f"{RELAY_URL}/ws/client?{urlencode({'token': AUTH_TOKEN})}"
    print("=" * 70)
    print(f"👀 VIEWER connecting to {RELAY_URL}")
    print("=" * 70)

    lines: asyncio.Queue = asyncio.Queue()
    stdin_task = asyncio.create_task(read_stdin(lines))
    subscribed: str | None = None

    async with websockets.connect(url) as ws:

        async def pump_input() -> None:
            while True:
                text = await lines.get()
                if subscribed and text:
                    await ws.send(json.dumps({"type": "user_message", "sessionId": subscribed, "content": text}))

        input_task = asyncio.create_task(pump_input())
        try:
            async for raw in ws:
                message = json.loads(raw)

                if message.get("type") == "sessions_updated" and subscribed is None:
                    ids = [s["id"] for s in message["sessions"]]
                    target = session_id if session_id in ids else (ids[0] if ids and not session_id else None)
                    if target:
                        subscribed = target
                        await ws.send(json.dumps({"type": "subscribe_session", "sessionId": target, "since": 0}))
                        print(f"🔗 Subscribed to {target}")

                if message.get("type") == "session_closed":
                    subscribed = None

                line = render(message)
                if line:
                    print(line)
        finally:
            input_task.cancel()
            stdin_task.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Terminal viewer for the session relay")
    parser.add_argument("--session", help="Session id to subscribe to")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.session))
    except KeyboardInterrupt:
        print("\n👋 Bye")
