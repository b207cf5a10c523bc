"""
Push Notifier

Fire-and-forget notification dispatch to viewers that are not currently
connected (session shared, input required).

Delivery is delegated to a PushTransport:
- VapidPushTransport (default when both VAPID keys are configured) sends
  browser Web Push messages, signed with the VAPID key and encrypted for the
  subscription, through pywebpush
- WebhookPushTransport posts the plain JSON payload to each subscription's
  endpoint with httpx, for self-hosted receivers (RELAY_PUSH_TRANSPORT=webhook)

A 404/410 answer marks the subscription stale and it is forgotten.
Failures are logged and never reach the caller.
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pywebpush import WebPushException, webpush

if TYPE_CHECKING:
    from relay.config import RelaySettings

logger = logging.getLogger(__name__)

STALE_STATUS_CODES = (404, 410)


class PushTransport(Protocol):
    async def deliver(self, subscription: dict[str, Any], payload: dict[str, Any]) -> int:
        """Deliver one payload and return the HTTP status code of the attempt."""
        ...


class VapidPushTransport:
    """
    Browser Web Push delivery.

    pywebpush is blocking (requests), so each delivery runs in a worker thread.
    """

    def __init__(self, private_key: str, subject: str, timeout_s: float = 10.0):
        """
        Args:
            private_key: VAPID private key (base64url or PEM)
            subject: Contact claim, a mailto: or https: URL
            timeout_s: Seconds allowed per delivery
        """
        self._private_key = private_key
        self._subject = subject
        self._timeout = max(1.0, float(timeout_s))

    async def deliver(self, subscription: dict[str, Any], payload: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._send, subscription, json.dumps(payload))

    def _send(self, subscription: dict[str, Any], data: str) -> int:
        try:
            response = webpush(
                subscription_info=subscription,
                data=data,
                vapid_private_key=self._private_key,
                # webpush() fills in aud/exp on the dict it is given
                vapid_claims={"sub": self._subject},
                timeout=self._timeout,
            )
        except WebPushException as e:
            if e.response is None:
                raise
            return e.response.status_code
        return response.status_code


class WebhookPushTransport:
    """Posts the notification JSON to the subscription endpoint."""

    def __init__(self, timeout_s: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self._timeout = httpx.Timeout(max(1.0, float(timeout_s)))
        self._transport = transport

    async def deliver(self, subscription: dict[str, Any], payload: dict[str, Any]) -> int:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(subscription["endpoint"], json=payload)
            return response.status_code


def push_transport_from_settings(settings: "RelaySettings") -> PushTransport | None:
    """
    Pick the delivery transport for the relay.

    Returns:
        The webhook transport when explicitly selected, the VAPID transport
        when both keys are set, otherwise None (push disabled)
    """
    if settings.push_transport == "webhook":
        return WebhookPushTransport(timeout_s=settings.push_timeout)

    if settings.vapid_public_key and settings.vapid_private_key:
        return VapidPushTransport(
            settings.vapid_private_key,
            settings.vapid_subject,
            timeout_s=settings.push_timeout,
        )

    logger.warning("VAPID keys not set. Push notifications disabled.")
    return None


class PushNotifier:
    """
    Holds push subscriptions and dispatches notifications to them.

    Subscriptions are deduplicated by their JSON form. Without a transport
    subscriptions are still accepted but nothing is sent.
    """

    def __init__(
        self,
        transport: PushTransport | None = None,
        vapid_public_key: str | None = None,
    ):
        self._transport = transport
        self.vapid_public_key = vapid_public_key
        self._subscriptions: dict[str, dict[str, Any]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def add_subscription(self, subscription: dict[str, Any]) -> bool:
        """
        Store a subscription.

        Returns:
            True if added, False if already known
        """
        key = json.dumps(subscription, sort_keys=True)
        if key in self._subscriptions:
            return False
        self._subscriptions[key] = subscription
        logger.info(f"Push subscription added. Total: {len(self._subscriptions)}")
        return True

    def notify(
        self,
        session_id: str,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> asyncio.Task | None:
        """
        Schedule a notification and return immediately.

        Returns:
            The delivery task, or None if nothing was scheduled
        """
        if self._transport is None or not self._subscriptions:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Push skipped for {session_id}: no running event loop")
            return None

        data = {**(metadata or {}), "sessionId": session_id}
        task = loop.create_task(self.send_notification(title, body, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def send_notification(self, title: str, body: str, data: dict[str, Any]) -> None:
        """Deliver to every subscription, forgetting stale ones."""
        if self._transport is None:
            return
        payload = {"title": title, "body": body, "data": data}

        stale: list[str] = []
        for key, subscription in list(self._subscriptions.items()):
            try:
                status = await self._transport.deliver(subscription, payload)
            except Exception as e:
                logger.error(f"Push send error: {e}")
                continue

            if status in STALE_STATUS_CODES:
                stale.append(key)
            elif status >= 400:
                logger.warning(f"Push delivery failed with status {status}")

        for key in stale:
            self._subscriptions.pop(key, None)
        if stale:
            logger.info(f"Removed {len(stale)} stale push subscription(s)")

    async def shutdown(self) -> None:
        """Cancel in-flight deliveries."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
