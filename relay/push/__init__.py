# Push Dispatch
# Fire-and-forget notifications for viewers that are not connected

from relay.push.notifier import (
    PushNotifier,
    PushTransport,
    VapidPushTransport,
    WebhookPushTransport,
    push_transport_from_settings,
)

__all__ = [
    "PushNotifier",
    "PushTransport",
    "VapidPushTransport",
    "WebhookPushTransport",
    "push_transport_from_settings",
]
