from docflow.realtime.broadcaster import EventBroadcaster, Subscription, SubscriptionClosed
from docflow.realtime.gateway import sse_event, stream_owner_events

__all__ = [
    "EventBroadcaster",
    "Subscription",
    "SubscriptionClosed",
    "sse_event",
    "stream_owner_events",
]
