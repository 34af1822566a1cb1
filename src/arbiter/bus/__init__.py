"""Event bus: message routing and typed domain events."""

from arbiter.bus.events import EventDispatcher, EventKind
from arbiter.bus.message import Message, MessageType
from arbiter.bus.message_bus import MessageBus, Subscription
from arbiter.bus.topics import AdaptationTopics, ArbitrationTopics, Topic

__all__ = [
    "AdaptationTopics",
    "ArbitrationTopics",
    "EventDispatcher",
    "EventKind",
    "Message",
    "MessageBus",
    "MessageType",
    "Subscription",
    "Topic",
]
