"""Server-side broadcast hub.

Keeps the registry of connected observers and fans record mutation events
out to them without ever waiting on a slow one.
"""

from .broadcast import BroadcastHub, Observer
from .events import (
    ConnectionConfirmation,
    EventKind,
    MessageType,
    Pong,
    RecordCreated,
    RecordDeleted,
    RecordEvent,
    RecordUpdated,
    decode_message,
    encode_event,
    make_message,
)

__all__ = [
    "BroadcastHub",
    "ConnectionConfirmation",
    "EventKind",
    "MessageType",
    "Observer",
    "Pong",
    "RecordCreated",
    "RecordDeleted",
    "RecordEvent",
    "RecordUpdated",
    "decode_message",
    "encode_event",
    "make_message",
]
