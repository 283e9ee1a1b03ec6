"""Messages exchanged over the persistent channel.

Record events form a closed set: :class:`RecordCreated`,
:class:`RecordUpdated` and :class:`RecordDeleted`. Consumers switch on the
concrete class (or on :attr:`kind`) and handle all three.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from ..store.records import Record, format_timestamp, parse_timestamp


class EventKind(Enum):
    """Kinds of record mutation events."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class MessageType(Enum):
    """Every message type on the wire, in both directions."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    CONNECTED = "connected"
    PONG = "pong"
    VISIBILITY_ACK = "visibilityAcknowledged"
    STATS = "stats"
    PING = "ping"
    VISIBILITY = "visibility"
    ERROR = "error"


@dataclass(frozen=True)
class RecordCreated:
    record: Record
    kind = EventKind.CREATED

    @property
    def record_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class RecordUpdated:
    record: Record
    kind = EventKind.UPDATED

    @property
    def record_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class RecordDeleted:
    record_id: str
    kind = EventKind.DELETED


RecordEvent = Union[RecordCreated, RecordUpdated, RecordDeleted]


@dataclass(frozen=True)
class ConnectionConfirmation:
    """Sent to an observer right after it joins the hub."""

    connection_id: str
    server_time: datetime


@dataclass(frozen=True)
class Pong:
    server_time: datetime


def make_message(msg_type: MessageType, data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a wire message."""
    return {"type": msg_type.value, "data": data or {}}


def encode_event(event: RecordEvent) -> dict[str, Any]:
    """Encode a record event as a wire message."""
    if isinstance(event, RecordCreated):
        return make_message(MessageType.CREATED, event.record.to_dict())
    if isinstance(event, RecordUpdated):
        return make_message(MessageType.UPDATED, event.record.to_dict())
    if isinstance(event, RecordDeleted):
        return make_message(MessageType.DELETED, {"id": event.record_id})
    raise TypeError(f"Unknown record event: {event!r}")


def encode_confirmation(confirmation: ConnectionConfirmation) -> dict[str, Any]:
    return make_message(
        MessageType.CONNECTED,
        {
            "connectionId": confirmation.connection_id,
            "serverTime": format_timestamp(confirmation.server_time),
        },
    )


def encode_pong(pong: Pong) -> dict[str, Any]:
    return make_message(MessageType.PONG, {"serverTime": format_timestamp(pong.server_time)})


def decode_message(message: dict[str, Any]) -> RecordEvent | ConnectionConfirmation | Pong | None:
    """Decode a server-to-client message.

    Args:
        message: Parsed JSON message.

    Returns:
        The decoded event, or None for message types the client does not act
        on (acknowledgements and stats).

    Raises:
        ValueError: If the message is malformed or of an unknown type.
    """
    try:
        msg_type = MessageType(message["type"])
        data = message.get("data") or {}

        if msg_type is MessageType.CREATED:
            return RecordCreated(Record.from_dict(data))
        if msg_type is MessageType.UPDATED:
            return RecordUpdated(Record.from_dict(data))
        if msg_type is MessageType.DELETED:
            return RecordDeleted(str(data["id"]))
        if msg_type is MessageType.CONNECTED:
            return ConnectionConfirmation(
                connection_id=str(data["connectionId"]),
                server_time=parse_timestamp(data["serverTime"]),
            )
        if msg_type is MessageType.PONG:
            return Pong(server_time=parse_timestamp(data["serverTime"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed message: {e}") from e

    if msg_type in (MessageType.VISIBILITY_ACK, MessageType.STATS, MessageType.ERROR):
        return None
    raise ValueError(f"Unexpected message type for client: {msg_type.value}")
