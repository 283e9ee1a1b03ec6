"""Observer registry and fire-and-forget fan-out of record events."""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from ..store.clock import utcnow
from .events import (
    ConnectionConfirmation,
    Pong,
    RecordEvent,
    encode_confirmation,
    encode_event,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "dashboard"


class Observer:
    """A connected client as seen by the hub.

    Each observer owns a bounded delivery queue. Delivery never waits: when
    the queue is full the message is dropped for this observer only and
    counted in :attr:`dropped`. A client that misses messages recovers them
    through catch-up.
    """

    def __init__(
        self,
        connection_id: str | None = None,
        groups: Iterable[str] | None = None,
        queue_size: int = 256,
    ):
        """Initialize the observer.

        Args:
            connection_id: Opaque handle. A random one if None.
            groups: Broadcast groups to join in addition to the default.
            queue_size: Maximum undelivered messages before dropping.
        """
        self.connection_id = connection_id or uuid.uuid4().hex
        self.groups: set[str] = set(groups or ())
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.delivered = 0
        self.dropped = 0
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def deliver(self, message: dict[str, Any]) -> bool:
        """Queue a message without blocking.

        Safe to call from any thread; calls from outside the observer's event
        loop are handed over with ``call_soon_threadsafe``.

        Returns:
            False if the message was dropped.
        """
        if self._loop is not None and not self._on_own_loop():
            if self._loop.is_closed():
                self.dropped += 1
                return False
            self._loop.call_soon_threadsafe(self._enqueue, message)
            return True
        return self._enqueue(message)

    def _on_own_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _enqueue(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(
                f"Dropped {message.get('type')} for {self.connection_id} "
                f"(queue full, {self.dropped} dropped so far)"
            )
            return False
        self.delivered += 1
        return True

    async def next_message(self) -> dict[str, Any]:
        """Wait for the next queued message."""
        return await self.queue.get()

    @property
    def pending(self) -> int:
        """Messages queued but not yet sent."""
        return self.queue.qsize()


class BroadcastHub:
    """Registry of connected observers.

    The registry is the only owner of observers and the single source of the
    connection count. Groups are a filter over the registered set: an
    observer belongs to every group named in its ``groups``.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        default_group: str = DEFAULT_GROUP,
    ):
        """Initialize the hub.

        Args:
            clock: Source of server time for confirmations and pongs.
            default_group: Group every observer joins on connect.
        """
        self._clock = clock
        self.default_group = default_group
        self._observers: dict[str, Observer] = {}
        self._lock = threading.Lock()

    def connect(self, observer: Observer) -> ConnectionConfirmation:
        """Register an observer and queue its connection confirmation.

        Returns:
            The confirmation that was queued to the observer.
        """
        observer.groups.add(self.default_group)
        with self._lock:
            self._observers[observer.connection_id] = observer
            count = len(self._observers)

        confirmation = ConnectionConfirmation(
            connection_id=observer.connection_id,
            server_time=self._clock(),
        )
        observer.deliver(encode_confirmation(confirmation))

        logger.info(
            f"Observer connected: {observer.connection_id}. Total connections: {count}",
            extra={"connection_id": observer.connection_id},
        )
        return confirmation

    def disconnect(self, observer: Observer | str, reason: str | None = None) -> bool:
        """Remove an observer. Does nothing if it is already gone.

        Returns:
            True if the observer was registered.
        """
        connection_id = observer if isinstance(observer, str) else observer.connection_id
        with self._lock:
            removed = self._observers.pop(connection_id, None)
            count = len(self._observers)

        if removed is None:
            return False

        logger.info(
            f"Observer disconnected: {connection_id}. "
            f"Reason: {reason or 'Normal disconnect'}. Total connections: {count}",
            extra={"connection_id": connection_id},
        )
        return True

    def broadcast(self, event: RecordEvent, group: str | None = None) -> int:
        """Deliver a record event to every registered observer.

        Fire-and-forget: nothing is acknowledged or retried, and an observer
        that cannot take the message does not affect the others.

        Args:
            event: The record event.
            group: Restrict delivery to this group. The default group if None.

        Returns:
            Number of observers the message was queued for.
        """
        message = encode_event(event)
        targets = self.observers(group or self.default_group)

        delivered = 0
        for observer in targets:
            try:
                if observer.deliver(message):
                    delivered += 1
            except Exception as e:
                logger.warning(f"Delivery to {observer.connection_id} failed: {e}")

        logger.debug(
            f"Broadcast {event.kind.value} {event.record_id} "
            f"to {delivered}/{len(targets)} observers"
        )
        return delivered

    def send(self, connection_id: str, message: dict[str, Any]) -> bool:
        """Queue a message for a single observer."""
        with self._lock:
            observer = self._observers.get(connection_id)
        if observer is None:
            return False
        return observer.deliver(message)

    def ping(self) -> Pong:
        """Liveness probe."""
        return Pong(server_time=self._clock())

    def observers(self, group: str | None = None) -> list[Observer]:
        """Snapshot of registered observers, optionally filtered by group."""
        with self._lock:
            observers = list(self._observers.values())
        if group is None:
            return observers
        return [o for o in observers if group in o.groups]

    def join_group(self, connection_id: str, group: str) -> bool:
        with self._lock:
            observer = self._observers.get(connection_id)
        if observer is None:
            return False
        observer.groups.add(group)
        return True

    def leave_group(self, connection_id: str, group: str) -> bool:
        with self._lock:
            observer = self._observers.get(connection_id)
        if observer is None:
            return False
        observer.groups.discard(group)
        return True

    @property
    def connection_count(self) -> int:
        """Number of registered observers."""
        with self._lock:
            return len(self._observers)

    def get_stats(self) -> dict[str, Any]:
        """Get hub statistics."""
        observers = self.observers()
        return {
            "connections": len(observers),
            "pending_messages": sum(o.pending for o in observers),
            "dropped_messages": sum(o.dropped for o in observers),
        }
