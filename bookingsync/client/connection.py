"""Client-side connection state machine.

::

    Disconnected --start()--> Connecting --success--> Connected
    Connecting --failure--> Reconnecting
    Connected --transport closed--> Reconnecting --success--> Connected
    Reconnecting --exhausted / fatal failure--> Disconnected
    Connected|Reconnecting --stop()--> Disconnected

Every handler runs on a :class:`SerialExecutor`, so a reconnect finishing
and a visibility restore arriving at the same moment are handled one after
the other. At most one connect attempt and one retry timer exist at a time.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ..config import ClientConfig
from ..errors import TransportError
from ..hub.events import (
    ConnectionConfirmation,
    MessageType,
    Pong,
    RecordEvent,
    decode_message,
    make_message,
)
from ..store.clock import utcnow
from .executor import SerialExecutor
from .transport import Transport

logger = logging.getLogger(__name__)

# Focus right after a visibility restore does not trigger a second resync
RESUME_DEBOUNCE = timedelta(seconds=1)


class ConnectionState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"


@dataclass
class ConnectionInfo:
    """Snapshot of the connection as shown to consumers."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    connection_id: str | None = None
    last_connected: datetime | None = None
    last_disconnected: datetime | None = None
    server_time: datetime | None = None
    last_watermark: datetime | None = None  # checkpoint known to be in sync


@dataclass
class ReconnectPolicy:
    """Backoff delays indexed by attempt, then a fixed final interval."""

    delays: list[float] = field(default_factory=lambda: [0.0, 2.0, 5.0, 10.0, 15.0, 30.0])
    final_interval: float = 30.0
    max_attempts: int | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> "ReconnectPolicy":
        return cls(
            delays=list(config.reconnect_delays),
            final_interval=config.final_retry_interval_seconds,
            max_attempts=config.max_reconnect_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the given (0-based) retry attempt."""
        if attempt < len(self.delays):
            return self.delays[attempt]
        return self.final_interval

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


SyncRequiredCallback = Callable[[datetime | None], None]
StateCallback = Callable[[ConnectionInfo], None]
EventCallback = Callable[[RecordEvent], None]


class ConnectionManager:
    """Opens and maintains the transport and decides when to catch up.

    Whenever a connection is (re)established, and whenever the host signals
    that a suspended context resumed, ``on_sync_required`` is called with the
    checkpoint recorded before the possible gap. The checkpoint is None only
    before the first successful connection, meaning a full snapshot is
    needed.
    """

    def __init__(
        self,
        transport: Transport,
        executor: SerialExecutor | None = None,
        policy: ReconnectPolicy | None = None,
        on_sync_required: SyncRequiredCallback | None = None,
        on_state_change: StateCallback | None = None,
        on_event: EventCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
        keepalive_interval: float = 15.0,
        server_timeout: float = 60.0,
        sync_overlap: float = 60.0,
        focus_check_delay: float = 0.1,
    ):
        """Initialize the connection manager.

        Args:
            transport: Persistent channel to keep open.
            executor: Shared execution context. A private one if None.
            policy: Reconnect backoff policy.
            on_sync_required: Called with the catch-up cutoff.
            on_state_change: Called with a ConnectionInfo snapshot.
            on_event: Called with every record event received.
            clock: Source of local time.
            keepalive_interval: Seconds between pings while connected
                (0 disables keepalive).
            server_timeout: Seconds of silence before the transport is
                considered dead.
            sync_overlap: Seconds a manual sync reaches back before the
                checkpoint.
            focus_check_delay: Delay before a focus event is handled, so a
                visibility change fires first.
        """
        self.transport = transport
        self.policy = policy or ReconnectPolicy()
        self._executor = executor or SerialExecutor()
        self._owns_executor = executor is None
        self._on_sync_required = on_sync_required
        self._on_state_change = on_state_change
        self._on_event = on_event
        self._clock = clock
        self._keepalive_interval = keepalive_interval
        self._server_timeout = server_timeout
        self._sync_overlap = timedelta(seconds=sync_overlap)
        self._focus_check_delay = focus_check_delay

        self._info = ConnectionInfo()
        self._active = False  # between start() and stop()
        self._generation = 0
        self._connect_task: asyncio.Task | None = None
        self._retry_timer: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._keepalive_timer: asyncio.Task | None = None
        self._last_received: datetime | None = None
        self._last_resume: datetime | None = None
        self._clock_offset = timedelta(0)  # server minus local, never positive
        self._visible = True

    # ==================== Public API ====================

    @property
    def info(self) -> ConnectionInfo:
        """Copy of the current connection info."""
        return dataclasses.replace(self._info)

    @property
    def state(self) -> ConnectionState:
        return self._info.state

    @property
    def checkpoint(self) -> datetime | None:
        return self._info.last_watermark

    async def start(self) -> None:
        """Start connecting. Does nothing unless Disconnected."""
        if self._owns_executor:
            await self._executor.start()
        self._executor.post(self._handle_start)

    async def stop(self) -> None:
        """Close the transport and cancel every pending retry and timer."""
        self._active = False
        self._generation += 1
        for task in (self._retry_timer, self._keepalive_timer, self._connect_task, self._reader_task):
            if task is not None:
                task.cancel()
        pending = [
            t
            for t in (self._retry_timer, self._keepalive_timer, self._connect_task, self._reader_task)
            if t is not None
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._retry_timer = self._keepalive_timer = None
        self._connect_task = self._reader_task = None

        await self.transport.close()

        if self._info.state is not ConnectionState.DISCONNECTED:
            self._info.last_disconnected = self._clock()
        self._set_state(ConnectionState.DISCONNECTED, connection_id=None)

        if self._owns_executor:
            await self._executor.stop()
        logger.info("Connection stopped")

    def notify_visibility(self, visible: bool) -> None:
        """Host visibility changed (tab foregrounded or hidden)."""
        self._executor.post(self._handle_visibility, visible)

    def notify_focus(self) -> None:
        """Host window regained focus."""
        self._executor.call_later(self._focus_check_delay, self._handle_resume, "focus")

    def notify_online(self) -> None:
        """Host network came back."""
        self._executor.post(self._handle_resume, "network")

    def trigger_sync(self) -> None:
        """Request a catch-up that overlaps the checkpoint by a safety margin."""
        self._executor.post(self._handle_manual_sync)

    def ping(self) -> None:
        """Send a liveness probe if connected."""
        self._executor.post(self._send_ping)

    # ==================== Transitions ====================

    def _handle_start(self) -> None:
        if self._info.state is not ConnectionState.DISCONNECTED:
            logger.info(f"Connection already {self._info.state.value}")
            return

        self._active = True
        self._set_state(ConnectionState.CONNECTING, reconnect_attempts=0)
        self._begin_connect()

    def _begin_connect(self) -> None:
        """Start a connect attempt unless one is already in flight."""
        if self._connect_task is not None:
            return

        self._generation += 1
        generation = self._generation
        self._connect_task = self._executor.spawn(
            self.transport.connect(),
            lambda _result, exc: self._handle_connect_result(generation, exc),
        )

    def _handle_connect_result(self, generation: int, exc: BaseException | None) -> None:
        self._connect_task = None
        if generation != self._generation or not self._active:
            if exc is None:
                # Late success after stop or supersession
                self._executor.spawn(self.transport.close())
            return

        if exc is None:
            self._enter_connected(generation)
        else:
            self._handle_connect_failure(exc)

    def _enter_connected(self, generation: int) -> None:
        now = self._clock()
        checkpoint = self._checkpoint_now()
        cutoff = self._info.last_watermark
        reconnect = self._info.state is ConnectionState.RECONNECTING

        self._last_received = now
        self._set_state(
            ConnectionState.CONNECTED,
            reconnect_attempts=0,
            last_connected=now,
            last_watermark=checkpoint,
        )
        logger.info("Reconnected" if reconnect else "Connected")

        self._reader_task = self._executor.spawn(self._read_loop(generation))
        self._schedule_keepalive(generation)
        self._emit_sync_required(cutoff)

    def _handle_connect_failure(self, exc: BaseException) -> None:
        retryable = getattr(exc, "retryable", True)
        logger.warning(f"Connection attempt failed: {exc}")

        if not retryable:
            logger.error("Connection failure is not retryable, giving up")
            self._set_state(ConnectionState.DISCONNECTED, last_disconnected=self._clock())
            return

        if self._info.state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.RECONNECTING)
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        """Arm the single retry timer for the next attempt."""
        attempt = self._info.reconnect_attempts
        if self.policy.exhausted(attempt):
            logger.error(f"Giving up after {attempt} reconnect attempts")
            self._set_state(ConnectionState.DISCONNECTED, last_disconnected=self._clock())
            return

        if self._retry_timer is not None:
            self._retry_timer.cancel()

        delay = self.policy.delay_for(attempt)
        self._set_state(self._info.state, reconnect_attempts=attempt + 1)
        logger.info(f"Retry attempt {attempt + 1} in {delay}s")
        self._retry_timer = self._executor.call_later(delay, self._handle_retry_due, self._generation)

    def _handle_retry_due(self, generation: int) -> None:
        self._retry_timer = None
        if generation != self._generation or not self._active:
            return
        if self._info.state is ConnectionState.RECONNECTING:
            self._begin_connect()

    def _connection_lost(self, reason: str) -> None:
        """Leave Connected and start reconnecting."""
        self._generation += 1
        for task in (self._reader_task, self._keepalive_timer):
            if task is not None:
                task.cancel()
        self._reader_task = self._keepalive_timer = None
        self._executor.spawn(self.transport.close())

        logger.warning(f"Connection lost: {reason}")
        self._set_state(
            ConnectionState.RECONNECTING,
            reconnect_attempts=0,
            last_disconnected=self._clock(),
        )
        self._schedule_retry()

    def _handle_transport_closed(self, generation: int, reason: str) -> None:
        if generation != self._generation or not self._active:
            return
        if self._info.state is ConnectionState.CONNECTED:
            self._connection_lost(reason)

    # ==================== Inbound Messages ====================

    async def _read_loop(self, generation: int) -> None:
        """Receive messages until the transport closes."""
        while True:
            try:
                message = await self.transport.receive()
            except TransportError as e:
                self._executor.post(self._handle_transport_closed, generation, str(e))
                return
            except Exception as e:
                logger.error(f"Unexpected receive failure: {e}", exc_info=True)
                self._executor.post(self._handle_transport_closed, generation, str(e))
                return
            self._executor.post(self._handle_inbound, generation, message)

    def _handle_inbound(self, generation: int, message: dict[str, Any]) -> None:
        if generation != self._generation:
            return
        self._last_received = self._clock()

        try:
            decoded = decode_message(message)
        except ValueError as e:
            logger.warning(f"Ignoring message: {e}")
            return

        if decoded is None:
            return
        if isinstance(decoded, ConnectionConfirmation):
            self._handle_confirmation(decoded)
        elif isinstance(decoded, Pong):
            logger.debug(f"Pong received, server time: {decoded.server_time.isoformat()}")
            self._observe_server_time(decoded.server_time)
            self._set_state(self._info.state, server_time=decoded.server_time)
        elif self._on_event:
            self._on_event(decoded)

    def _handle_confirmation(self, confirmation: ConnectionConfirmation) -> None:
        logger.info(f"Connection confirmed: {confirmation.connection_id}")
        self._observe_server_time(confirmation.server_time)
        checkpoint = self._info.last_watermark
        # Never trust a local clock that runs ahead of the server
        if checkpoint is None or confirmation.server_time < checkpoint:
            checkpoint = confirmation.server_time
        self._set_state(
            self._info.state,
            connection_id=confirmation.connection_id,
            server_time=confirmation.server_time,
            last_watermark=checkpoint,
        )

    def _observe_server_time(self, server_time: datetime) -> None:
        """Track how far the local clock runs ahead of the server."""
        offset = min(server_time - self._clock(), timedelta(0))
        if offset != self._clock_offset:
            logger.debug(f"Local clock ahead of server by {-offset.total_seconds():.3f}s")
        self._clock_offset = offset

    def _checkpoint_now(self) -> datetime:
        """Current time on the server's clock, never later than the local one."""
        return self._clock() + self._clock_offset

    # ==================== Keepalive ====================

    def _schedule_keepalive(self, generation: int) -> None:
        if self._keepalive_interval <= 0:
            return
        self._keepalive_timer = self._executor.call_later(
            self._keepalive_interval, self._handle_keepalive, generation
        )

    def _handle_keepalive(self, generation: int) -> None:
        self._keepalive_timer = None
        if generation != self._generation or self._info.state is not ConnectionState.CONNECTED:
            return

        silent_for = self._clock() - (self._last_received or self._clock())
        if silent_for > timedelta(seconds=self._server_timeout):
            self._connection_lost(f"no message for {silent_for.total_seconds():.0f}s")
            return

        self._send_ping()
        self._schedule_keepalive(generation)

    def _send_ping(self) -> None:
        if self._info.state is ConnectionState.CONNECTED:
            self._send(make_message(MessageType.PING))

    def _send(self, message: dict[str, Any]) -> None:
        def _sent(_result: Any, exc: BaseException | None) -> None:
            if exc is not None:
                logger.warning(f"Failed to send {message['type']}: {exc}")

        self._executor.spawn(self.transport.send(message), _sent)

    # ==================== Host Environment ====================

    def _handle_visibility(self, visible: bool) -> None:
        was_visible = self._visible
        self._visible = visible
        logger.info(f"Visibility changed: {'VISIBLE' if visible else 'HIDDEN'}")

        if self._info.state is ConnectionState.CONNECTED and self.transport.is_open:
            self._send(make_message(MessageType.VISIBILITY, {"isVisible": visible}))

        if visible and not was_visible:
            self._handle_resume("visibility")

    def _handle_resume(self, source: str) -> None:
        """Re-verify the connection after the host context resumed.

        A suspended transport can drop messages without ever reporting a
        close, so a resync is requested even when it still claims to be
        connected.
        """
        if not self._active:
            return

        now = self._clock()
        if (
            source == "focus"
            and self._last_resume is not None
            and now - self._last_resume < RESUME_DEBOUNCE
        ):
            self._send_ping()
            return
        self._last_resume = now

        state = self._info.state
        logger.info(f"Resumed ({source}), connection state: {state.value}")

        if state is ConnectionState.CONNECTED:
            if not self.transport.is_open:
                self._connection_lost(f"transport closed while suspended ({source})")
                return
            self._send_ping()
            cutoff = self._info.last_watermark
            self._set_state(state, last_watermark=self._checkpoint_now())
            self._emit_sync_required(cutoff)
        elif state is ConnectionState.RECONNECTING:
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            self._begin_connect()
        elif state is ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.RECONNECTING, reconnect_attempts=0)
            self._begin_connect()

    def _handle_manual_sync(self) -> None:
        cutoff = self._info.last_watermark
        if cutoff is not None:
            cutoff = cutoff - self._sync_overlap
        self._set_state(self._info.state, last_watermark=self._checkpoint_now())
        self._emit_sync_required(cutoff)

    # ==================== Notifications ====================

    def _emit_sync_required(self, cutoff: datetime | None) -> None:
        logger.info(
            f"Sync required since {cutoff.isoformat() if cutoff else 'the beginning'}"
        )
        if self._on_sync_required:
            self._on_sync_required(cutoff)

    def _set_state(self, state: ConnectionState, **changes: Any) -> None:
        self._info = dataclasses.replace(self._info, state=state, **changes)
        if self._on_state_change:
            self._on_state_change(self.info)
